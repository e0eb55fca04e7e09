"""Numerical core of multivariate adaptive shrinkage (mash).

Data setup
----------
set_effect_data
    Create an EffectData object from Bhat/Shat matrices.
set_contrast_data, contrast_matrix
    Move effects into baseline-contrast coordinates.
build_cov_stack, get_cov
    Per-effect noise covariance matrices.

Densities
---------
dmvnorm, dnorm, pnorm
    Normal densities and tail probabilities, with the point-mass rule for
    singular covariances.
inverse_cholesky_root
    Inverse Cholesky root used as a reusable likelihood cache.

Likelihoods
-----------
calc_lik_matrix
    Effects x components likelihood matrix.
calc_relative_lik_matrix
    Row-normalised log-likelihoods plus the subtracted row maxima.
compute_rooti, calc_lik_matrix_rooti
    Likelihoods from precomputed inverse Cholesky roots.
calc_lik_matrix_univariate
    Single-condition likelihoods.

Posteriors
----------
posterior_weights_from_loglik
    Posterior component probabilities from log-likelihoods.
compute_posterior_matrices
    Mixture posterior summaries (mean, sd, lfsr, ...), optionally projected.
compute_posterior_matrices_univariate
    Single-condition (ash) posterior summaries.
compute_sermix_posterior
    Single-effect mixture posterior with the EM prior-scalar statistic.

Simulation
----------
simple_sims, simulate_mixture, canonical_ulist, random_correlation
    Simulate test data with known effect structure.
"""

from importlib.metadata import version as _get_version

try:
    __version__ = _get_version("mashcore")
except Exception:
    __version__ = "0.0.0"

from ._numerics import dmvnorm, dnorm, inverse_cholesky_root, pnorm, softmax
from .data import (
    EffectData,
    StandardErrors,
    build_cov_stack,
    contrast_matrix,
    get_cov,
    set_contrast_data,
    set_effect_data,
)
from .likelihoods import (
    RelativeLikelihoodResult,
    calc_lik_matrix,
    calc_lik_matrix_rooti,
    calc_lik_matrix_univariate,
    calc_lik_vector,
    calc_relative_lik_matrix,
    compute_rooti,
)
from .posterior import (
    PosteriorMatrices,
    compute_posterior_matrices,
    compute_posterior_matrices_univariate,
    compute_posterior_weights,
    posterior_cov,
    posterior_mean,
    posterior_weights_from_loglik,
)
from .sermix import compute_sermix_posterior
from .simulations import canonical_ulist, random_correlation, simple_sims, simulate_mixture

__all__ = [
    "EffectData",
    "StandardErrors",
    "RelativeLikelihoodResult",
    "PosteriorMatrices",
    "set_effect_data",
    "set_contrast_data",
    "contrast_matrix",
    "build_cov_stack",
    "get_cov",
    "dmvnorm",
    "dnorm",
    "pnorm",
    "softmax",
    "inverse_cholesky_root",
    "calc_lik_vector",
    "calc_lik_matrix",
    "calc_relative_lik_matrix",
    "compute_rooti",
    "calc_lik_matrix_rooti",
    "calc_lik_matrix_univariate",
    "posterior_cov",
    "posterior_mean",
    "compute_posterior_weights",
    "posterior_weights_from_loglik",
    "compute_posterior_matrices",
    "compute_posterior_matrices_univariate",
    "compute_sermix_posterior",
    "simple_sims",
    "simulate_mixture",
    "canonical_ulist",
    "random_correlation",
]
