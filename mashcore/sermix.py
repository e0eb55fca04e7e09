from __future__ import annotations

import numpy as np

from .data import EffectData
from .likelihoods import UlistLike, as_u_stack
from .posterior import (
    REPORT_COVARIANCE,
    PosteriorMatrices,
    _check_report_type,
    _check_weights,
    _MixtureAccumulator,
    accumulate_common_cov,
    accumulate_general,
    resolve_common_posterior,
)


def compute_sermix_posterior(
    data: EffectData,
    Ulist: UlistLike,
    posterior_weights: np.ndarray,
    variable_weights: np.ndarray | None = None,
    Uinv: np.ndarray | None = None,
    common_cov: bool | None = None,
    Vinv: np.ndarray | None = None,
    U0: np.ndarray | None = None,
    report_type: int = REPORT_COVARIANCE,
) -> PosteriorMatrices:
    """Posterior for a single-effect regression with a mixture prior.

    The posterior summaries are those of
    :func:`~mashcore.posterior.compute_posterior_matrices` without a
    projection. When the inverse prior covariances ``Uinv`` are supplied the
    engine also collects, for each component p,

    .. math:: M_p = \\sum_j \\alpha_{jp} (U1_{jp} + \\mu_{jp} \\mu_{jp}^T)

    where ``alpha = variable_weights``, and reports
    ``prior_scalar[p] = tr(Uinv_p M_p) / R``. This is the sufficient
    statistic of the EM update for the prior variance scale; the update
    itself is left to the caller.

    Parameters
    ----------
    data : EffectData
        Effects and standard errors, one row per candidate variable.
    Ulist : sequence of np.ndarray
        Prior covariance matrices, each ``(R, R)``.
    posterior_weights : np.ndarray
        Posterior component probabilities, shape ``(J, P)``.
    variable_weights : np.ndarray, optional
        Posterior inclusion probabilities of each variable under each
        component, shape ``(J, P)``. Required with ``Uinv``.
    Uinv : np.ndarray, optional
        Inverse prior covariances, shape ``(P, R, R)``.
    common_cov : bool, optional
        Use the shared-noise fast path; ``None`` detects it.
    Vinv, U0 : np.ndarray, optional
        Precomputed precisions and posterior covariances, as in
        :func:`~mashcore.posterior.compute_posterior_matrices`.
    report_type : int
        Defaults to 4 (posterior covariances included).

    Returns
    -------
    PosteriorMatrices
        Summaries of shape ``(J, R)``; ``prior_scalar`` has shape ``(P,)``
        when ``Uinv`` is given and is None otherwise.
    """
    report_type = _check_report_type(report_type)
    u_stack = as_u_stack(Ulist, R=data.n_conditions)
    J, R = data.Bhat.shape
    P = u_stack.shape[0]
    weights = _check_weights(posterior_weights, J, P)

    track = Uinv is not None
    vweights = None
    if track:
        Uinv = np.asarray(Uinv, dtype=float)
        if Uinv.shape != (P, R, R):
            raise ValueError(f"Uinv must have shape ({P}, {R}, {R})")
        if variable_weights is None:
            raise ValueError("variable_weights are required when Uinv is supplied")
        vweights = np.asarray(variable_weights, dtype=float)
        if vweights.shape != (J, P):
            raise ValueError(f"variable_weights must have shape ({J}, {P})")

    acc = _MixtureAccumulator((J, R), report_type, n_components=P, track_prior_moments=track)
    Vinv = None if Vinv is None else np.asarray(Vinv, dtype=float)
    U0 = None if U0 is None else np.asarray(U0, dtype=float)
    if resolve_common_posterior(data, common_cov):
        accumulate_common_cov(acc, data, u_stack, weights, Vinv=Vinv, U0=U0, variable_weights=vweights)
    else:
        accumulate_general(acc, data, u_stack, weights, Vinv=Vinv, U0=U0, variable_weights=vweights)

    result = acc.finalize()
    if track:
        result.prior_scalar = acc.prior_scalar(Uinv)
    return result


__all__ = ["compute_sermix_posterior"]
