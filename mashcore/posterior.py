from __future__ import annotations

from dataclasses import dataclass
import warnings

import numpy as np

from ._numerics import compute_lfsr, pnorm, softmax
from .data import EffectData, build_cov_stack
from .likelihoods import UlistLike, as_u_stack

REPORT_MEAN = 1
REPORT_SECOND_MOMENT = 2
REPORT_DEFAULT = 3
REPORT_COVARIANCE = 4

_TINY = np.finfo(float).tiny


@dataclass
class PosteriorMatrices:
    """Posterior summaries, one row per effect.

    ``posterior_cov`` has shape ``(Q, Q, J)``. With ``report_type=4`` it
    holds posterior covariances; with ``report_type=2`` it holds the
    uncentred second moments ``E[b b^T]``. ``prior_scalar`` is only filled
    by :func:`~mashcore.sermix.compute_sermix_posterior`.
    """

    posterior_mean: np.ndarray
    posterior_sd: np.ndarray | None
    negative_prob: np.ndarray | None
    zero_prob: np.ndarray | None
    lfsr: np.ndarray | None
    lfdr: np.ndarray | None
    posterior_cov: np.ndarray | None = None
    prior_scalar: np.ndarray | None = None


def posterior_cov(Vinv: np.ndarray, U: np.ndarray) -> np.ndarray:
    """Return ``U (Vinv U + I)^-1``.

    If bhat ~ N(b, V) and b ~ N(0, U) then b | bhat ~ N(mu1, U1); this is
    U1. ``Vinv`` may be a single ``(R, R)`` precision or a ``(J, R, R)``
    stack, in which case a stack is returned. A singular system raises
    ``numpy.linalg.LinAlgError``.
    """
    R = U.shape[0]
    system = Vinv @ U + np.eye(R)
    return U @ np.linalg.inv(system)


def posterior_mean(bhat: np.ndarray, Vinv: np.ndarray, U1: np.ndarray) -> np.ndarray:
    return U1 @ (Vinv @ bhat)


def posterior_mean_matrix(Bhat: np.ndarray, Vinv: np.ndarray, U1: np.ndarray) -> np.ndarray:
    """Row-wise :func:`posterior_mean` for effects sharing one precision."""
    return Bhat @ (U1 @ Vinv).T


def compute_posterior_weights(pi: np.ndarray, lik_mat: np.ndarray) -> np.ndarray:
    pi = np.asarray(pi, dtype=float)
    lik_mat = np.asarray(lik_mat, dtype=float)
    d = lik_mat * pi[None, :]
    norm = np.sum(d, axis=1, keepdims=True)
    norm = np.maximum(norm, np.finfo(float).tiny)
    return d / norm


def posterior_weights_from_loglik(pi: np.ndarray, loglik: np.ndarray) -> np.ndarray:
    """Posterior component probabilities from a JxP log-likelihood matrix."""
    with np.errstate(divide="ignore"):
        log_pi = np.log(np.asarray(pi, dtype=float))
    return softmax(np.asarray(loglik, dtype=float) + log_pi[None, :], axis=1)


class _MixtureAccumulator:
    """Weighted running sums over mixture components.

    Every posterior engine pushes one component at a time through
    :meth:`add`; the variance identity and the zero-variance rule are applied
    here only. Means are ``(J,)`` for the univariate engine and ``(J, Q)``
    otherwise.
    """

    def __init__(
        self,
        shape: tuple[int, ...],
        report_type: int,
        n_components: int = 0,
        track_prior_moments: bool = False,
    ) -> None:
        self.report_type = report_type
        self.mean = np.zeros(shape, dtype=float)
        self.mean2 = np.zeros(shape, dtype=float)
        self.neg = np.zeros(shape, dtype=float)
        self.zero = np.zeros(shape, dtype=float)
        self.second_moment = None
        if len(shape) == 2 and report_type in (REPORT_SECOND_MOMENT, REPORT_COVARIANCE):
            self.second_moment = np.zeros((shape[0], shape[1], shape[1]), dtype=float)
        self.prior_moments = None
        if track_prior_moments:
            self.prior_moments = np.zeros((n_components, shape[1], shape[1]), dtype=float)

    def add(
        self,
        p: int,
        weights: np.ndarray,
        mu: np.ndarray,
        var: np.ndarray,
        cov: np.ndarray | None = None,
        variable_weights: np.ndarray | None = None,
    ) -> None:
        """Add component p.

        ``var`` is the diagonal of the component's posterior covariance,
        broadcastable to ``mu``; ``cov`` is the full ``(Q, Q)`` block shared by
        all effects or a ``(J, Q, Q)`` stack.
        """
        w = weights.reshape(weights.shape + (1,) * (mu.ndim - 1))
        self.mean += w * mu

        if self.prior_moments is not None:
            assert cov is not None and variable_weights is not None
            if cov.ndim == 2:
                self.prior_moments[p] += np.sum(variable_weights) * cov
            else:
                self.prior_moments[p] += np.einsum("j,jqk->qk", variable_weights, cov)
            self.prior_moments[p] += np.einsum("j,jq,jk->qk", variable_weights, mu, mu)

        if self.report_type == REPORT_MEAN:
            return

        # Only an exact zero counts as a point mass; rounding noise of either sign does not.
        null = np.broadcast_to(var == 0.0, mu.shape)
        var = np.broadcast_to(np.maximum(var, 0.0), mu.shape)
        self.mean2 += w * (mu * mu + var)

        self.zero += w * null
        with np.errstate(all="ignore"):
            neg = pnorm(0.0, mean=mu, sd=np.sqrt(np.maximum(var, _TINY)))
        neg = np.where(np.isfinite(neg), neg, 0.0)
        self.neg += w * np.where(null, 0.0, neg)

        if self.second_moment is not None:
            assert cov is not None
            self.second_moment += weights[:, None, None] * (cov + np.einsum("jq,jk->jqk", mu, mu))

    def finalize(self) -> PosteriorMatrices:
        if self.report_type == REPORT_MEAN:
            return PosteriorMatrices(
                posterior_mean=self.mean,
                posterior_sd=None,
                negative_prob=None,
                zero_prob=None,
                lfsr=None,
                lfdr=None,
            )

        post_var = np.maximum(0.0, self.mean2 - self.mean * self.mean)
        post_cov = None
        if self.second_moment is not None:
            sec = self.second_moment
            if self.report_type == REPORT_COVARIANCE:
                sec = sec - np.einsum("jq,jk->jqk", self.mean, self.mean)
            post_cov = np.transpose(sec, (1, 2, 0))

        return PosteriorMatrices(
            posterior_mean=self.mean,
            posterior_sd=np.sqrt(post_var),
            negative_prob=self.neg,
            zero_prob=self.zero,
            lfsr=compute_lfsr(self.neg, self.zero),
            lfdr=self.zero,
            posterior_cov=post_cov,
        )

    def prior_scalar(self, Uinv: np.ndarray) -> np.ndarray:
        """Return ``tr(Uinv_p M_p) / Q`` for every component p."""
        assert self.prior_moments is not None
        return np.einsum("pij,pji->p", Uinv, self.prior_moments) / self.prior_moments.shape[1]


def _check_report_type(report_type: int) -> int:
    if report_type not in (REPORT_MEAN, REPORT_SECOND_MOMENT, REPORT_DEFAULT, REPORT_COVARIANCE):
        raise ValueError("report_type must be 1, 2, 3 or 4")
    return int(report_type)


def _check_weights(weights: np.ndarray, J: int, P: int, name: str = "posterior_weights") -> np.ndarray:
    w = np.asarray(weights, dtype=float)
    if w.shape != (J, P):
        raise ValueError(f"{name} must have shape ({J}, {P})")
    row_sums = np.sum(w, axis=1)
    if not np.allclose(row_sums, 1.0, atol=1e-6):
        warnings.warn(
            f"Rows of {name} do not sum to one; posterior summaries assume they do.",
            RuntimeWarning,
            stacklevel=3,
        )
    return w


def _check_projection(A: np.ndarray | None, R: int) -> np.ndarray | None:
    if A is None:
        return None
    A = np.asarray(A, dtype=float)
    if A.ndim != 2 or A.shape[1] != R:
        raise ValueError("A has invalid dimensions")
    return A


def resolve_common_posterior(data: EffectData, common_cov: bool | None) -> bool:
    if common_cov is None:
        return data.is_common_cov()
    if common_cov and not data.is_common_cov():
        raise ValueError("Common-covariance posterior called with non-common covariance data")
    return bool(common_cov)


def accumulate_common_cov(
    acc: _MixtureAccumulator,
    data: EffectData,
    u_stack: np.ndarray,
    posterior_weights: np.ndarray,
    A: np.ndarray | None = None,
    Vinv: np.ndarray | None = None,
    U0: np.ndarray | None = None,
    variable_weights: np.ndarray | None = None,
) -> None:
    """Shared-noise path: one precision and one U0 per component for all effects."""
    R = data.n_conditions
    P = u_stack.shape[0]
    if Vinv is None:
        Vinv = np.linalg.inv(data.get_cov(0))
    elif Vinv.shape != (R, R):
        raise ValueError(f"Vinv must have shape ({R}, {R}) for the common-covariance path")
    if U0 is not None and U0.shape != (P, R, R):
        raise ValueError(f"U0 must have shape ({P}, {R}, {R}) for the common-covariance path")

    sa = data.Shat_alpha
    sa0 = sa[0]
    for p in range(P):
        U1 = posterior_cov(Vinv, u_stack[p]) if U0 is None else U0[p]
        mu = posterior_mean_matrix(data.Bhat, Vinv, U1) * sa
        pvar = U1 * sa0[:, None] * sa0[None, :]
        if A is not None:
            mu = mu @ A.T
            pvar = A @ pvar @ A.T
        vw = None if variable_weights is None else variable_weights[:, p]
        acc.add(p, posterior_weights[:, p], mu, np.diag(pvar), cov=pvar, variable_weights=vw)


def accumulate_general(
    acc: _MixtureAccumulator,
    data: EffectData,
    u_stack: np.ndarray,
    posterior_weights: np.ndarray,
    A: np.ndarray | None = None,
    Vinv: np.ndarray | None = None,
    U0: np.ndarray | None = None,
    variable_weights: np.ndarray | None = None,
) -> None:
    """Per-effect path: every effect has its own precision and U0."""
    J, R = data.Bhat.shape
    P = u_stack.shape[0]
    if Vinv is None:
        Vinv = np.linalg.inv(build_cov_stack(data))
    elif Vinv.shape != (J, R, R):
        raise ValueError(f"Vinv must have shape ({J}, {R}, {R})")
    if U0 is not None and U0.shape != (J, P, R, R):
        raise ValueError(f"U0 must have shape ({J}, {P}, {R}, {R})")

    sa = data.Shat_alpha
    scale = sa[:, :, None] * sa[:, None, :]
    Vinv_bhat = np.einsum("jrs,js->jr", Vinv, data.Bhat)
    for p in range(P):
        U1 = posterior_cov(Vinv, u_stack[p]) if U0 is None else U0[:, p]
        mu = np.einsum("jrs,js->jr", U1, Vinv_bhat) * sa
        pvar = U1 * scale
        if A is not None:
            mu = mu @ A.T
            pvar = A @ pvar @ A.T
        vw = None if variable_weights is None else variable_weights[:, p]
        acc.add(
            p,
            posterior_weights[:, p],
            mu,
            np.diagonal(pvar, axis1=1, axis2=2),
            cov=pvar,
            variable_weights=vw,
        )


def compute_posterior_matrices(
    data: EffectData,
    Ulist: UlistLike,
    posterior_weights: np.ndarray,
    A: np.ndarray | None = None,
    report_type: int = REPORT_DEFAULT,
    common_cov: bool | None = None,
    Vinv: np.ndarray | None = None,
    U0: np.ndarray | None = None,
) -> PosteriorMatrices:
    """Compute mixture posterior summaries for every effect.

    Parameters
    ----------
    data : EffectData
        Effects and standard errors, created by :func:`set_effect_data`.
    Ulist : sequence of np.ndarray
        Prior covariance matrices (mixture components), each ``(R, R)``.
    posterior_weights : np.ndarray
        Posterior component probabilities, shape ``(J, P)``; each row
        should sum to one.
    A : np.ndarray, optional
        Projection of shape ``(Q, R)``. Posteriors are reported for
        ``A @ b`` instead of ``b``. The rescaling by ``Shat_alpha`` is
        applied before the projection.
    report_type : int
        1 posterior mean only; 2 summaries plus second-moment matrices;
        3 summaries (default); 4 summaries plus posterior covariances.
    common_cov : bool, optional
        Use the shared-noise fast path. ``None`` (default) picks it when
        every effect has the same noise covariance and rescaling factors.
    Vinv : np.ndarray, optional
        Precomputed noise precision: ``(R, R)`` on the shared path,
        ``(J, R, R)`` otherwise.
    U0 : np.ndarray, optional
        Precomputed posterior covariances: ``(P, R, R)`` on the shared
        path, ``(J, P, R, R)`` otherwise.

    Returns
    -------
    PosteriorMatrices
        Posterior summaries with arrays of shape ``(J, Q)``.

    Examples
    --------
    >>> lik = calc_lik_matrix(data, Ulist, log=True)
    >>> w = posterior_weights_from_loglik(pi, lik)
    >>> post = compute_posterior_matrices(data, Ulist, w)
    """
    report_type = _check_report_type(report_type)
    u_stack = as_u_stack(Ulist, R=data.n_conditions)
    J, R = data.Bhat.shape
    P = u_stack.shape[0]
    weights = _check_weights(posterior_weights, J, P)
    A = _check_projection(A, R)
    Q = R if A is None else A.shape[0]

    acc = _MixtureAccumulator((J, Q), report_type)
    Vinv = None if Vinv is None else np.asarray(Vinv, dtype=float)
    U0 = None if U0 is None else np.asarray(U0, dtype=float)
    if resolve_common_posterior(data, common_cov):
        accumulate_common_cov(acc, data, u_stack, weights, A=A, Vinv=Vinv, U0=U0)
    else:
        accumulate_general(acc, data, u_stack, weights, A=A, Vinv=Vinv, U0=U0)
    return acc.finalize()


def compute_posterior_matrices_univariate(
    bhat: np.ndarray,
    shat: np.ndarray | None,
    U: np.ndarray,
    posterior_weights: np.ndarray,
    shat_alpha: np.ndarray | None = None,
    v: float = 1.0,
    report_type: int = REPORT_DEFAULT,
) -> PosteriorMatrices:
    """Univariate (single condition) version of :func:`compute_posterior_matrices`.

    ``U`` holds P prior variances and ``v`` the noise variance multiplier, so
    the noise variance of effect j is ``shat[j]**2 * v``. No matrix inverse
    is needed. Outputs are vectors of length J; ``posterior_cov`` is None.
    """
    report_type = _check_report_type(report_type)
    b = np.asarray(bhat, dtype=float)
    if b.ndim != 1:
        raise ValueError("bhat must be 1D")
    J = b.size
    s = np.ones(J, dtype=float) if shat is None else np.asarray(shat, dtype=float)
    sa = np.ones(J, dtype=float) if shat_alpha is None else np.asarray(shat_alpha, dtype=float)
    if s.shape != (J,) or sa.shape != (J,):
        raise ValueError("shat and shat_alpha must match the length of bhat")
    u = np.asarray(U, dtype=float).ravel()
    weights = _check_weights(posterior_weights, J, u.size)

    vinv = 1.0 / (s * s * v)
    acc = _MixtureAccumulator((J,), report_type)
    for p, u_p in enumerate(u):
        U1 = u_p / (vinv * u_p + 1.0)
        mu = U1 * vinv * b * sa
        acc.add(p, weights[:, p], mu, U1 * sa * sa)
    return acc.finalize()


__all__ = [
    "REPORT_MEAN",
    "REPORT_SECOND_MOMENT",
    "REPORT_DEFAULT",
    "REPORT_COVARIANCE",
    "PosteriorMatrices",
    "posterior_cov",
    "posterior_mean",
    "posterior_mean_matrix",
    "compute_posterior_weights",
    "posterior_weights_from_loglik",
    "compute_posterior_matrices",
    "compute_posterior_matrices_univariate",
]
