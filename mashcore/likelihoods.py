from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Union
import warnings

import numpy as np

from ._numerics import LOG_2PI, dnorm, inverse_cholesky_root, mvn_logpdf_batch, mvn_logpdf_rooti, mvn_logpdf_stack
from .data import EffectData, build_cov_stack

UlistLike = Union[Sequence[np.ndarray], Mapping[str, np.ndarray], np.ndarray]


@dataclass
class RelativeLikelihoodResult:
    loglik_matrix: np.ndarray
    lfactors: np.ndarray


def as_u_stack(Ulist: UlistLike, R: int | None = None) -> np.ndarray:
    """Stack prior covariances into a ``(P, R, R)`` array, checking shapes."""
    if isinstance(Ulist, Mapping):
        mats = [np.asarray(u, dtype=float) for u in Ulist.values()]
    else:
        mats = [np.asarray(u, dtype=float) for u in Ulist]
    if not mats:
        raise ValueError("Ulist cannot be empty")
    if R is None:
        R = mats[0].shape[0]
    for i, U in enumerate(mats):
        if U.shape != (R, R):
            raise ValueError(f"Ulist[{i}] must be of shape ({R}, {R})")
    return np.stack(mats, axis=0)


def _resolve_common_lik(data: EffectData, common_cov: bool | None) -> bool:
    if common_cov is None:
        return data.is_common_cov_shat()
    if common_cov and not data.is_common_cov_shat():
        raise ValueError("common_cov=True requires identical noise covariance for every effect")
    return bool(common_cov)


def _warn_nonfinite(res: np.ndarray) -> None:
    bad = np.any(~np.isfinite(res), axis=0)
    if np.any(bad):
        cols = np.where(bad)[0]
        warnings.warn(
            "Some mixture components produced non-finite likelihoods; "
            f"columns: {', '.join(map(str, cols.tolist()))}",
            RuntimeWarning,
            stacklevel=3,
        )


def calc_lik_vector(bhat: np.ndarray, V: np.ndarray, Ulist: UlistLike, log: bool = False) -> np.ndarray:
    """Likelihood of a single effect vector under each prior covariance."""
    bhat = np.asarray(bhat, dtype=float)
    u_stack = as_u_stack(Ulist, R=bhat.size)
    X = bhat[None, :]
    out = np.array([mvn_logpdf_batch(X, np.zeros_like(bhat), U + V)[0] for U in u_stack])
    if log:
        return out
    return np.exp(out)


def calc_lik_matrix(
    data: EffectData,
    Ulist: UlistLike,
    log: bool = False,
    common_cov: bool | None = None,
) -> np.ndarray:
    """Compute JxP matrix of component likelihoods p(bhat_j | U_p, V_j).

    Parameters
    ----------
    data : EffectData
        Effects and standard errors.
    Ulist : sequence of np.ndarray
        Prior covariance matrices, each ``(R, R)``.
    log : bool
        Return log-likelihoods.
    common_cov : bool, optional
        Use the shared-noise path, which factors ``Sigma + U_p`` once per
        component and scores every effect against it. ``None`` (default)
        picks it whenever all effects share one noise covariance.

    Returns
    -------
    np.ndarray
        Likelihood matrix of shape ``(J, P)``.
    """
    u_stack = as_u_stack(Ulist, R=data.n_conditions)
    J, R = data.Bhat.shape
    P = u_stack.shape[0]
    zero = np.zeros(R, dtype=float)
    res = np.empty((J, P), dtype=float)

    if _resolve_common_lik(data, common_cov):
        sigma = data.get_cov(0)
        for p in range(P):
            res[:, p] = mvn_logpdf_batch(data.Bhat, zero, sigma + u_stack[p])
    else:
        cov_stack = build_cov_stack(data)
        for p in range(P):
            res[:, p] = mvn_logpdf_stack(data.Bhat, zero, cov_stack + u_stack[p])

    _warn_nonfinite(res)
    if log:
        return res
    return np.exp(res)


def compute_rooti(data: EffectData, Ulist: UlistLike, common_cov: bool | None = None) -> np.ndarray:
    """Precompute inverse Cholesky roots of ``Sigma_j + U_p``.

    Returns an array of shape ``(P, R, R)`` when the noise covariance is
    shared, otherwise ``(J, P, R, R)``. Every ``Sigma_j + U_p`` must be
    positive definite; use :func:`calc_lik_matrix` for degenerate cases.
    """
    u_stack = as_u_stack(Ulist, R=data.n_conditions)
    if _resolve_common_lik(data, common_cov):
        sigma = data.get_cov(0)
        return np.stack([inverse_cholesky_root(sigma + U) for U in u_stack], axis=0)

    cov_stack = build_cov_stack(data)
    J, R = data.Bhat.shape
    out = np.empty((J, u_stack.shape[0], R, R), dtype=float)
    for j in range(J):
        for p, U in enumerate(u_stack):
            out[j, p] = inverse_cholesky_root(cov_stack[j] + U)
    return out


def calc_lik_matrix_rooti(Bhat: np.ndarray, rooti: np.ndarray, log: bool = False) -> np.ndarray:
    """Compute JxP likelihoods from precomputed inverse Cholesky roots.

    ``rooti`` of shape ``(P, R, R)`` is shared by all effects; shape
    ``(J, P, R, R)`` holds one root per effect and component.
    """
    Bhat = np.asarray(Bhat, dtype=float)
    rooti = np.asarray(rooti, dtype=float)
    if Bhat.ndim != 2:
        raise ValueError("Bhat must be 2D")
    J, R = Bhat.shape
    zero = np.zeros(R, dtype=float)

    if rooti.ndim == 3:
        if rooti.shape[1:] != (R, R):
            raise ValueError(f"rooti must have shape (P, {R}, {R})")
        res = np.column_stack([mvn_logpdf_rooti(Bhat, zero, r) for r in rooti])
    elif rooti.ndim == 4:
        if rooti.shape[0] != J or rooti.shape[2:] != (R, R):
            raise ValueError(f"rooti must have shape ({J}, P, {R}, {R})")
        z = np.einsum("jprs,js->jpr", rooti, Bhat)
        quad = np.sum(z * z, axis=2)
        rootisum = np.sum(np.log(np.diagonal(rooti, axis1=2, axis2=3)), axis=2)
        res = -0.5 * R * LOG_2PI - 0.5 * quad + rootisum
    else:
        raise ValueError("rooti must be 3D (shared) or 4D (per effect)")

    if log:
        return res
    return np.exp(res)


def calc_lik_matrix_univariate(
    bhat: np.ndarray,
    shat: np.ndarray | None,
    v: float,
    U: np.ndarray,
    log: bool = False,
) -> np.ndarray:
    """Compute JxP likelihoods for a single condition.

    ``U`` holds P prior variances; the noise variance of effect j is
    ``shat[j]**2 * v``.
    """
    b = np.asarray(bhat, dtype=float)
    if b.ndim != 1:
        raise ValueError("bhat must be 1D")
    s = np.ones_like(b) if shat is None else np.asarray(shat, dtype=float)
    if s.shape != b.shape:
        raise ValueError("bhat and shat must have the same length")
    u = np.asarray(U, dtype=float).ravel()

    sigma = s * s * v
    res = dnorm(b[:, None], 0.0, sigma[:, None] + u[None, :], log=log)
    return res


def calc_relative_lik_matrix(
    data: EffectData,
    Ulist: UlistLike,
    common_cov: bool | None = None,
) -> RelativeLikelihoodResult:
    matrix_llik = calc_lik_matrix(data, Ulist, log=True, common_cov=common_cov)
    lfactors = np.max(matrix_llik, axis=1)
    matrix_llik = matrix_llik - lfactors[:, None]
    return RelativeLikelihoodResult(loglik_matrix=matrix_llik, lfactors=lfactors)


__all__ = [
    "RelativeLikelihoodResult",
    "as_u_stack",
    "calc_lik_vector",
    "calc_lik_matrix",
    "compute_rooti",
    "calc_lik_matrix_rooti",
    "calc_lik_matrix_univariate",
    "calc_relative_lik_matrix",
]
