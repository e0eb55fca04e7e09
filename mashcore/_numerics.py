from __future__ import annotations

import numpy as np
from scipy.linalg import solve_triangular
from scipy.special import log_ndtr, ndtr

LOG_2PI = float(np.log(2.0 * np.pi))

# L1 distance under which a point counts as sitting on a degenerate mean.
POINT_MASS_TOL = 1e-6


def dnorm(
    x: np.ndarray | float,
    mean: np.ndarray | float,
    var: np.ndarray | float,
    log: bool = False,
) -> np.ndarray:
    """Elementwise univariate normal density parameterised by variance."""
    x = np.asarray(x, dtype=float)
    mean = np.asarray(mean, dtype=float)
    var = np.asarray(var, dtype=float)
    out = -0.5 * (LOG_2PI + np.log(var)) - (x - mean) ** 2 / (2.0 * var)
    if log:
        return out
    return np.exp(out)


def inverse_cholesky_root(sigma: np.ndarray) -> np.ndarray:
    """Return lower-triangular ``rooti`` with ``rooti @ sigma @ rooti.T == I``.

    Raises ``numpy.linalg.LinAlgError`` when ``sigma`` is not positive definite.
    """
    L = np.linalg.cholesky(np.asarray(sigma, dtype=float))
    return solve_triangular(L, np.eye(L.shape[0]), lower=True, check_finite=False)


def _point_mass_logpdf(X: np.ndarray, mean: np.ndarray) -> np.ndarray:
    diff_l1 = np.sum(np.abs(X - mean), axis=-1)
    out = np.full(diff_l1.shape, -np.inf)
    out[diff_l1 < POINT_MASS_TOL] = np.inf
    return out


def mvn_logpdf_batch(X: np.ndarray, mean: np.ndarray, sigma: np.ndarray) -> np.ndarray:
    """Evaluate multivariate normal log-pdf for all rows of X."""
    X = np.asarray(X, dtype=float)
    mean = np.asarray(mean, dtype=float)
    sigma = np.asarray(sigma, dtype=float)

    if X.ndim != 2:
        raise ValueError("X must be 2D")
    if mean.ndim != 1:
        raise ValueError("mean must be 1D")
    if sigma.ndim != 2 or sigma.shape[0] != sigma.shape[1]:
        raise ValueError("sigma must be square")
    if X.shape[1] != mean.size or sigma.shape[0] != mean.size:
        raise ValueError("shape mismatch between X, mean, and sigma")

    try:
        rooti = inverse_cholesky_root(sigma)
    except np.linalg.LinAlgError:
        # Singular covariance: all mass sits on the mean.
        return _point_mass_logpdf(X, mean[None, :])
    return mvn_logpdf_rooti(X, mean, rooti)


def mvn_logpdf_rooti(X: np.ndarray, mean: np.ndarray, rooti: np.ndarray) -> np.ndarray:
    """Log-pdf of every row of X given a precomputed inverse Cholesky root."""
    X = np.asarray(X, dtype=float)
    rooti = np.asarray(rooti, dtype=float)
    R = rooti.shape[0]
    z = (X - mean) @ rooti.T
    quad = np.sum(z * z, axis=-1)
    rootisum = np.sum(np.log(np.diag(rooti)))
    return -0.5 * R * LOG_2PI - 0.5 * quad + rootisum


def mvn_logpdf_stack(X: np.ndarray, mean: np.ndarray, sigma_stack: np.ndarray) -> np.ndarray:
    """Log-pdf of row j of X under ``N(mean, sigma_stack[j])``.

    All covariances are factored in one batched Cholesky call; when any of
    them is singular the rows are evaluated one at a time so the point-mass
    rule only applies to the offending rows.
    """
    X = np.asarray(X, dtype=float)
    sigma_stack = np.asarray(sigma_stack, dtype=float)
    J, R = X.shape
    if sigma_stack.shape != (J, R, R):
        raise ValueError(f"sigma_stack must have shape {(J, R, R)}")
    mean = np.broadcast_to(np.asarray(mean, dtype=float), (J, R))

    try:
        L = np.linalg.cholesky(sigma_stack)
    except np.linalg.LinAlgError:
        return np.array([mvn_logpdf_batch(X[j : j + 1], mean[j], sigma_stack[j])[0] for j in range(J)])

    centered = (X - mean)[..., None]
    z = np.linalg.solve(L, centered)[..., 0]
    quad = np.sum(z * z, axis=1)
    log_det = 2.0 * np.sum(np.log(np.diagonal(L, axis1=1, axis2=2)), axis=1)
    return -0.5 * (R * LOG_2PI + log_det + quad)


def dmvnorm(
    x: np.ndarray,
    mean: np.ndarray,
    sigma: np.ndarray,
    log: bool = False,
    inversed: bool = False,
) -> np.ndarray | float:
    """Multivariate normal density of a point or of each row of a matrix.

    Parameters
    ----------
    x : np.ndarray
        A single point of length R, or an ``(n, R)`` matrix of points.
    mean : np.ndarray
        Mean vector of length R.
    sigma : np.ndarray
        Covariance matrix, or its inverse Cholesky root when ``inversed``
        is True (see :func:`inverse_cholesky_root`).
    log : bool
        Return the log density.
    inversed : bool
        Whether ``sigma`` is already the inverse Cholesky root.

    Returns
    -------
    float or np.ndarray
        A scalar for a single point, otherwise one value per row. A
        singular covariance yields ``inf`` at the mean and ``0`` (``-inf``
        on the log scale) elsewhere.
    """
    x = np.asarray(x, dtype=float)
    mean = np.asarray(mean, dtype=float)
    single = x.ndim == 1
    X = x[None, :] if single else x

    if inversed:
        out = mvn_logpdf_rooti(X, mean, sigma)
    else:
        out = mvn_logpdf_batch(X, mean, sigma)
    if not log:
        out = np.exp(out)
    return float(out[0]) if single else out


def pnorm(
    x: np.ndarray | float,
    mean: np.ndarray | float = 0.0,
    sd: np.ndarray | float = 1.0,
    lower_tail: bool = True,
    log: bool = False,
) -> np.ndarray:
    x = np.asarray(x, dtype=float)
    mean_arr = np.asarray(mean, dtype=float)
    sd_arr = np.asarray(sd, dtype=float)
    with np.errstate(divide="ignore", invalid="ignore"):
        z = (x - mean_arr) / sd_arr
    if not lower_tail:
        z = -z
    if log:
        return log_ndtr(z)
    return ndtr(z)


def softmax(x: np.ndarray, axis: int = -1) -> np.ndarray:
    x = np.asarray(x, dtype=float)
    y = np.exp(x - np.max(x, axis=axis, keepdims=True))
    return y / np.sum(y, axis=axis, keepdims=True)


def compute_lfsr(neg_prob: np.ndarray, zero_prob: np.ndarray) -> np.ndarray:
    threshold = 0.5 * (1.0 - zero_prob)
    lfsr = np.where(neg_prob > threshold, 1.0 - neg_prob, neg_prob + zero_prob)
    return np.maximum(lfsr, 0.0)


__all__ = [
    "LOG_2PI",
    "POINT_MASS_TOL",
    "dnorm",
    "inverse_cholesky_root",
    "mvn_logpdf_batch",
    "mvn_logpdf_rooti",
    "mvn_logpdf_stack",
    "dmvnorm",
    "pnorm",
    "softmax",
    "compute_lfsr",
]
