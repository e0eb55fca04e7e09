from __future__ import annotations

import numpy as np


def random_correlation(R: int, seed: int | None = None, ridge: float = 0.2) -> np.ndarray:
    """Draw a random well-conditioned ``(R, R)`` correlation matrix."""
    rng = np.random.default_rng(seed)
    m = rng.normal(size=(R, R))
    c = m @ m.T + ridge * np.eye(R)
    d = np.sqrt(np.diag(c))
    return c / np.outer(d, d)


def simple_sims(nsamp: int = 100, ncond: int = 5, err_sd: float = 0.01, seed: int | None = None) -> dict[str, np.ndarray]:
    """Simulate blocks of null, independent, condition-1-only and shared effects.

    Returns
    -------
    dict
        ``B`` (true effects), ``Bhat`` and ``Shat``, each ``(4*nsamp, ncond)``.
        Rows come in the block order above.

    Examples
    --------
    >>> sim = simple_sims(50, ncond=3, err_sd=1.0, seed=42)
    >>> sim["Bhat"].shape
    (200, 3)
    """
    rng = np.random.default_rng(seed)
    blocks = np.zeros((4, nsamp, ncond), dtype=float)
    blocks[1] = rng.normal(size=(nsamp, ncond))
    blocks[2, :, 0] = rng.normal(size=nsamp)
    blocks[3] = rng.normal(size=(nsamp, 1))

    B = blocks.reshape(4 * nsamp, ncond)
    Shat = np.full(B.shape, float(err_sd))
    return {"B": B, "Bhat": B + Shat * rng.normal(size=B.shape), "Shat": Shat}


def canonical_ulist(R: int) -> dict[str, np.ndarray]:
    """A small fixed set of prior covariances: null, identity, equal effects
    and one singleton per condition."""
    out = {
        "null": np.zeros((R, R), dtype=float),
        "identity": np.eye(R, dtype=float),
        "equal_effects": np.ones((R, R), dtype=float),
    }
    for r in range(R):
        U = np.zeros((R, R), dtype=float)
        U[r, r] = 1.0
        out[f"singleton_{r + 1}"] = U
    return out


def simulate_mixture(
    n_effects: int,
    Ulist: list[np.ndarray],
    pi: np.ndarray,
    Shat: np.ndarray | float = 1.0,
    V: np.ndarray | None = None,
    seed: int | None = None,
) -> dict[str, np.ndarray]:
    """Draw effects from a mixture of zero-mean normals plus correlated noise.

    Returns
    -------
    dict
        ``B`` and ``Bhat`` of shape ``(n_effects, R)``, ``Shat`` of the same
        shape, and ``component`` with the index of the generating component.
    """
    rng = np.random.default_rng(seed)
    u_stack = np.stack([np.asarray(U, dtype=float) for U in Ulist], axis=0)
    R = u_stack.shape[1]
    pi = np.asarray(pi, dtype=float)
    if pi.shape != (u_stack.shape[0],):
        raise ValueError("pi must have one entry per covariance matrix")

    component = rng.choice(pi.size, size=n_effects, p=pi / np.sum(pi))
    B = np.zeros((n_effects, R), dtype=float)
    for p in range(pi.size):
        idx = np.where(component == p)[0]
        if idx.size:
            B[idx] = rng.multivariate_normal(np.zeros(R), u_stack[p], size=idx.size, method="eigh")

    S = np.broadcast_to(np.asarray(Shat, dtype=float), (n_effects, R)).copy()
    Vm = np.eye(R) if V is None else np.asarray(V, dtype=float)
    E = rng.multivariate_normal(np.zeros(R), Vm, size=n_effects) * S
    return {"B": B, "Bhat": B + E, "Shat": S, "component": component}


__all__ = ["random_correlation", "simple_sims", "canonical_ulist", "simulate_mixture"]
