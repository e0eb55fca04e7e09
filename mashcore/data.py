from __future__ import annotations

from dataclasses import dataclass

import numpy as np


def get_cov(s: np.ndarray, V: np.ndarray, L: np.ndarray | None = None) -> np.ndarray:
    """Return ``diag(s) @ V @ diag(s)``, optionally mapped through ``L``.

    The diagonal matrix is never formed: rows and columns of ``V`` are scaled
    by broadcasting. With ``L`` the result is ``L @ diag(s) V diag(s) @ L.T``
    (the baseline-contrast noise covariance).
    """
    s = np.asarray(s, dtype=float)
    svs = V * s[:, None] * s[None, :]
    if L is None:
        return svs
    return L @ svs @ L.T


@dataclass(frozen=True)
class StandardErrors:
    """Per-unit standard errors and posterior rescaling factors.

    ``shat`` are the standard errors on the scale the effects are modelled
    on, ``shat_alpha`` the factors that map posterior quantities back to the
    effect scale, and ``shat_orig`` the raw standard errors before a
    baseline contrast was applied. Use :meth:`resolve_original` whenever the
    noise covariance is needed; it falls back to ``shat`` when no original
    errors were recorded.
    """

    shat: np.ndarray
    shat_alpha: np.ndarray
    shat_orig: np.ndarray | None = None

    @classmethod
    def create(
        cls,
        shape: tuple[int, int],
        shat: np.ndarray | float | None = None,
        shat_alpha: np.ndarray | None = None,
        shat_orig: np.ndarray | None = None,
    ) -> "StandardErrors":
        if shat is None:
            s = np.ones(shape, dtype=float)
        else:
            s = _as_2d_float_array(shat, "Shat", shape=shape)
        if s.shape != shape:
            raise ValueError(f"Shat must have shape {shape}")

        if shat_alpha is None:
            sa = np.ones(shape, dtype=float)
        else:
            sa = _as_2d_float_array(shat_alpha, "Shat_alpha", shape=shape)
            if sa.shape != shape:
                raise ValueError(f"Shat_alpha must have shape {shape}")

        so = None
        if shat_orig is not None:
            so = _as_2d_float_array(shat_orig, "Shat_orig")
            if so.shape[0] != shape[0]:
                raise ValueError("Shat_orig must have one row per effect")
        return cls(shat=s, shat_alpha=sa, shat_orig=so)

    def resolve_original(self) -> np.ndarray:
        if self.shat_orig is None:
            return self.shat
        return self.shat_orig


@dataclass(frozen=True)
class EffectData:
    """Container for effect estimates, created by :func:`set_effect_data`.

    - :attr:`Bhat` : effects ``(J, R)``, one row per unit
    - :attr:`errors` : the :class:`StandardErrors` for the same units
    - :attr:`V` : noise correlation among raw conditions ``(R0, R0)``
    - :attr:`L` : optional baseline transform ``(R, R0)``; when set, ``Bhat``
      lives in the transformed coordinates and the noise covariance is
      built from the raw standard errors
    """

    Bhat: np.ndarray
    errors: StandardErrors
    V: np.ndarray
    L: np.ndarray | None = None

    @property
    def n_effects(self) -> int:
        return int(self.Bhat.shape[0])

    @property
    def n_conditions(self) -> int:
        return int(self.Bhat.shape[1])

    @property
    def Shat(self) -> np.ndarray:
        return self.errors.shat

    @property
    def Shat_alpha(self) -> np.ndarray:
        return self.errors.shat_alpha

    def get_cov(self, j: int) -> np.ndarray:
        """Return the noise covariance matrix of unit j."""
        if j < 0 or j >= self.n_effects:
            raise IndexError("j out of bounds")
        return get_cov(self.errors.resolve_original()[j], self.V, self.L)

    def is_common_cov_shat(self) -> bool:
        S = self.errors.resolve_original()
        return _rows_identical(S)

    def is_common_cov_shat_alpha(self) -> bool:
        return _rows_identical(self.errors.shat_alpha)

    def is_common_cov(self) -> bool:
        return self.is_common_cov_shat() and self.is_common_cov_shat_alpha()


def _rows_identical(S: np.ndarray) -> bool:
    if S.shape[0] <= 1:
        return True
    return bool(np.all(np.isclose(S, S[0], equal_nan=True)))


def _as_2d_float_array(x: np.ndarray | float, name: str, shape: tuple[int, int] | None = None) -> np.ndarray:
    arr = np.asarray(x, dtype=float)
    if arr.ndim == 0:
        if shape is None:
            raise ValueError(f"{name} scalar requires target shape")
        arr = np.full(shape, float(arr), dtype=float)
    if arr.ndim != 2:
        raise ValueError(f"{name} must be a 2D array")
    return arr


def _check_positive_definite(x: np.ndarray, name: str) -> None:
    if x.ndim != 2 or x.shape[0] != x.shape[1]:
        raise ValueError(f"{name} must be a square matrix")
    if not np.all(np.isfinite(x)):
        raise ValueError(f"{name} must be finite")
    if not np.allclose(x, x.T, atol=1e-10, rtol=0.0):
        raise ValueError(f"{name} must be symmetric")
    try:
        np.linalg.cholesky(x)
    except np.linalg.LinAlgError as exc:
        raise ValueError(f"{name} must be positive definite") from exc


def _check_positive(x: np.ndarray, name: str) -> None:
    if not np.all(np.isfinite(x)):
        raise ValueError(f"{name} must be finite")
    if np.any(x <= 0.0):
        raise ValueError(f"{name} must be strictly positive")


def set_effect_data(
    Bhat: np.ndarray,
    Shat: np.ndarray | float | None = None,
    Shat_alpha: np.ndarray | None = None,
    Shat_orig: np.ndarray | None = None,
    V: np.ndarray | None = None,
    L: np.ndarray | None = None,
    alpha: float = 0.0,
) -> EffectData:
    """Create and validate an EffectData object.

    Parameters
    ----------
    Bhat : np.ndarray
        Observed effects, shape ``(J, R)``.
    Shat : np.ndarray or float, optional
        Standard errors, shape ``(J, R)``, or a scalar. Defaults to ones.
    Shat_alpha : np.ndarray, optional
        Factors that rescale posterior quantities back to the effect scale,
        shape ``(J, R)``. Defaults to ones.
    Shat_orig : np.ndarray, optional
        Raw standard errors ``(J, R0)`` before the baseline transform ``L``.
        Required when ``L`` is given.
    V : np.ndarray, optional
        Noise correlation among raw conditions, shape ``(R0, R0)``.
        Defaults to identity.
    L : np.ndarray, optional
        Baseline transform of shape ``(R, R0)``.
    alpha : float
        ``alpha=0`` models the raw effects; ``alpha=1`` models z-scores.
        Non-zero values set ``Shat_alpha = Shat**alpha`` and rescale
        ``Bhat`` and ``Shat`` accordingly.

    Returns
    -------
    EffectData

    Examples
    --------
    >>> data = set_effect_data(Bhat, Shat)
    >>> data.n_effects, data.n_conditions
    (400, 5)
    """
    bhat = np.array(_as_2d_float_array(Bhat, "Bhat"), copy=True)
    J, R = bhat.shape
    if J == 0:
        raise ValueError("Bhat must have at least one row")
    if R == 0:
        raise ValueError("Bhat must have at least one column")
    if not np.all(np.isfinite(bhat)):
        raise ValueError("Bhat must be finite")

    shat = None
    if Shat is not None:
        shat = np.array(_as_2d_float_array(Shat, "Shat", shape=(J, R)), copy=True)
        if shat.shape != bhat.shape:
            raise ValueError("dimensions of Bhat and Shat must match")
        _check_positive(shat, "Shat")

    if alpha != 0:
        if Shat_alpha is not None:
            raise ValueError("Either alpha or Shat_alpha can be specified but not both")
        if shat is not None:
            Shat_alpha = shat**alpha
            bhat = bhat / Shat_alpha
            shat = shat ** (1.0 - alpha)
    if Shat_alpha is not None:
        _check_positive(_as_2d_float_array(Shat_alpha, "Shat_alpha", shape=(J, R)), "Shat_alpha")

    if L is not None:
        L = np.asarray(L, dtype=float)
        if L.ndim != 2 or L.shape[0] != R:
            raise ValueError("L must have shape (R, R0) with R matching Bhat")
        if Shat_orig is None:
            raise ValueError("Shat_orig is required when L is set")
        R0 = L.shape[1]
    else:
        R0 = R

    if Shat_orig is not None:
        so = _as_2d_float_array(Shat_orig, "Shat_orig")
        if so.shape != (J, R0):
            raise ValueError(f"Shat_orig must have shape {(J, R0)}")
        _check_positive(so, "Shat_orig")

    if V is None:
        vmat = np.eye(R0, dtype=float)
    else:
        vmat = np.asarray(V, dtype=float)
        if vmat.shape != (R0, R0):
            raise ValueError("dimension of correlation matrix does not match the number of conditions")
        _check_positive_definite(vmat, "V")

    errors = StandardErrors.create((J, R), shat=shat, shat_alpha=Shat_alpha, shat_orig=Shat_orig)
    return EffectData(Bhat=bhat, errors=errors, V=vmat, L=L)


def build_cov_stack(data: EffectData) -> np.ndarray:
    """Build per-effect noise covariance stack with shape (J, R, R)."""
    S = data.errors.resolve_original()
    svs = data.V[None, :, :] * S[:, :, None] * S[:, None, :]
    if data.L is None:
        return svs
    return data.L @ svs @ data.L.T


def contrast_matrix(R: int, ref: int | str) -> np.ndarray:
    """Create a contrast matrix comparing conditions to a reference.

    Parameters
    ----------
    R : int
        Number of conditions.
    ref : int or str
        0-based index of the reference condition, or ``"mean"`` for
        deviation-from-mean contrasts.

    Returns
    -------
    np.ndarray
        Contrast matrix of shape ``(R-1, R)``.

    Examples
    --------
    >>> contrast_matrix(3, ref=0)
    array([[-1.,  1.,  0.],
           [-1.,  0.,  1.]])
    """
    if ref == "mean":
        L = np.full((R, R), -1.0 / R)
        np.fill_diagonal(L, (R - 1.0) / R)
        return L[:-1]

    if isinstance(ref, str) or ref < 0 or ref >= R:
        raise ValueError("ref must be 'mean' or an index between 0 and R-1")

    L = np.eye(R, dtype=float)
    L[:, ref] = -1.0
    return np.delete(L, ref, axis=0)


def set_contrast_data(data: EffectData, L: np.ndarray) -> EffectData:
    """Move effect data into the coordinates defined by a baseline transform."""
    if data.L is not None:
        raise ValueError("The data is already configured for contrast analysis")
    L = np.asarray(L, dtype=float)
    if L.ndim != 2 or L.shape[1] != data.n_conditions:
        raise ValueError("The contrast matrix has invalid dimensions")

    contrasted = EffectData(
        Bhat=data.Bhat @ L.T,
        errors=StandardErrors(
            shat=np.ones((data.n_effects, L.shape[0]), dtype=float),
            shat_alpha=np.ones((data.n_effects, L.shape[0]), dtype=float),
            shat_orig=data.Shat,
        ),
        V=data.V,
        L=L,
    )
    cov_stack = build_cov_stack(contrasted)
    shat = np.sqrt(np.maximum(np.diagonal(cov_stack, axis1=1, axis2=2), 0.0))
    return EffectData(
        Bhat=contrasted.Bhat,
        errors=StandardErrors(shat=shat, shat_alpha=contrasted.Shat_alpha, shat_orig=data.Shat),
        V=data.V,
        L=L,
    )


__all__ = [
    "StandardErrors",
    "EffectData",
    "get_cov",
    "set_effect_data",
    "build_cov_stack",
    "contrast_matrix",
    "set_contrast_data",
]
