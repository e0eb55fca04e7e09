import numpy as np
import pytest
from scipy.stats import multivariate_normal, norm

from mashcore.data import build_cov_stack, contrast_matrix, set_contrast_data, set_effect_data
from mashcore.likelihoods import (
    as_u_stack,
    calc_lik_matrix,
    calc_lik_matrix_rooti,
    calc_lik_matrix_univariate,
    calc_lik_vector,
    calc_relative_lik_matrix,
    compute_rooti,
)
from mashcore.simulations import random_correlation


def _ulist() -> list[np.ndarray]:
    return [np.eye(2), np.array([[1.0, 0.3], [0.3, 1.0]]), np.zeros((2, 2))]


def test_calc_lik_matrix_matches_scipy_common_cov():
    Bhat = np.array([[0.1, -0.2], [0.3, 0.4], [-0.5, 0.2]])
    data = set_effect_data(Bhat, Shat=1.0)

    U = _ulist()
    ll = calc_lik_matrix(data, U, log=True)

    expected = np.column_stack(
        [
            multivariate_normal(mean=np.zeros(2), cov=np.eye(2) + Uk).logpdf(Bhat)
            for Uk in U
        ]
    )
    assert np.allclose(ll, expected, atol=1e-10)
    assert np.allclose(calc_lik_matrix(data, U), np.exp(expected))


def test_calc_lik_matrix_matches_scipy_general_cov():
    rng = np.random.default_rng(7)
    V = random_correlation(2, seed=8)
    Bhat = rng.normal(size=(5, 2))
    Shat = rng.uniform(0.5, 2.0, size=(5, 2))
    data = set_effect_data(Bhat, Shat, V=V)

    U = _ulist()
    ll = calc_lik_matrix(data, U, log=True)
    for j in range(5):
        for p, Uk in enumerate(U):
            expected = multivariate_normal(np.zeros(2), data.get_cov(j) + Uk).logpdf(Bhat[j])
            assert np.isclose(ll[j, p], expected)


def test_common_and_general_paths_agree():
    rng = np.random.default_rng(1)
    data = set_effect_data(rng.normal(size=(6, 2)), Shat=0.8, V=random_correlation(2, seed=2))
    U = _ulist()
    np.testing.assert_allclose(
        calc_lik_matrix(data, U, log=True, common_cov=True),
        calc_lik_matrix(data, U, log=True, common_cov=False),
        rtol=1e-10,
    )


def test_forcing_common_path_on_varying_errors_raises():
    data = set_effect_data(np.zeros((2, 2)), np.array([[1.0, 1.0], [2.0, 1.0]]))
    with pytest.raises(ValueError, match="common_cov=True"):
        calc_lik_matrix(data, _ulist(), common_cov=True)


def test_rooti_cache_reproduces_likelihoods():
    rng = np.random.default_rng(3)
    U = [np.eye(2), np.array([[2.0, 0.5], [0.5, 1.0]])]

    common = set_effect_data(rng.normal(size=(4, 2)), Shat=1.3)
    rooti = compute_rooti(common, U)
    assert rooti.shape == (2, 2, 2)
    np.testing.assert_allclose(calc_lik_matrix_rooti(common.Bhat, rooti, log=True), calc_lik_matrix(common, U, log=True))

    general = set_effect_data(rng.normal(size=(4, 2)), rng.uniform(0.5, 1.5, size=(4, 2)))
    rooti = compute_rooti(general, U)
    assert rooti.shape == (4, 2, 2, 2)
    np.testing.assert_allclose(calc_lik_matrix_rooti(general.Bhat, rooti), calc_lik_matrix(general, U))


def test_rooti_shape_validation():
    with pytest.raises(ValueError, match="rooti must have shape"):
        calc_lik_matrix_rooti(np.zeros((3, 2)), np.zeros((1, 3, 3)))
    with pytest.raises(ValueError, match="3D"):
        calc_lik_matrix_rooti(np.zeros((3, 2)), np.eye(2))


def test_calc_lik_matrix_univariate_matches_scipy():
    b = np.array([0.0, 1.5, -2.0])
    s = np.array([1.0, 0.5, 2.0])
    U = np.array([0.0, 1.0, 4.0])
    v = 1.2
    ll = calc_lik_matrix_univariate(b, s, v, U, log=True)
    expected = norm.logpdf(b[:, None], scale=np.sqrt(s[:, None] ** 2 * v + U[None, :]))
    np.testing.assert_allclose(ll, expected)

    with pytest.raises(ValueError, match="same length"):
        calc_lik_matrix_univariate(b, s[:2], v, U)


def test_calc_lik_vector_matches_matrix_row():
    Bhat = np.array([[0.4, -1.1]])
    data = set_effect_data(Bhat, Shat=1.0)
    U = _ulist()
    np.testing.assert_allclose(calc_lik_vector(Bhat[0], np.eye(2), U), calc_lik_matrix(data, U)[0])


def test_relative_lik_matrix_row_max_is_zero():
    rng = np.random.default_rng(5)
    data = set_effect_data(rng.normal(size=(5, 2)) * 3.0, Shat=1.0)
    U = _ulist()
    rel = calc_relative_lik_matrix(data, U)
    np.testing.assert_allclose(np.max(rel.loglik_matrix, axis=1), 0.0)
    np.testing.assert_allclose(rel.loglik_matrix + rel.lfactors[:, None], calc_lik_matrix(data, U, log=True))


def test_as_u_stack_accepts_mapping_and_array():
    U = {"identity": np.eye(2), "null": np.zeros((2, 2))}
    stacked = as_u_stack(U)
    assert stacked.shape == (2, 2, 2)
    np.testing.assert_array_equal(as_u_stack(stacked), stacked)

    with pytest.raises(ValueError, match="cannot be empty"):
        as_u_stack([])
    with pytest.raises(ValueError, match="must be of shape"):
        as_u_stack([np.eye(2), np.eye(3)])


def test_noise_covariance_stack_used_by_general_path():
    data = set_effect_data(np.zeros((2, 2)), np.array([[1.0, 2.0], [3.0, 1.0]]))
    stack = build_cov_stack(data)
    ll = calc_lik_matrix(data, [np.zeros((2, 2))], log=True)
    for j in range(2):
        assert np.isclose(ll[j, 0], multivariate_normal(np.zeros(2), stack[j]).logpdf(np.zeros(2)))


def test_calc_lik_matrix_on_contrast_data_matches_scipy():
    rng = np.random.default_rng(21)
    V = random_correlation(3, seed=22)
    Shat = rng.uniform(0.5, 1.5, size=(5, 3))
    L = contrast_matrix(3, ref=0)
    data = set_contrast_data(set_effect_data(rng.normal(size=(5, 3)), Shat, V=V), L)
    U = _ulist()

    ll = calc_lik_matrix(data, U, log=True)
    for j in range(5):
        sigma = L @ (np.diag(Shat[j]) @ V @ np.diag(Shat[j])) @ L.T
        for p, Uk in enumerate(U):
            expected = multivariate_normal(np.zeros(2), sigma + Uk).logpdf(data.Bhat[j])
            assert np.isclose(ll[j, p], expected)

    rooti = compute_rooti(data, U[:2])
    np.testing.assert_allclose(calc_lik_matrix_rooti(data.Bhat, rooti, log=True), ll[:, :2])
