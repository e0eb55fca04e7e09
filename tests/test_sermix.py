import numpy as np
import pytest

from mashcore.data import build_cov_stack, contrast_matrix, set_contrast_data, set_effect_data
from mashcore.likelihoods import calc_lik_matrix
from mashcore.posterior import compute_posterior_matrices, posterior_cov, posterior_weights_from_loglik
from mashcore.sermix import compute_sermix_posterior
from mashcore.simulations import random_correlation, simulate_mixture


def _setup(common: bool, seed: int = 0):
    U = [np.eye(2), np.array([[2.0, 0.8], [0.8, 1.0]])]
    shat = 1.0 if common else np.random.default_rng(seed).uniform(0.5, 1.5, size=(7, 2))
    sim = simulate_mixture(7, U, np.array([0.5, 0.5]), Shat=shat, seed=seed)
    data = set_effect_data(sim["Bhat"], sim["Shat"], V=random_correlation(2, seed=seed + 1))
    loglik = calc_lik_matrix(data, U, log=True)
    w = posterior_weights_from_loglik(np.array([0.5, 0.5]), loglik)
    # Inclusion probabilities of each variable under each component.
    alpha = np.exp(loglik - np.max(loglik, axis=0, keepdims=True))
    alpha = alpha / np.sum(alpha, axis=0, keepdims=True)
    return data, U, w, alpha


def test_sermix_matches_mash_summaries():
    data, U, w, _ = _setup(common=False)
    ser = compute_sermix_posterior(data, U, w)
    ref = compute_posterior_matrices(data, U, w, report_type=4)
    for field in ("posterior_mean", "posterior_sd", "negative_prob", "zero_prob", "lfsr", "posterior_cov"):
        np.testing.assert_allclose(getattr(ser, field), getattr(ref, field), atol=1e-12)
    assert ser.prior_scalar is None


def test_sermix_prior_scalar_matches_direct_computation():
    data, U, w, alpha = _setup(common=False, seed=3)
    Uinv = np.stack([np.linalg.inv(Uk) for Uk in U])
    ser = compute_sermix_posterior(data, U, w, variable_weights=alpha, Uinv=Uinv)

    stack = build_cov_stack(data)
    expected = []
    for p, Uk in enumerate(U):
        M = np.zeros((2, 2))
        for j in range(data.n_effects):
            Vinv = np.linalg.inv(stack[j])
            U1 = posterior_cov(Vinv, Uk)
            mu = U1 @ Vinv @ data.Bhat[j]
            M += alpha[j, p] * (U1 + np.outer(mu, mu))
        expected.append(np.trace(Uinv[p] @ M) / 2.0)
    assert ser.prior_scalar.shape == (2,)
    np.testing.assert_allclose(ser.prior_scalar, expected, rtol=1e-10)


def test_sermix_common_and_general_paths_agree():
    data, U, w, alpha = _setup(common=True, seed=5)
    Uinv = np.stack([np.linalg.inv(Uk) for Uk in U])
    a = compute_sermix_posterior(data, U, w, variable_weights=alpha, Uinv=Uinv, common_cov=True)
    b = compute_sermix_posterior(data, U, w, variable_weights=alpha, Uinv=Uinv, common_cov=False)
    np.testing.assert_allclose(a.posterior_mean, b.posterior_mean, atol=1e-12)
    np.testing.assert_allclose(a.posterior_cov, b.posterior_cov, atol=1e-12)
    np.testing.assert_allclose(a.prior_scalar, b.prior_scalar, rtol=1e-10)


def test_sermix_validates_prior_inputs():
    data, U, w, alpha = _setup(common=True, seed=7)
    Uinv = np.stack([np.eye(2), np.eye(2)])
    with pytest.raises(ValueError, match="variable_weights are required"):
        compute_sermix_posterior(data, U, w, Uinv=Uinv)
    with pytest.raises(ValueError, match="Uinv must have shape"):
        compute_sermix_posterior(data, U, w, variable_weights=alpha, Uinv=np.eye(2))
    with pytest.raises(ValueError, match="variable_weights must have shape"):
        compute_sermix_posterior(data, U, w, variable_weights=alpha[:3], Uinv=Uinv)


def test_sermix_precomputed_caches_reproduce_results():
    for common in (True, False):
        data, U, w, alpha = _setup(common=common, seed=9)
        Uinv = np.stack([np.linalg.inv(Uk) for Uk in U])
        ref = compute_sermix_posterior(data, U, w, variable_weights=alpha, Uinv=Uinv)

        if common:
            Vinv = np.linalg.inv(data.get_cov(0))
            U0 = np.stack([posterior_cov(Vinv, Uk) for Uk in U])
        else:
            Vinv = np.linalg.inv(build_cov_stack(data))
            U0 = np.stack([posterior_cov(Vinv, Uk) for Uk in U], axis=1)
        cached = compute_sermix_posterior(
            data, U, w, variable_weights=alpha, Uinv=Uinv, common_cov=common, Vinv=Vinv, U0=U0
        )
        np.testing.assert_allclose(cached.posterior_mean, ref.posterior_mean, atol=1e-12)
        np.testing.assert_allclose(cached.posterior_cov, ref.posterior_cov, atol=1e-12)
        np.testing.assert_allclose(cached.lfsr, ref.lfsr, atol=1e-12)
        np.testing.assert_allclose(cached.prior_scalar, ref.prior_scalar, rtol=1e-10)


def test_sermix_on_contrast_data_matches_mash():
    rng = np.random.default_rng(11)
    Shat = rng.uniform(0.5, 1.5, size=(6, 3))
    raw = set_effect_data(rng.normal(size=(6, 3)), Shat, V=random_correlation(3, seed=12))
    data = set_contrast_data(raw, contrast_matrix(3, ref=0))
    U = [np.eye(2), np.array([[2.0, 0.8], [0.8, 1.0]])]
    w = posterior_weights_from_loglik(np.array([0.5, 0.5]), calc_lik_matrix(data, U, log=True))
    alpha = np.full((6, 2), 1.0 / 6.0)
    Uinv = np.stack([np.linalg.inv(Uk) for Uk in U])

    ser = compute_sermix_posterior(data, U, w, variable_weights=alpha, Uinv=Uinv)
    ref = compute_posterior_matrices(data, U, w, report_type=4)
    np.testing.assert_allclose(ser.posterior_mean, ref.posterior_mean, atol=1e-12)
    np.testing.assert_allclose(ser.posterior_cov, ref.posterior_cov, atol=1e-12)

    stack = build_cov_stack(data)
    expected = []
    for p, Uk in enumerate(U):
        M = np.zeros((2, 2))
        for j in range(6):
            Vinv = np.linalg.inv(stack[j])
            U1 = posterior_cov(Vinv, Uk)
            mu = U1 @ Vinv @ data.Bhat[j]
            M += alpha[j, p] * (U1 + np.outer(mu, mu))
        expected.append(np.trace(Uinv[p] @ M) / 2.0)
    np.testing.assert_allclose(ser.prior_scalar, expected, rtol=1e-10)
