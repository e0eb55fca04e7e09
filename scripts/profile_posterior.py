from __future__ import annotations

import argparse
import cProfile
import pstats
import time

import numpy as np

from mashcore.data import set_effect_data
from mashcore.likelihoods import calc_lik_matrix
from mashcore.posterior import compute_posterior_matrices, posterior_weights_from_loglik
from mashcore.simulations import canonical_ulist, simple_sims


def run_profile(nsamp: int = 5000, ncond: int = 10, err_sd: float = 1.0, general: bool = False) -> None:
    sim = simple_sims(nsamp=nsamp, ncond=ncond, err_sd=err_sd, seed=2026)
    shat = sim["Shat"]
    if general:
        # Per-effect errors force the batched per-effect path.
        shat = shat * np.random.default_rng(7).uniform(0.5, 1.5, size=shat.shape)
    data = set_effect_data(sim["Bhat"], shat)
    base = list(canonical_ulist(ncond).values())
    U = [g * Uk for g in (0.5, 1.0) for Uk in base]
    pi = np.full(len(U), 1.0 / len(U))

    profiler = cProfile.Profile()
    t0 = time.perf_counter()
    profiler.enable()
    loglik = calc_lik_matrix(data, U, log=True)
    w = posterior_weights_from_loglik(pi, loglik)
    _ = compute_posterior_matrices(data, U, w, report_type=4)
    profiler.disable()
    t1 = time.perf_counter()

    print(f"Elapsed seconds: {t1 - t0:.3f}")
    print(f"Problem size: J={data.n_effects}, R={data.n_conditions}, P={len(U)}, common={data.is_common_cov()}")
    print("Top 20 cumulative-time functions:")
    stats = pstats.Stats(profiler).sort_stats("cumulative")
    stats.print_stats(20)


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Profile likelihood and posterior computation.")
    parser.add_argument("--nsamp", type=int, default=5000)
    parser.add_argument("--ncond", type=int, default=10)
    parser.add_argument("--general", action="store_true", help="Use per-effect standard errors.")
    args = parser.parse_args()
    run_profile(nsamp=args.nsamp, ncond=args.ncond, general=args.general)
