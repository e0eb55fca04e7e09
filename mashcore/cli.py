from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

import numpy as np

from .data import set_effect_data
from .likelihoods import calc_lik_matrix
from .posterior import PosteriorMatrices, compute_posterior_matrices, compute_posterior_matrices_univariate


def _guess_delimiter(path: Path) -> str | None:
    suffix = path.suffix.lower()
    if suffix == ".csv":
        return ","
    if suffix in {".tsv", ".tab"}:
        return "\t"
    return None


def _load_array(path_str: str) -> np.ndarray:
    path = Path(path_str)
    suffix = path.suffix.lower()
    if suffix == ".npy":
        arr = np.load(path)
    elif suffix == ".npz":
        with np.load(path) as zf:
            if len(zf.files) != 1:
                raise ValueError(f"{path} contains multiple arrays; expected exactly one")
            arr = zf[zf.files[0]]
    else:
        arr = np.loadtxt(path, delimiter=_guess_delimiter(path))
    return np.asarray(arr, dtype=float)


def _load_2d_matrix(path_str: str, name: str) -> np.ndarray:
    arr = _load_array(path_str)
    if arr.ndim == 1:
        arr = arr[None, :]
    if arr.ndim != 2:
        raise ValueError(f"{name} must be 2D; got shape {arr.shape}")
    return arr


def _load_vector(path_str: str, name: str) -> np.ndarray:
    arr = _load_array(path_str)
    if arr.ndim == 2 and 1 in arr.shape:
        arr = arr.ravel()
    if arr.ndim != 1:
        raise ValueError(f"{name} must be 1D; got shape {arr.shape}")
    return arr


def _load_ulist(path_str: str, expected_r: int) -> list[np.ndarray]:
    path = Path(path_str)
    suffix = path.suffix.lower()
    ulist: list[np.ndarray] = []

    if suffix == ".npy":
        arr = np.load(path)
        if arr.ndim != 3:
            raise ValueError(f".npy Ulist must be 3D (P, R, R); got shape {arr.shape}")
        ulist = [np.asarray(arr[k], dtype=float) for k in range(arr.shape[0])]
    elif suffix == ".npz":
        with np.load(path) as zf:
            for key in zf.files:
                mat = np.asarray(zf[key], dtype=float)
                if mat.ndim != 2:
                    raise ValueError(f"Ulist[{key}] must be 2D; got shape {mat.shape}")
                ulist.append(mat)
    else:
        raise ValueError("Ulist file must be .npy or .npz")

    if not ulist:
        raise ValueError("Ulist cannot be empty")
    for i, u in enumerate(ulist):
        if u.shape != (expected_r, expected_r):
            raise ValueError(f"Ulist[{i}] has shape {u.shape}; expected ({expected_r}, {expected_r})")
    return ulist


def _common_cov_flag(value: str) -> bool | None:
    return {"auto": None, "yes": True, "no": False}[value]


def _save_posterior(out_prefix: str, post: PosteriorMatrices, command: str, meta: dict) -> None:
    out = Path(out_prefix)
    out.parent.mkdir(parents=True, exist_ok=True)

    fields = {
        "posterior_mean": post.posterior_mean,
        "posterior_sd": post.posterior_sd,
        "negative_prob": post.negative_prob,
        "zero_prob": post.zero_prob,
        "lfsr": post.lfsr,
        "posterior_cov": post.posterior_cov,
    }
    arrays = {key: np.asarray(val, dtype=float) for key, val in fields.items() if val is not None}
    np.savez_compressed(str(out) + ".npz", **arrays)

    meta = dict(meta, command=command, arrays=sorted(arrays))
    with Path(str(out) + ".json").open("w", encoding="utf-8") as f:
        json.dump(meta, f, indent=2, sort_keys=True)


def _cmd_lik(args: argparse.Namespace) -> int:
    bhat = _load_2d_matrix(args.bhat, "Bhat")
    shat = _load_2d_matrix(args.shat, "Shat")
    v = _load_2d_matrix(args.v, "V") if args.v is not None else None
    data = set_effect_data(bhat, shat, V=v)
    ulist = _load_ulist(args.ulist, expected_r=data.n_conditions)

    lik = calc_lik_matrix(data, ulist, log=args.log, common_cov=_common_cov_flag(args.common_cov))
    out = Path(args.out)
    out.parent.mkdir(parents=True, exist_ok=True)
    np.save(out, lik)
    return 0


def _cmd_posterior(args: argparse.Namespace) -> int:
    bhat = _load_2d_matrix(args.bhat, "Bhat")
    shat = _load_2d_matrix(args.shat, "Shat")
    v = _load_2d_matrix(args.v, "V") if args.v is not None else None
    shat_alpha = _load_2d_matrix(args.shat_alpha, "Shat_alpha") if args.shat_alpha is not None else None
    data = set_effect_data(bhat, shat, Shat_alpha=shat_alpha, V=v)
    ulist = _load_ulist(args.ulist, expected_r=data.n_conditions)
    weights = _load_2d_matrix(args.weights, "weights")
    A = _load_2d_matrix(args.A, "A") if args.A is not None else None

    post = compute_posterior_matrices(
        data,
        ulist,
        weights,
        A=A,
        report_type=args.report_type,
        common_cov=_common_cov_flag(args.common_cov),
    )
    meta = {
        "n_effects": data.n_effects,
        "n_components": len(ulist),
        "report_type": args.report_type,
    }
    _save_posterior(args.out, post, command="posterior", meta=meta)
    return 0


def _cmd_ash(args: argparse.Namespace) -> int:
    bhat = _load_vector(args.bhat, "bhat")
    shat = _load_vector(args.shat, "shat") if args.shat is not None else None
    prior_var = _load_vector(args.prior_var, "prior variances")
    weights = _load_2d_matrix(args.weights, "weights")

    post = compute_posterior_matrices_univariate(
        bhat,
        shat,
        prior_var,
        weights,
        v=args.v,
        report_type=args.report_type,
    )
    meta = {"n_effects": int(bhat.size), "n_components": int(prior_var.size), "report_type": args.report_type}
    _save_posterior(args.out, post, command="ash", meta=meta)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mashcore",
        description="Command-line interface for mash likelihood and posterior computations.",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    lik = sub.add_parser("lik", help="Compute the effects x components likelihood matrix.")
    lik.add_argument("--bhat", required=True, help="Path to Bhat matrix (.npy/.npz/.csv/.tsv).")
    lik.add_argument("--shat", required=True, help="Path to Shat matrix (.npy/.npz/.csv/.tsv).")
    lik.add_argument("--ulist", required=True, help="Prior covariances (.npy PxRxR or .npz).")
    lik.add_argument("--out", required=True, help="Output .npy path.")
    lik.add_argument("--v", help="Optional noise correlation matrix V.")
    lik.add_argument("--log", action="store_true", help="Write log-likelihoods.")
    lik.add_argument("--common-cov", default="auto", choices=["auto", "yes", "no"], help="Shared-noise fast path.")
    lik.set_defaults(func=_cmd_lik)

    post = sub.add_parser("posterior", help="Compute multivariate posterior summaries.")
    post.add_argument("--bhat", required=True, help="Path to Bhat matrix (.npy/.npz/.csv/.tsv).")
    post.add_argument("--shat", required=True, help="Path to Shat matrix (.npy/.npz/.csv/.tsv).")
    post.add_argument("--ulist", required=True, help="Prior covariances (.npy PxRxR or .npz).")
    post.add_argument("--weights", required=True, help="Posterior weights matrix (J x P).")
    post.add_argument("--out", required=True, help="Output prefix (writes <out>.npz and <out>.json).")
    post.add_argument("--v", help="Optional noise correlation matrix V.")
    post.add_argument("--shat-alpha", help="Optional rescaling factors (J x R).")
    post.add_argument("--A", help="Optional projection matrix (Q x R).")
    post.add_argument("--report-type", type=int, default=3, choices=[1, 2, 3, 4], help="Output detail level.")
    post.add_argument("--common-cov", default="auto", choices=["auto", "yes", "no"], help="Shared-noise fast path.")
    post.set_defaults(func=_cmd_posterior)

    ash = sub.add_parser("ash", help="Compute univariate posterior summaries.")
    ash.add_argument("--bhat", required=True, help="Path to effect vector.")
    ash.add_argument("--shat", help="Path to standard-error vector (default: ones).")
    ash.add_argument("--prior-var", required=True, help="Path to vector of prior variances.")
    ash.add_argument("--weights", required=True, help="Posterior weights matrix (J x P).")
    ash.add_argument("--out", required=True, help="Output prefix (writes <out>.npz and <out>.json).")
    ash.add_argument("--v", type=float, default=1.0, help="Noise variance multiplier (default: 1.0).")
    ash.add_argument("--report-type", type=int, default=3, choices=[1, 3], help="Output detail level.")
    ash.set_defaults(func=_cmd_ash)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        return int(args.func(args))
    except Exception as exc:  # pragma: no cover - exercised via subprocess in tests
        print(f"mashcore: error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
