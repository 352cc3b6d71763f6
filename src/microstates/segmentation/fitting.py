"""Prototype (microstate map) fitting on GFP-peak topographies.

Two methods are available:
  - "modkmeans": polarity-invariant modified k-means (Pascual-Marqui, Michel &
    Lehmann 1995). Each prototype is the dominant eigenvector of its members'
    scatter matrix, so a map and its inverted twin fall in the same cluster.
  - "kmeans": scikit-learn KMeans on unit-norm maps. Polarity sensitive; kept
    for quick exploratory runs.

Both return C x K prototypes for every candidate K together with fit
diagnostics (GEV, R2, noise variance, cross-validation criterion, MSE), and
pick an optimal K by GEV (default) or by the cross-validation criterion.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Sequence
import numpy as np
import pandas as pd
from sklearn.cluster import KMeans
from sklearn.utils import check_random_state

from ..io.prototypes import PrototypeSet
from ..utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class FitResult:
    prototypes: PrototypeSet
    k: int
    diagnostics: pd.DataFrame
    labels: np.ndarray
    solutions: Dict[int, PrototypeSet] = field(default_factory=dict)


def _column_corr(X: np.ndarray, M: np.ndarray) -> np.ndarray:
    """Pearson correlation between matching columns of two C x N arrays."""
    Xc = X - X.mean(axis=0, keepdims=True)
    Mc = M - M.mean(axis=0, keepdims=True)
    with np.errstate(divide="ignore", invalid="ignore"):
        r = (Xc * Mc).sum(axis=0) / np.sqrt((Xc ** 2).sum(axis=0) * (Mc ** 2).sum(axis=0))
    return np.nan_to_num(r, nan=0.0)


def _solution_stats(X: np.ndarray, A: np.ndarray, const1: float) -> Dict[str, object]:
    """Labels, activations and goodness of fit for unit-norm maps A (C x K) on data X (C x N)."""
    C, N = X.shape
    Z = A.T @ X
    L = np.argmax(Z ** 2, axis=0)
    act = Z[L, np.arange(N)]
    sig2 = (const1 - np.sum(act ** 2)) / (N * (C - 1))
    sig2_d = const1 / (N * (C - 1))
    resid = X - A[:, L] * act
    gfp = X.std(axis=0)
    corr = _column_corr(X, A[:, L])
    gev = float(np.sum((gfp * corr) ** 2) / np.sum(gfp ** 2))
    return {
        "labels": L,
        "sig2": float(sig2),
        "r2": float(1.0 - sig2 / sig2_d),
        "mse": float(np.mean(resid ** 2)),
        "gev": gev,
    }


def _unit_columns(A: np.ndarray) -> np.ndarray:
    norms = np.linalg.norm(A, axis=0, keepdims=True)
    norms[norms == 0] = 1.0
    return A / norms


def _reseed_empty(X: np.ndarray, A: np.ndarray, empty: np.ndarray) -> np.ndarray:
    """Point each empty cluster at the map the current prototypes fit worst."""
    power = np.sum(X ** 2, axis=0)
    held = np.setdiff1d(np.arange(A.shape[1]), empty)
    fit = np.max((A[:, held].T @ X) ** 2, axis=0) if held.size else np.zeros(X.shape[1])
    resid = power - fit
    for k in empty:
        j = int(np.argmax(resid))
        A[:, k] = _unit_columns(X[:, [j]])[:, 0]
        resid = np.minimum(resid, power - (A[:, k] @ X) ** 2)
    return A


def _modkmeans_once(
    X: np.ndarray,
    K: int,
    const1: float,
    rng: np.random.RandomState,
    max_iter: int,
    threshold: float,
) -> Dict[str, object]:
    C, N = X.shape
    A = _unit_columns(X[:, rng.choice(N, size=K, replace=False)].copy())

    sig2_old = np.inf
    sig2 = np.inf
    n_iter = 0
    while n_iter < max_iter and (n_iter == 0 or abs(sig2_old - sig2) > threshold * sig2):
        n_iter += 1
        sig2_old = sig2
        L = np.argmax((A.T @ X) ** 2, axis=0)
        empty = np.setdiff1d(np.arange(K), L)
        if empty.size:
            logger.debug("Reseeding %d empty clusters", empty.size)
            A = _reseed_empty(X, A, empty)
            L = np.argmax((A.T @ X) ** 2, axis=0)
        for k in range(K):
            members = X[:, L == k]
            if members.shape[1] == 0:
                continue
            vals, vecs = np.linalg.eigh(members @ members.T)
            v = vecs[:, np.argmax(np.abs(vals))]
            A[:, k] = v / np.linalg.norm(v)
        act = np.sum(A[:, L] * X, axis=0)
        sig2 = (const1 - np.sum(act ** 2)) / (N * (C - 1))

    out = _solution_stats(X, A, const1)
    out["maps"] = A
    out["n_iter"] = n_iter
    return out


def _kmeans_once(X: np.ndarray, K: int, const1: float, n_init: int, random_state) -> Dict[str, object]:
    # unit-norm maps, plain (polarity sensitive) KMeans
    norms = np.linalg.norm(X, axis=0, keepdims=True) + 1e-12
    km = KMeans(n_clusters=K, n_init=n_init, random_state=random_state)
    km.fit((X / norms).T)
    A = _unit_columns(km.cluster_centers_.T.copy())
    out = _solution_stats(X, A, const1)
    out["maps"] = A
    out["n_iter"] = int(km.n_iter_)
    return out


def fit_prototypes(
    maps: np.ndarray,
    ks: int | Iterable[int],
    ch_names: Sequence[str],
    method: str = "modkmeans",
    n_reps: int = 10,
    max_iter: int = 1000,
    threshold: float = 1e-6,
    normalize: bool = False,
    criterion: str = "gev",
    random_state: int | None = None,
) -> FitResult:
    """
    Fit K prototype maps to a set of topographies (typically GFP peaks).

    Args:
        maps: (n_maps, n_channels) topographies.
        ks: One K or several candidate K values.
        ch_names: Channel labels in column order of `maps`.
        method: 'modkmeans' | 'kmeans'.
        n_reps: Random restarts per K (n_init for 'kmeans').
        max_iter: Iteration cap per restart ('modkmeans').
        threshold: Relative change in noise variance that stops iterating.
        normalize: Divide the data by the mean channel SD before fitting
                   (useful when pooling peaks across recordings).
        criterion: 'gev' picks the K with highest GEV; 'cv' the lowest
                   cross-validation criterion sig2_mcv.
        random_state: Seed for initial map selection.

    Returns:
        FitResult with the prototypes for the chosen K, per-K diagnostics and
        the prototype set for every K tried.

    Raises:
        ValueError: For unknown method/criterion or too few maps.
    """
    method = method.lower()
    criterion = criterion.lower()
    if method not in ("modkmeans", "kmeans"):
        raise ValueError(f"Unknown fitting method: {method}")
    if criterion not in ("gev", "cv"):
        raise ValueError(f"Unknown K selection criterion: {criterion}")
    ks = [int(ks)] if np.isscalar(ks) else [int(k) for k in ks]
    if not ks or min(ks) < 1:
        raise ValueError("ks must contain positive integers")

    X = np.asarray(maps, dtype=float).T
    C, N = X.shape
    if C != len(ch_names):
        raise ValueError(f"{C} map channels but {len(ch_names)} channel labels")
    if N < max(ks):
        raise ValueError(f"Need at least {max(ks)} maps to fit K={max(ks)}, got {N}")

    X = X - X.mean(axis=0, keepdims=True)
    if normalize:
        fac = float(np.mean(X.std(axis=1)))
        X = X / fac
    const1 = float(np.sum(X ** 2))
    rng = check_random_state(random_state)

    rows = []
    best_by_k: Dict[int, Dict[str, object]] = {}
    for K in ks:
        best: Optional[Dict[str, object]] = None
        if method == "modkmeans":
            for r in range(n_reps):
                sol = _modkmeans_once(X, K, const1, rng, max_iter, threshold)
                logger.debug("K=%d rep=%d GEV=%.4f iter=%d", K, r, sol["gev"], sol["n_iter"])
                if best is None or sol["gev"] > best["gev"]:
                    best = sol
        else:
            best = _kmeans_once(X, K, const1, n_reps, rng)
        with np.errstate(divide="ignore"):
            best["sig2_mcv"] = float(best["sig2"] * ((C - 1 - K) / (C - 1)) ** -2) if C - 1 - K != 0 else float("inf")
        best_by_k[K] = best
        rows.append(
            {
                "k": K,
                "gev": best["gev"],
                "r2": best["r2"],
                "sig2": best["sig2"],
                "sig2_mcv": best["sig2_mcv"],
                "mse": best["mse"],
                "n_iter": best["n_iter"],
            }
        )
        logger.info("K=%d: GEV=%.4f R2=%.4f sig2_mcv=%.4g", K, best["gev"], best["r2"], best["sig2_mcv"])

    diagnostics = pd.DataFrame(rows).set_index("k")
    if criterion == "gev":
        k_opt = int(diagnostics["gev"].idxmax())
    else:
        k_opt = int(diagnostics["sig2_mcv"].idxmin())
    logger.info("Selected K=%d by %s", k_opt, criterion)

    solutions = {K: PrototypeSet(sol["maps"], ch_names) for K, sol in best_by_k.items()}
    return FitResult(
        prototypes=solutions[k_opt],
        k=k_opt,
        diagnostics=diagnostics,
        labels=np.asarray(best_by_k[k_opt]["labels"], dtype=int),
        solutions=solutions,
    )
