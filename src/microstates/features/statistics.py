"""Per-state microstate statistics and the state transition matrix.

Metrics per state k (reference-tool conventions):
  - GFP: mean raw per-sample GFP (sample SD, ddof=1) over samples labeled k
  - OCC: runs labeled k per second of recording
  - DUR: mean run duration in ms
  - COV: OCC * DUR / 1000, fraction of recording time
  - SPC: mean spatial correlation 1 - GMD^2 / 2 over samples labeled k
  - GEV: sum over samples labeled k of (SPC * GFP)^2 over total sum of GFP^2
    (population GFP)

Unobserved samples (label -1: zero variance or non-finite values) count as no
observation. They are dropped before run lengths, occurrence, coverage and
transitions are computed, and recording time covers observed samples only.
Samples flagged invalid by the `valid` mask are left out of GFP, SPC and GEV.
A state with no samples keeps NaN for its mean-based metrics and does not stop
the other states from being computed.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import List, Optional
import numpy as np
import pandas as pd

from ..io.prototypes import state_letters
from ..segmentation.backfit import observed
from ..segmentation.smoothing import run_length_encode
from ..utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class StatisticsBundle:
    gfp: np.ndarray
    occurrence: np.ndarray
    duration: np.ndarray
    coverage: np.ndarray
    gev: np.ndarray
    spatial_corr: np.ndarray
    gev_total: float
    transitions: np.ndarray
    n_samples: np.ndarray
    n_runs: np.ndarray
    empty_states: List[int] = field(default_factory=list)

    @property
    def n_states(self) -> int:
        return int(self.gfp.size)

    @property
    def labels(self) -> List[str]:
        return state_letters(self.n_states)

    def to_frame(self) -> pd.DataFrame:
        """One row per state: state, GFP, OCC, DUR, COV, GEV, SPC, N, RUNS."""
        return pd.DataFrame(
            {
                "state": self.labels,
                "GFP": self.gfp,
                "OCC": self.occurrence,
                "DUR": self.duration,
                "COV": self.coverage,
                "GEV": self.gev,
                "SPC": self.spatial_corr,
                "N": self.n_samples,
                "RUNS": self.n_runs,
            }
        )

    def transitions_frame(self) -> pd.DataFrame:
        """Long-format transition probabilities (pre, post, P), off-diagonal only."""
        labels = self.labels
        rows = [
            {"pre": labels[a], "post": labels[b], "P": float(self.transitions[a, b])}
            for a in range(self.n_states)
            for b in range(self.n_states)
            if a != b
        ]
        return pd.DataFrame(rows, columns=["pre", "post", "P"])


def transition_matrix(labels: np.ndarray, n_states: int) -> np.ndarray:
    """
    Row-normalized transition probabilities between consecutive runs.

    Args:
        labels: Per-sample label sequence; unobserved samples (-1) are skipped, so
                runs on both sides of a gap join up.
        n_states: Number of states K.

    Returns:
        (K, K) matrix with zero diagonal; rows without outgoing transitions are zero.
    """
    run_labels, _ = run_length_encode(observed(labels))
    counts = np.zeros((n_states, n_states), dtype=float)
    if run_labels.size > 1:
        np.add.at(counts, (run_labels[:-1], run_labels[1:]), 1.0)
    np.fill_diagonal(counts, 0.0)
    row = counts.sum(axis=1, keepdims=True)
    with np.errstate(divide="ignore", invalid="ignore"):
        P = np.where(row > 0, counts / row, 0.0)
    return P


def compute_statistics(
    X: np.ndarray,
    gmd: np.ndarray,
    labels: np.ndarray,
    sfreq: float,
    n_states: Optional[int] = None,
    valid: Optional[np.ndarray] = None,
) -> StatisticsBundle:
    """
    Compute per-state statistics from a final label sequence.

    Args:
        X: (n_samples, n_channels) raw samples.
        gmd: (K, n_samples) GMD matrix from backfitting.
        labels: (n_samples,) final labels in 0..K-1, or -1 for unobserved samples.
        sfreq: Sampling rate in Hz.
        n_states: K (defaults to gmd.shape[0]).
        valid: Boolean mask of usable samples (defaults to finite, non-zero GFP).

    Returns:
        StatisticsBundle.
    """
    X = np.asarray(X, dtype=float)
    labels = np.asarray(labels, dtype=int)
    K = int(n_states if n_states is not None else gmd.shape[0])
    N = labels.size
    if X.shape[0] != N or gmd.shape[1] != N:
        raise ValueError("X, gmd and labels must cover the same samples")

    gfp_pop = X.std(axis=1)
    gfp_samp = X.std(axis=1, ddof=1)
    if valid is None:
        valid = np.all(np.isfinite(X), axis=1) & (gfp_pop > 0)
    valid = np.asarray(valid, dtype=bool)

    seen = labels >= 0
    spat = np.full(N, np.nan)
    spat[seen] = 1.0 - gmd[labels[seen], np.flatnonzero(seen)] ** 2 / 2.0
    valid = valid & seen & np.isfinite(spat)
    run_labels, run_lengths = run_length_encode(labels[seen])
    run_ms = run_lengths * 1000.0 / sfreq
    total_sec = int(seen.sum()) / float(sfreq)
    gfp_ss = float(np.sum(gfp_pop[valid] ** 2))

    m_gfp = np.full(K, np.nan)
    m_occ = np.zeros(K)
    m_dur = np.full(K, np.nan)
    m_cov = np.zeros(K)
    m_gev = np.zeros(K)
    m_spc = np.full(K, np.nan)
    n_samples = np.zeros(K, dtype=int)
    n_runs = np.zeros(K, dtype=int)
    empty: List[int] = []

    for k in range(K):
        in_k = labels == k
        n_samples[k] = int(in_k.sum())
        if not n_samples[k]:
            empty.append(k)
            continue
        runs_k = run_labels == k
        n_runs[k] = int(runs_k.sum())
        m_occ[k] = n_runs[k] / total_sec
        m_dur[k] = float(run_ms[runs_k].mean())
        m_cov[k] = m_occ[k] * m_dur[k] / 1000.0
        kv = in_k & valid
        if kv.any():
            m_gfp[k] = float(gfp_samp[kv].mean())
            m_spc[k] = float(spat[kv].mean())
            if gfp_ss > 0:
                m_gev[k] = float(np.sum((spat[kv] * gfp_pop[kv]) ** 2) / gfp_ss)

    # total GEV from a single pass over all samples
    gev_total = float(np.sum((spat[valid] * gfp_pop[valid]) ** 2) / gfp_ss) if gfp_ss > 0 else float("nan")

    if empty:
        logger.warning(
            "States with no assigned samples: %s; their mean statistics are undefined",
            ", ".join(state_letters(K)[k] for k in empty),
        )
    logger.info("Microstate statistics: K=%d N=%d GEV=%.4f", K, N, gev_total)

    return StatisticsBundle(
        gfp=m_gfp,
        occurrence=m_occ,
        duration=m_dur,
        coverage=m_cov,
        gev=m_gev,
        spatial_corr=m_spc,
        gev_total=gev_total,
        transitions=transition_matrix(labels, K),
        n_samples=n_samples,
        n_runs=n_runs,
        empty_states=empty,
    )
