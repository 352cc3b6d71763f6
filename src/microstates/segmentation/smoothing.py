"""Run-length helpers and short-segment rejection.

Short runs are removed by promoting, for each sample inside a run that is too
short, that sample's next-ranked prototype. Promotion is per sample, so a short
run may fragment instead of being relabeled as a whole. Run lengths are
enforced in increasing order (1, 2, ... min_run - 1), each until no run of that
length remains.
"""

from __future__ import annotations
from typing import Tuple
import numpy as np

from ..utils.logger import get_logger
from .backfit import RankedAssignment, observed

logger = get_logger(__name__)


def run_length_encode(labels: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Collapse a label sequence into runs.

    Args:
        labels: 1D integer sequence.

    Returns:
        (run_labels, run_lengths); lengths sum to len(labels) and no two adjacent
        runs share a label.
    """
    labels = np.asarray(labels)
    if labels.size == 0:
        return labels.astype(int), np.zeros(0, dtype=int)
    change = np.flatnonzero(labels[1:] != labels[:-1]) + 1
    starts = np.concatenate(([0], change))
    lengths = np.diff(np.concatenate((starts, [labels.size])))
    return labels[starts], lengths.astype(int)


def run_length_decode(run_labels: np.ndarray, run_lengths: np.ndarray) -> np.ndarray:
    """Expand (run_labels, run_lengths) back into the per-sample sequence."""
    return np.repeat(np.asarray(run_labels), np.asarray(run_lengths, dtype=int))


def enforce_min_run(ranked: RankedAssignment, k: int) -> Tuple[RankedAssignment, bool]:
    """
    One rejection pass: rotate every sample that sits in a run of length <= k.

    Runs are taken over observed samples only, so a flat gap neither splits a
    run nor gets rotated into a state.

    Args:
        ranked: Current ranked assignment (left untouched).
        k: Longest run length to reject in this pass.

    Returns:
        (new_ranked, changed). `changed` is False when no run of length <= k
        exists, or when the sequence is a single run that cannot be fixed.
    """
    idx = np.flatnonzero(ranked.valid)
    _, lengths = run_length_encode(ranked.best()[idx])
    if lengths.size <= 1:
        return ranked, False
    short = lengths <= k
    if not short.any():
        return ranked, False
    per_sample = np.repeat(short, lengths)
    out = ranked.copy()
    out.rotate(idx[per_sample])
    return out, True


def smooth(ranked: RankedAssignment, min_run: int, max_iter: int = 1000) -> RankedAssignment:
    """
    Remove runs shorter than `min_run` samples.

    Run lengths 1 .. min_run - 1 are rejected in turn, so the longest run
    targeted is min_run - 1 rather than min_run itself; `min_run=1` (and below)
    leaves labels unchanged and `min_run=2` removes single-sample blips.

    Args:
        ranked: Ranked assignment from `backfit`.
        min_run: Minimum run length in samples.
        max_iter: Cap on rejection passes per run length. Short runs still present
                  after the cap are left in place and a warning is logged.

    Returns:
        A new RankedAssignment whose observed labels have no run shorter than
        `min_run` (unless the cap was hit). Unobserved samples stay at -1.
    """
    current = ranked.copy()
    max_iter = max(int(max_iter), 1)
    for k in range(1, int(min_run)):
        n_pass = 0
        for n_pass in range(max_iter):
            current, changed = enforce_min_run(current, k)
            if not changed:
                break
        else:
            _, lengths = run_length_encode(observed(current.best()))
            logger.warning(
                "Smoothing did not converge for run length %d after %d passes; %d short runs left",
                k,
                max_iter,
                int((lengths <= k).sum()),
            )
        logger.debug("Run length %d resolved after %d passes", k, n_pass + 1)
    return current
