"""Backfitting: rank every prototype for every sample by global map dissimilarity.

GMD is computed between average-referenced, GFP-normalized maps and is
minimized over the two polarities of each prototype, so a map and its
voltage-inverted twin count as the same topography. For normalized maps
GMD^2 = 2 - 2|r|, where r is the spatial correlation.

Samples with zero variance across channels or non-finite values carry no
topography. They are unobserved: their label is -1 and they drop out of run
lengths, transitions, complexity and every per-state statistic.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Iterable, Optional
import numpy as np

from ..errors import DimensionMismatch
from ..io.prototypes import PrototypeSet, normalize_maps
from ..utils.logger import get_logger
from .peaks import global_field_power

logger = get_logger(__name__)


UNOBSERVED = -1


def observed(labels: np.ndarray) -> np.ndarray:
    """Drop unobserved samples (label -1) from a label sequence."""
    labels = np.asarray(labels)
    return labels[labels >= 0]


class RankedAssignment:
    """
    Per-sample candidate lists, shape (n_samples, n_states).

    Row j lists state labels from best to worst fit for sample j. `rotate`
    promotes the next-best candidate of selected samples by moving the current
    head to the tail of the row. Samples outside the `valid` mask are
    unobserved: `best()` reports them as -1 and `rotate` leaves them alone.
    """

    def __init__(self, order: np.ndarray, valid: Optional[np.ndarray] = None):
        order = np.asarray(order, dtype=int)
        if order.ndim != 2:
            raise ValueError("order must be shape (n_samples, n_states)")
        self.order = order
        if valid is None:
            valid = np.ones(order.shape[0], dtype=bool)
        self.valid = np.asarray(valid, dtype=bool)
        if self.valid.shape != (order.shape[0],):
            raise ValueError("valid must have one entry per sample")

    @classmethod
    def from_gmd(cls, gmd: np.ndarray, valid: Optional[np.ndarray] = None) -> "RankedAssignment":
        """
        Rank states ascending by GMD (K x N); ties keep the lower label first.

        Samples whose GMD column is entirely NaN are unobserved unless `valid`
        says otherwise.
        """
        gmd = np.asarray(gmd)
        if valid is None:
            valid = np.isfinite(gmd).any(axis=0)
        return cls(np.argsort(gmd.T, axis=1, kind="stable"), valid=valid)

    @property
    def n_samples(self) -> int:
        return int(self.order.shape[0])

    @property
    def n_states(self) -> int:
        return int(self.order.shape[1])

    def __len__(self) -> int:
        return self.n_samples

    def best(self) -> np.ndarray:
        """Current head label of every sample, -1 where unobserved."""
        return np.where(self.valid, self.order[:, 0], UNOBSERVED)

    def rotate(self, indices: Iterable[int] | np.ndarray) -> None:
        """Move the head of each selected observed row to its tail, in place."""
        idx = np.asarray(indices, dtype=int)
        idx = idx[self.valid[idx]]
        if idx.size == 0:
            return
        self.order[idx] = np.roll(self.order[idx], -1, axis=1)

    def copy(self) -> "RankedAssignment":
        return RankedAssignment(self.order.copy(), valid=self.valid.copy())


@dataclass
class BackfitResult:
    gmd: np.ndarray
    ranked: RankedAssignment
    gfp: np.ndarray
    valid: np.ndarray

    def best(self) -> np.ndarray:
        return self.ranked.best()

    @property
    def n_degenerate(self) -> int:
        return int((~self.valid).sum())


def global_map_dissimilarity(samples_norm: np.ndarray, maps_norm: np.ndarray) -> np.ndarray:
    """
    Polarity-invariant GMD between normalized samples and normalized prototypes.

    Args:
        samples_norm: (n_samples, n_channels) normalized samples.
        maps_norm: (n_channels, n_states) normalized prototypes.

    Returns:
        (n_states, n_samples) GMD matrix; NaN where a sample is degenerate.
    """
    # mean((x -/+ a)^2) = 2 -/+ 2r for zero-mean, unit-SD maps
    C = samples_norm.shape[1]
    r = (maps_norm.T @ samples_norm.T) / C
    return np.sqrt(np.clip(2.0 - 2.0 * np.abs(r), 0.0, None))


def backfit(X: np.ndarray, prototypes: PrototypeSet) -> BackfitResult:
    """
    Assign every sample a full ranking of prototypes.

    Args:
        X: (n_samples, n_channels) raw samples, channels ordered like the prototypes.
        prototypes: Prototype set.

    Returns:
        BackfitResult with the K x N GMD matrix, the ranked assignment, the raw
        population GFP per sample and a validity mask (False for zero-variance
        or non-finite samples).

    Raises:
        DimensionMismatch: If channel counts differ.
    """
    X = np.asarray(X, dtype=float)
    if X.ndim != 2:
        raise ValueError("X must be shape (n_samples, n_channels)")
    if X.shape[1] != prototypes.n_channels:
        raise DimensionMismatch(
            f"Prototypes have {prototypes.n_channels} channels but samples have {X.shape[1]}"
        )

    samples_norm = normalize_maps(X, axis=1)
    maps_norm = prototypes.normalized()
    valid = np.all(np.isfinite(samples_norm), axis=1)
    if not np.all(np.isfinite(maps_norm)):
        logger.warning("At least one prototype map has zero variance; its GMD is undefined")

    gmd = global_map_dissimilarity(samples_norm, maps_norm)
    ranked = RankedAssignment.from_gmd(gmd, valid=valid)
    n_bad = int((~valid).sum())
    if n_bad:
        logger.warning("%d of %d samples have zero variance or non-finite values", n_bad, valid.size)
    logger.info("Backfit %d samples onto %d prototypes", X.shape[0], prototypes.n_states)
    return BackfitResult(gmd=gmd, ranked=ranked, gfp=global_field_power(X), valid=valid)
