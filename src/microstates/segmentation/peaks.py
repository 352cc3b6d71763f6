"""Global Field Power and GFP-peak extraction.

Functions:
  - global_field_power(X, ddof=0) -> (n_samples,) across-channel SD
  - find_gfp_peaks(X, z=None, max_peaks=None, random_state=None) -> PeakResult
Notes:
  - X: (n_samples, n_channels) sample matrix.
  - Peaks are strict local maxima of GFP; the first and last samples are never peaks.
  - The outlier filter only removes the upper tail of peak GFP values.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
import numpy as np
from scipy.signal import argrelextrema

from ..utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class PeakResult:
    indices: np.ndarray
    gfp: np.ndarray
    n_candidates: int

    def __len__(self) -> int:
        return int(self.indices.size)


def global_field_power(X: np.ndarray, ddof: int = 0) -> np.ndarray:
    """
    Per-sample standard deviation across channels.

    Args:
        X: (n_samples, n_channels) sample matrix.
        ddof: 0 for the population SD used throughout segmentation, 1 for the
              sample SD reported as per-state mean GFP.

    Returns:
        1D array of length n_samples.
    """
    X = np.asarray(X, dtype=float)
    if X.ndim != 2:
        raise ValueError("X must be shape (n_samples, n_channels)")
    return X.std(axis=1, ddof=ddof)


def find_gfp_peaks(
    X: np.ndarray,
    z: Optional[float] = None,
    max_peaks: Optional[int] = None,
    random_state: int | None = None,
) -> PeakResult:
    """
    Find GFP peaks, optionally drop high-GFP outliers and subsample.

    Args:
        X: (n_samples, n_channels) sample matrix.
        z: If > 0, keep peaks with GFP <= mean + z * SD (sample SD) of peak GFP.
        max_peaks: If > 0 and more peaks remain, draw this many uniformly without replacement.
        random_state: Seed for the subsampling draw.

    Returns:
        PeakResult with sorted sample indices and the GFP at each of them.
    """
    gfp = global_field_power(X)
    idx = argrelextrema(gfp, np.greater)[0]
    n_candidates = int(idx.size)
    logger.info(
        "Found %d GFP peaks in %d samples (%.1f%%)",
        n_candidates,
        gfp.size,
        100.0 * n_candidates / max(gfp.size, 1),
    )

    if z is not None and z > 0 and idx.size > 1:
        peak_gfp = gfp[idx]
        thr = peak_gfp.mean() + z * peak_gfp.std(ddof=1)
        idx = idx[peak_gfp <= thr]
        logger.info("GFP outlier filter (z=%.2f, thr=%.4g) kept %d of %d peaks", z, thr, idx.size, n_candidates)

    if max_peaks is not None and max_peaks > 0 and idx.size > max_peaks:
        rng = np.random.default_rng(random_state)
        n_before = idx.size
        idx = np.sort(rng.choice(idx, size=int(max_peaks), replace=False))
        logger.info("Subsampled %d of %d peaks", idx.size, n_before)

    return PeakResult(indices=idx.astype(int), gfp=gfp[idx], n_candidates=n_candidates)
