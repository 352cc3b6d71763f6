"""Prototype (microstate map) container and plain-text persistence.

File format: one line per channel, tab-separated,
    <channel-label>\t<A[c,0]>\t...\t<A[c,K-1]>
K is taken from the first line; every other line must have the same number of
columns. Values are written with 17 significant digits so a write/read cycle
reproduces every double exactly.
"""

from __future__ import annotations
from pathlib import Path
from typing import List, Sequence
import numpy as np
import pandas as pd

from ..errors import MalformedPrototypeFile
from ..utils.logger import get_logger

logger = get_logger(__name__)


def state_letters(n_states: int) -> List[str]:
    """Return display labels A, B, C, ... for `n_states` states."""
    if n_states > 26:
        return [f"S{k + 1}" for k in range(n_states)]
    return [chr(ord("A") + k) for k in range(n_states)]


def normalize_maps(maps: np.ndarray, axis: int = 0) -> np.ndarray:
    """
    Average-reference and GFP-normalize topographies along the channel axis.

    Zero-variance maps become NaN rather than raising.

    Args:
        maps: Array of topographies; `axis` indexes channels.
        axis: Channel axis (0 for C x K prototype matrices, 1 for N x C samples).

    Returns:
        Array of the same shape with zero mean and unit population SD per map.
    """
    maps = np.asarray(maps, dtype=float)
    centered = maps - maps.mean(axis=axis, keepdims=True)
    gfp = centered.std(axis=axis, keepdims=True)
    with np.errstate(divide="ignore", invalid="ignore"):
        out = centered / gfp
    out[~np.isfinite(out)] = np.nan
    return out


class PrototypeSet:
    """C x K prototype maps plus their channel labels. Read-only once built."""

    __slots__ = ("_maps", "_ch_names")

    def __init__(self, maps: np.ndarray, ch_names: Sequence[str]):
        arr = np.array(maps, dtype=float)
        if arr.ndim != 2:
            raise ValueError("maps must be shape (n_channels, n_states)")
        if arr.shape[0] != len(ch_names):
            raise ValueError(f"{arr.shape[0]} map rows but {len(ch_names)} channel labels")
        arr.setflags(write=False)
        self._maps = arr
        self._ch_names = tuple(str(c) for c in ch_names)

    def __repr__(self) -> str:
        return f"PrototypeSet(n_channels={self.n_channels}, n_states={self.n_states})"

    @property
    def maps(self) -> np.ndarray:
        return self._maps

    @property
    def ch_names(self) -> tuple:
        return self._ch_names

    @property
    def n_channels(self) -> int:
        return int(self.maps.shape[0])

    @property
    def n_states(self) -> int:
        return int(self.maps.shape[1])

    @property
    def labels(self) -> List[str]:
        return state_letters(self.n_states)

    def normalized(self) -> np.ndarray:
        """Columns mean-subtracted and divided by their cross-channel GFP."""
        return normalize_maps(self.maps, axis=0)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame(self.maps, index=list(self.ch_names), columns=self.labels)


def write_prototypes(prototypes: PrototypeSet, path: str | Path) -> Path:
    """
    Write a prototype set to the tab-separated text format.

    Args:
        prototypes: Prototype set to persist.
        path: Output file path (parent directories are created).

    Returns:
        The written path.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df = prototypes.to_frame()
    df.to_csv(path, sep="\t", header=False, index=True, float_format="%.17g", lineterminator="\n")
    logger.info("Wrote %d x %d prototypes to %s", prototypes.n_channels, prototypes.n_states, path)
    return path


def read_prototypes(path: str | Path) -> PrototypeSet:
    """
    Read a prototype set written by `write_prototypes` (or by reference tooling).

    Args:
        path: Prototype text file.

    Returns:
        PrototypeSet with C channels (lines) and K states (columns after the label).

    Raises:
        FileNotFoundError: If the file does not exist.
        MalformedPrototypeFile: On inconsistent column counts, missing values or
            non-numeric entries.
    """
    path = Path(path)
    if not path.exists():
        logger.error("Prototype file not found: %s", path)
        raise FileNotFoundError(path)

    labels: List[str] = []
    rows: List[List[float]] = []
    n_cols = None
    with path.open("r", encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            line = line.rstrip("\r\n")
            if not line.strip():
                continue
            tok = line.split("\t")
            if n_cols is None:
                n_cols = len(tok)
                if n_cols < 2:
                    raise MalformedPrototypeFile(f"{path}:{lineno}: expected a label and at least one value")
            elif len(tok) != n_cols:
                raise MalformedPrototypeFile(
                    f"{path}:{lineno}: expected {n_cols} columns, found {len(tok)}"
                )
            try:
                rows.append([float(x) for x in tok[1:]])
            except ValueError as exc:
                raise MalformedPrototypeFile(f"{path}:{lineno}: {exc}") from exc
            labels.append(tok[0])

    if not rows:
        raise MalformedPrototypeFile(f"{path}: no prototype rows")
    prototypes = PrototypeSet(np.asarray(rows, dtype=float), labels)
    logger.info("Read %d channels x %d states from %s", prototypes.n_channels, prototypes.n_states, path)
    return prototypes
