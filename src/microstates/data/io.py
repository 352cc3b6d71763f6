"""Recording I/O helpers.

This module turns recordings on disk into dense sample matrices:
  - load_csv_as_raw
  - recording_from_raw
  - load_recording
  - align_channels

A `Recording` holds an (n_samples, n_channels) matrix, its channel labels and an
integer sampling rate. All channels of a recording share one sampling rate.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence
import numpy as np
import pandas as pd
import mne

from ..errors import DimensionMismatch, InsufficientSignals
from ..utils.logger import get_logger

logger = get_logger(__name__)

MNE_SUFFIXES = (".fif", ".edf", ".bdf", ".set", ".vhdr", ".gdf")


@dataclass
class Recording:
    """Dense sample matrix plus channel metadata for one recording."""

    data: np.ndarray
    ch_names: List[str]
    sfreq: int
    recording_id: str = field(default="recording")

    def __post_init__(self) -> None:
        self.data = np.asarray(self.data, dtype=float)
        if self.data.ndim != 2:
            raise ValueError("data must be shape (n_samples, n_channels)")
        if self.data.shape[1] != len(self.ch_names):
            raise DimensionMismatch(
                f"{self.data.shape[1]} data columns but {len(self.ch_names)} channel labels"
            )
        if self.data.shape[1] < 2:
            raise InsufficientSignals(
                f"microstate analysis needs at least 2 channels, got {self.data.shape[1]}"
            )

    @property
    def n_samples(self) -> int:
        return int(self.data.shape[0])

    @property
    def n_channels(self) -> int:
        return int(self.data.shape[1])

    @property
    def duration_sec(self) -> float:
        return self.n_samples / float(self.sfreq)


def load_csv_as_raw(session_csv: str | Path, sfreq: float = 256.0) -> mne.io.RawArray:
    """
    Load a single-session CSV into an MNE RawArray.

    CSV must contain EEG columns (non-timestamp/session_id).

    Args:
        session_csv: Path to per-session CSV file.
        sfreq: Sampling frequency in Hz.

    Returns:
        mne.io.RawArray object containing the EEG channels.

    Raises:
        ValueError: If no EEG columns are found.
        FileNotFoundError: If session_csv does not exist.
    """
    session_csv = Path(session_csv)
    if not session_csv.exists():
        logger.error("Session CSV not found: %s", session_csv)
        raise FileNotFoundError(session_csv)
    df = pd.read_csv(session_csv)
    eeg_cols = [c for c in df.columns if c not in ("timestamp", "session_id")]
    if not eeg_cols:
        raise ValueError(f"No EEG columns in {session_csv}")

    data = df[eeg_cols].T.values.astype(float)
    info = mne.create_info(ch_names=eeg_cols, sfreq=float(sfreq), ch_types="eeg")
    raw = mne.io.RawArray(data, info, verbose=False)
    return raw


def recording_from_raw(
    raw: mne.io.BaseRaw,
    picks: Optional[Sequence[str]] = None,
    recording_id: Optional[str] = None,
) -> Recording:
    """
    Convert an MNE Raw object into a Recording.

    Args:
        raw: Any MNE Raw instance.
        picks: Optional channel names to keep (in this order); defaults to all EEG channels.
        recording_id: Identifier carried into reports.

    Returns:
        Recording with data shaped (n_samples, n_channels).

    Raises:
        InsufficientSignals: If fewer than 2 channels remain.
        ValueError: If a requested channel is absent.
    """
    if picks:
        missing = [c for c in picks if c not in raw.ch_names]
        if missing:
            raise ValueError(f"Channels not found in recording: {missing}")
        ch_names = list(picks)
    else:
        idx = mne.pick_types(raw.info, eeg=True, exclude="bads")
        ch_names = [raw.ch_names[i] for i in idx]
    if len(ch_names) < 2:
        raise InsufficientSignals(f"microstate analysis needs at least 2 channels, got {len(ch_names)}")

    sfreq = float(raw.info["sfreq"])
    if not float(sfreq).is_integer():
        logger.warning("Non-integer sampling rate %.4f Hz rounded to %d", sfreq, int(round(sfreq)))
    data = raw.get_data(picks=ch_names).T
    rid = recording_id or (Path(raw.filenames[0]).stem if raw.filenames and raw.filenames[0] else "recording")
    return Recording(data=data, ch_names=ch_names, sfreq=int(round(sfreq)), recording_id=str(rid))


def load_recording(
    path: str | Path,
    sfreq: float = 256.0,
    picks: Optional[Sequence[str]] = None,
) -> Recording:
    """
    Load a recording from CSV or any format MNE can read.

    Args:
        path: Recording file path (.csv, .fif, .edf, .bdf, .set, .vhdr, .gdf).
        sfreq: Sampling rate used for CSV input (ignored for MNE formats).
        picks: Optional channel subset/order.

    Returns:
        Recording whose recording_id is the file stem.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the suffix is not supported.
    """
    path = Path(path)
    if not path.exists():
        logger.error("Recording not found: %s", path)
        raise FileNotFoundError(path)
    suffix = path.suffix.lower()
    if suffix == ".csv":
        raw = load_csv_as_raw(path, sfreq=sfreq)
    elif suffix in MNE_SUFFIXES:
        raw = mne.io.read_raw(path, preload=True, verbose=False)
    else:
        raise ValueError(f"Unsupported recording format: {path.suffix}")
    rec = recording_from_raw(raw, picks=picks, recording_id=path.stem)
    logger.info(
        "Loaded %s: %d samples x %d channels @ %d Hz",
        path.name,
        rec.n_samples,
        rec.n_channels,
        rec.sfreq,
    )
    return rec


def align_channels(recording: Recording, ch_names: Sequence[str]) -> Recording:
    """
    Reorder/subset a recording's channels to match `ch_names`.

    Labels are matched case-insensitively.

    Args:
        recording: Source recording.
        ch_names: Target channel order (e.g. a prototype set's labels).

    Returns:
        A new Recording whose columns follow `ch_names`.

    Raises:
        DimensionMismatch: If any target channel is missing from the recording.
    """
    lookup = {c.upper(): i for i, c in enumerate(recording.ch_names)}
    missing = [c for c in ch_names if c.upper() not in lookup]
    if missing:
        raise DimensionMismatch(f"Recording {recording.recording_id} lacks channels {missing}")
    idx = [lookup[c.upper()] for c in ch_names]
    if idx == list(range(recording.n_channels)):
        return recording
    logger.info("Aligned %s to %d prototype channels", recording.recording_id, len(idx))
    return Recording(
        data=recording.data[:, idx],
        ch_names=[recording.ch_names[i] for i in idx],
        sfreq=recording.sfreq,
        recording_id=recording.recording_id,
    )
