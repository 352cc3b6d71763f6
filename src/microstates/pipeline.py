"""Top-level microstate pipeline: recordings -> prototypes -> backfit -> statistics -> reports.

This module glues together config-driven loading, GFP-peak extraction,
prototype fitting (or loading), backfitting, smoothing, statistics and
complexity, and writes the per-recording tables through a ReportSession.
Recordings are independent, so the analysis stage can run on a joblib worker
pool; the prototype set is shared read-only.
"""

from __future__ import annotations
from dataclasses import dataclass
from glob import glob
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence
import numpy as np
import pandas as pd
from joblib import Parallel, delayed

from .data.io import Recording, align_channels, load_recording
from .errors import DimensionMismatch, MicrostateError
from .features.complexity import ComplexityBundle, compute_complexity
from .features.statistics import StatisticsBundle, compute_statistics
from .io.prototypes import PrototypeSet, read_prototypes, write_prototypes
from .io.report import ReportSession
from .segmentation.backfit import BackfitResult, backfit
from .segmentation.fitting import FitResult, fit_prototypes
from .segmentation.peaks import PeakResult, find_gfp_peaks
from .segmentation.smoothing import smooth
from .utils.config_loader import load_config, merge_with_defaults
from .utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class MicrostateResult:
    recording_id: str
    sfreq: int
    labels: np.ndarray
    backfit: BackfitResult
    statistics: StatisticsBundle
    complexity: ComplexityBundle
    peaks: Optional[PeakResult] = None

    @property
    def n_states(self) -> int:
        return self.statistics.n_states

    def summary(self) -> Dict[str, Any]:
        return {
            "K": self.n_states,
            "N": int(self.labels.size),
            "SR": self.sfreq,
            "GEV": self.statistics.gev_total,
            "N_DEGENERATE": self.backfit.n_degenerate,
            "N_PEAKS": len(self.peaks) if self.peaks is not None else np.nan,
            **self.complexity.summary(),
        }


def _match_channels(recording: Recording, prototypes: PrototypeSet, match_by_position: bool = False) -> Recording:
    """Put recording columns in prototype channel order; position matching only on request."""
    try:
        return align_channels(recording, prototypes.ch_names)
    except DimensionMismatch:
        if not match_by_position or recording.n_channels != prototypes.n_channels:
            raise
        logger.warning(
            "Channel labels of %s differ from the prototype labels; matching by position",
            recording.recording_id,
        )
        return recording


def collect_peak_maps(
    recordings: Sequence[Recording],
    z: Optional[float] = None,
    max_peaks: Optional[int] = None,
    random_state: int | None = None,
) -> np.ndarray:
    """
    Pool GFP-peak topographies across recordings.

    Args:
        recordings: Recordings sharing one channel set (first recording's order is used).
        z, max_peaks, random_state: Peak filters, applied per recording.

    Returns:
        (n_peaks_total, n_channels) array.
    """
    if not recordings:
        raise ValueError("No recordings to collect peaks from")
    ch_names = recordings[0].ch_names
    pooled = []
    for rec in recordings:
        rec = align_channels(rec, ch_names)
        peaks = find_gfp_peaks(rec.data, z=z, max_peaks=max_peaks, random_state=random_state)
        pooled.append(rec.data[peaks.indices])
    maps = np.vstack(pooled)
    logger.info("Pooled %d peak maps from %d recordings", maps.shape[0], len(recordings))
    return maps


def fit_from_recordings(recordings: Sequence[Recording], cfg: Dict[str, Any]) -> FitResult:
    """Collect GFP peaks from `recordings` and fit prototypes as configured."""
    cfg = merge_with_defaults(cfg)
    pk = cfg["peaks"]
    fit = cfg["fit"]
    maps = collect_peak_maps(recordings, z=pk["z"], max_peaks=pk["max_peaks"], random_state=pk["random_state"])
    return fit_prototypes(
        maps,
        fit["ks"],
        ch_names=recordings[0].ch_names,
        method=fit["method"],
        n_reps=fit["n_reps"],
        max_iter=fit["max_iter"],
        threshold=fit["threshold"],
        normalize=fit["normalize"],
        criterion=fit["criterion"],
        random_state=fit["random_state"],
    )


def analyze_recording(
    recording: Recording,
    prototypes: PrototypeSet,
    min_run: int = 1,
    max_iter: int = 1000,
    k1: int = 2,
    k2: int = 4,
    n_surrogates: int = 0,
    kmers_on: str = "runs",
    random_state: int | None = None,
    peaks: Optional[Dict[str, Any]] = None,
    match_by_position: bool = False,
) -> MicrostateResult:
    """
    Backfit, smooth and summarize one recording.

    Args:
        recording: Recording to analyze.
        prototypes: Prototype set (channels matched by label).
        min_run: Minimum run length in samples for smoothing.
        max_iter: Smoothing pass cap per run length.
        k1, k2, n_surrogates, kmers_on, random_state: Complexity options.
        peaks: Optional peak filter options ({'z', 'max_peaks', 'random_state'});
               when given, the GFP-at-peak trace is kept for reporting.
        match_by_position: Fall back to column order when channel labels do not
               match but the channel counts do.

    Returns:
        MicrostateResult.

    Raises:
        DimensionMismatch: If channels cannot be matched to the prototypes.
    """
    rec = _match_channels(recording, prototypes, match_by_position=match_by_position)
    fitted = backfit(rec.data, prototypes)
    ranked = smooth(fitted.ranked, min_run, max_iter=max_iter)
    labels = ranked.best()
    stats = compute_statistics(rec.data, fitted.gmd, labels, rec.sfreq, prototypes.n_states, valid=fitted.valid)
    cx = compute_complexity(labels, k1=k1, k2=k2, n_surrogates=n_surrogates, kmers_on=kmers_on, random_state=random_state)
    peak_res = None
    if peaks is not None:
        peak_res = find_gfp_peaks(
            rec.data, z=peaks.get("z"), max_peaks=peaks.get("max_peaks"), random_state=peaks.get("random_state")
        )
    logger.info("Analyzed %s: GEV=%.4f, LZW=%d", rec.recording_id, stats.gev_total, cx.lzw_points)
    return MicrostateResult(
        recording_id=rec.recording_id,
        sfreq=rec.sfreq,
        labels=labels,
        backfit=fitted,
        statistics=stats,
        complexity=cx,
        peaks=peak_res,
    )


def write_result(
    session: ReportSession,
    result: MicrostateResult,
    write_peaks: bool = False,
    write_sequence: bool = False,
) -> None:
    """Write one recording's tables through the report session."""
    rid = result.recording_id
    session.write("summary", pd.DataFrame([result.summary()]), recording_id=rid)
    session.write("states", result.statistics.to_frame(), recording_id=rid)
    session.write("transitions", result.statistics.transitions_frame(), recording_id=rid)
    session.write("kmers", result.complexity.kmers.to_frame(), recording_id=rid)
    if write_peaks and result.peaks is not None:
        session.write(
            "peaks",
            pd.DataFrame({"SAMPLE": result.peaks.indices, "GFP": result.peaks.gfp}),
            recording_id=rid,
        )
    if write_sequence:
        # unobserved samples (-1) pick the trailing "-"
        letters = np.array(result.statistics.labels + ["-"])
        session.write(
            "sequence",
            pd.DataFrame({"SAMPLE": np.arange(result.labels.size), "STATE": letters[result.labels]}),
            recording_id=rid,
        )


def resolve_inputs(inputs: Any) -> List[Path]:
    if not inputs:
        return []
    patterns = [inputs] if isinstance(inputs, (str, Path)) else list(inputs)
    paths: List[Path] = []
    for pattern in patterns:
        hits = sorted(glob(str(pattern)))
        if not hits:
            logger.warning("No recordings match %s", pattern)
        paths.extend(Path(h) for h in hits)
    return paths


def _safe_analyze(recording: Recording, prototypes: PrototypeSet, cfg: Dict[str, Any]) -> Optional[MicrostateResult]:
    bf = cfg["backfit"]
    cx = cfg["complexity"]
    try:
        return analyze_recording(
            recording,
            prototypes,
            min_run=bf["min_run"],
            max_iter=bf["max_iter"],
            k1=cx["k1"],
            k2=cx["k2"],
            n_surrogates=cx["n_surrogates"],
            kmers_on=cx["kmers_on"],
            random_state=cx["random_state"],
            peaks=cfg["peaks"] if cfg["output"]["write_peaks"] else None,
            match_by_position=bf["match_by_position"],
        )
    except MicrostateError:
        logger.error("Unrecoverable error analyzing %s", recording.recording_id)
        raise
    except Exception:
        logger.exception("Failed analyzing recording %s", recording.recording_id)
    return None


def run_pipeline(cfg: Dict[str, Any], recordings: Optional[Sequence[Recording]] = None) -> Dict[str, MicrostateResult]:
    """
    Execute the pipeline according to a configuration mapping.

    Args:
        cfg: Configuration dictionary ('data', 'peaks', 'fit', 'backfit',
             'complexity', 'output', 'n_jobs'); missing keys take defaults.
        recordings: Optional in-memory recordings used instead of `data.inputs`.

    Returns:
        Mapping recording_id -> MicrostateResult for every recording that succeeded.
    """
    cfg = merge_with_defaults(cfg)
    data_cfg = cfg["data"]
    out_cfg = cfg["output"]

    if recordings is None:
        recordings = []
        for path in resolve_inputs(data_cfg["inputs"]):
            try:
                recordings.append(load_recording(path, sfreq=data_cfg["sfreq"], picks=data_cfg["channels"]))
            except Exception:
                logger.exception("Failed loading recording %s", path)
    recordings = list(recordings)
    if not recordings:
        logger.warning("No recordings to analyze")
        return {}

    proto_path = cfg["backfit"]["prototypes"]
    if proto_path:
        prototypes = read_prototypes(proto_path)
    else:
        fit = fit_from_recordings(recordings, cfg)
        prototypes = fit.prototypes
        proto_out = out_cfg["prototypes_out"] or Path(out_cfg["dir"]) / "prototypes.txt"
        write_prototypes(prototypes, proto_out)
        ReportSession(out_cfg["dir"]).write("fit", fit.diagnostics.reset_index())

    n_jobs = int(cfg["n_jobs"] or 1)
    if n_jobs == 1:
        outputs = [_safe_analyze(rec, prototypes, cfg) for rec in recordings]
    else:
        outputs = Parallel(n_jobs=n_jobs)(delayed(_safe_analyze)(rec, prototypes, cfg) for rec in recordings)

    results: Dict[str, MicrostateResult] = {}
    with ReportSession(out_cfg["dir"]) as session:
        for res in outputs:
            if res is None:
                continue
            write_result(session, res, write_peaks=out_cfg["write_peaks"], write_sequence=out_cfg["write_sequence"])
            results[res.recording_id] = res
    logger.info("Pipeline complete: %d of %d recordings analyzed.", len(results), len(recordings))
    return results


def run_from_config(cfg_path: str | Path) -> Dict[str, MicrostateResult]:
    """
    Load a config file and run the pipeline as specified.

    Args:
        cfg_path: Path to YAML/JSON config.

    Returns:
        Mapping recording_id -> MicrostateResult.
    """
    cfg = load_config(cfg_path)
    return run_pipeline(cfg)
