"""
CLI entrypoint for the microstate pipeline.

Provides three thin commands:
  - pipeline: run the full pipeline from a YAML config (uses run_from_config)
  - fit: fit prototype maps from GFP peaks of one or more recordings
  - backfit: backfit recordings onto saved prototypes and write report tables

Usage:
  python -m src.microstates.cli pipeline --config configs/microstates.yaml
  python -m src.microstates.cli fit --input "data/*.edf" --k 4 --k 5 --out data/prototypes.txt
  python -m src.microstates.cli backfit --input "data/*.edf" --prototypes data/prototypes.txt --out data/ms --min-run 3
"""

from __future__ import annotations
import argparse
from pathlib import Path
from typing import List, Optional

from src.microstates.io.prototypes import write_prototypes
from src.microstates.pipeline import resolve_inputs, fit_from_recordings, run_from_config, run_pipeline
from src.microstates.data.io import load_recording
from src.microstates.utils.logger import get_logger, set_level

logger = get_logger(__name__)


def _channels(value: Optional[str]) -> Optional[List[str]]:
    if not value:
        return None
    return [c.strip() for c in value.split(",") if c.strip()]


def cli(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="microstates")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose logging")
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_pipeline = sub.add_parser("pipeline", help="Run pipeline from config YAML")
    p_pipeline.add_argument("--config", type=str, default="configs/microstates.yaml", help="Path to pipeline config YAML")

    p_fit = sub.add_parser("fit", help="Fit prototype maps from GFP peaks")
    p_fit.add_argument("--input", required=True, action="append", help="Recording path or glob (repeatable)")
    p_fit.add_argument("--out", required=True, help="Output prototype file")
    p_fit.add_argument("--k", type=int, action="append", required=True, help="Candidate number of states (repeatable)")
    p_fit.add_argument("--method", default="modkmeans", choices=("modkmeans", "kmeans"), help="Fitting method")
    p_fit.add_argument("--criterion", default="gev", choices=("gev", "cv"), help="K selection criterion")
    p_fit.add_argument("--n-reps", type=int, default=10, help="Random restarts per K")
    p_fit.add_argument("--normalize", action="store_true", help="Scale data by mean channel SD before fitting")
    p_fit.add_argument("--z", type=float, default=None, help="Drop peaks with GFP above mean + z*SD")
    p_fit.add_argument("--max-peaks", type=int, default=None, help="Randomly keep at most this many peaks per recording")
    p_fit.add_argument("--seed", type=int, default=0, help="Random seed")
    p_fit.add_argument("--sfreq", type=float, default=256.0, help="Sampling rate for CSV input (Hz)")
    p_fit.add_argument("--channels", default=None, help="Comma-separated channel list (optional)")

    p_back = sub.add_parser("backfit", help="Backfit recordings onto saved prototypes")
    p_back.add_argument("--input", required=True, action="append", help="Recording path or glob (repeatable)")
    p_back.add_argument("--prototypes", required=True, help="Prototype file written by 'fit'")
    p_back.add_argument("--out", required=True, help="Output folder for report tables")
    p_back.add_argument("--min-run", type=int, default=1, help="Minimum run length in samples")
    p_back.add_argument("--k1", type=int, default=2, help="Shortest k-mer")
    p_back.add_argument("--k2", type=int, default=4, help="Longest k-mer")
    p_back.add_argument("--n-surrogates", type=int, default=0, help="Shuffled sequences for the k-mer null")
    p_back.add_argument("--kmers-on", default="runs", choices=("runs", "points"), help="Sequence used for k-mers")
    p_back.add_argument("--write-peaks", action="store_true", help="Also write the GFP-at-peak trace")
    p_back.add_argument("--write-sequence", action="store_true", help="Also write per-sample states")
    p_back.add_argument(
        "--match-by-position", action="store_true", help="Pair channels by column order when labels differ"
    )
    p_back.add_argument("--n-jobs", type=int, default=1, help="Parallel workers across recordings")
    p_back.add_argument("--seed", type=int, default=0, help="Random seed")
    p_back.add_argument("--sfreq", type=float, default=256.0, help="Sampling rate for CSV input (Hz)")
    p_back.add_argument("--channels", default=None, help="Comma-separated channel list (optional)")

    args = parser.parse_args(argv)
    if args.verbose:
        set_level("DEBUG")

    if args.cmd == "pipeline":
        cfg_path = Path(args.config)
        logger.info("Starting pipeline with config %s", cfg_path)
        run_from_config(str(cfg_path))
    elif args.cmd == "fit":
        recordings = [
            load_recording(p, sfreq=args.sfreq, picks=_channels(args.channels)) for p in resolve_inputs(args.input)
        ]
        if not recordings:
            parser.error("no recordings matched --input")
        cfg = {
            "peaks": {"z": args.z, "max_peaks": args.max_peaks, "random_state": args.seed},
            "fit": {
                "ks": args.k,
                "method": args.method,
                "criterion": args.criterion,
                "n_reps": args.n_reps,
                "normalize": args.normalize,
                "random_state": args.seed,
            },
        }
        result = fit_from_recordings(recordings, cfg)
        write_prototypes(result.prototypes, args.out)
        print(result.diagnostics.to_string())
    elif args.cmd == "backfit":
        cfg = {
            "data": {"inputs": args.input, "sfreq": args.sfreq, "channels": _channels(args.channels)},
            "backfit": {
                "prototypes": args.prototypes,
                "min_run": args.min_run,
                "match_by_position": args.match_by_position,
            },
            "complexity": {
                "k1": args.k1,
                "k2": args.k2,
                "n_surrogates": args.n_surrogates,
                "kmers_on": args.kmers_on,
                "random_state": args.seed,
            },
            "output": {"dir": args.out, "write_peaks": args.write_peaks, "write_sequence": args.write_sequence},
            "n_jobs": args.n_jobs,
        }
        run_pipeline(cfg)
    else:
        parser.print_help()


if __name__ == "__main__":
    cli()
