"""Configuration loader utilities.

Thin wrapper around OmegaConf: loads a YAML/JSON file, merges it over the
built-in defaults and resolves interpolations into a plain dictionary.
"""

from __future__ import annotations
from pathlib import Path
from typing import Any, Dict, Optional
from omegaconf import OmegaConf
from .logger import get_logger

logger = get_logger(__name__)

DEFAULTS: Dict[str, Any] = {
    "data": {
        "inputs": None,
        "channels": None,
        "sfreq": 256,
    },
    "peaks": {
        "z": None,
        "max_peaks": None,
        "random_state": 0,
    },
    "fit": {
        "ks": [4],
        "method": "modkmeans",
        "n_reps": 10,
        "max_iter": 1000,
        "threshold": 1e-6,
        "normalize": False,
        "criterion": "gev",
        "random_state": 0,
    },
    "backfit": {
        "prototypes": None,
        "min_run": 1,
        "max_iter": 1000,
        "match_by_position": False,
    },
    "complexity": {
        "k1": 2,
        "k2": 4,
        "n_surrogates": 0,
        "kmers_on": "runs",
        "random_state": 0,
    },
    "output": {
        "dir": "data/microstates",
        "prototypes_out": None,
        "write_peaks": False,
        "write_sequence": False,
    },
    "n_jobs": 1,
}


def merge_with_defaults(cfg: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Overlay a (possibly partial) config mapping on top of DEFAULTS.

    Args:
        cfg: Partial configuration mapping, or None.

    Returns:
        A plain dictionary containing every known key.
    """
    merged = OmegaConf.merge(OmegaConf.create(DEFAULTS), OmegaConf.create(cfg or {}))
    return OmegaConf.to_container(merged, resolve=True)


def load_config(path: str | Path) -> Dict[str, Any]:
    """
    Load and resolve a configuration file (YAML/JSON).

    Args:
        path: Path to the config file.

    Returns:
        A plain Python dictionary with resolved config values, defaults filled in.

    Raises:
        FileNotFoundError: If the path does not exist.
        Exception: If OmegaConf fails to parse.
    """
    p = Path(path)
    if not p.exists():
        logger.error("Config file not found: %s", p)
        raise FileNotFoundError(f"Config not found: {p}")
    cfg = OmegaConf.load(str(p))
    logger.info("Loaded config: %s", p)
    return merge_with_defaults(OmegaConf.to_container(cfg, resolve=True))
