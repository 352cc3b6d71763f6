"""Top-level package for EEG microstate analysis.

This module keeps the package importable and documents the public API surface.
"""

__all__ = [
    "data",
    "io",
    "segmentation",
    "features",
    "utils",
    "pipeline",
    "cli",
    "errors",
]
