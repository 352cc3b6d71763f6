"""Exception types raised by the microstate pipeline.

Dimension and file-format problems are fatal and surface to the caller.
Empty states and degenerate samples are handled locally and never raise.
"""

from __future__ import annotations


class MicrostateError(Exception):
    """Base class for all microstate analysis errors."""


class DimensionMismatch(MicrostateError, ValueError):
    """Prototype channel count does not match the sample matrix."""


class MalformedPrototypeFile(MicrostateError, ValueError):
    """A prototype file has inconsistent or unparsable columns."""


class InsufficientSignals(MicrostateError, ValueError):
    """Fewer than two channels were supplied."""
