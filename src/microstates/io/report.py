"""Tabular report sink for microstate results.

`ReportSession` owns an output directory and appends one CSV per table
(states, transitions, summary, kmers, fit, and optionally peaks and sequence).
The session remembers which tables already have a header, so several
recordings can be written one after another into the same files.
"""

from __future__ import annotations
from pathlib import Path
from typing import Dict, Optional, Set
import pandas as pd

from ..utils.logger import get_logger

logger = get_logger(__name__)


class ReportSession:
    """Append-only CSV writer keyed by table name."""

    def __init__(self, out_dir: str | Path, overwrite: bool = True):
        self.out_dir = Path(out_dir)
        self.out_dir.mkdir(parents=True, exist_ok=True)
        self.overwrite = overwrite
        self._headers: Set[str] = set()
        self.rows_written: Dict[str, int] = {}

    def path_for(self, table: str) -> Path:
        return self.out_dir / f"{table}.csv"

    def has_header(self, table: str) -> bool:
        return table in self._headers

    def write(self, table: str, df: pd.DataFrame, recording_id: Optional[str] = None) -> Path:
        """
        Append rows to `<out_dir>/<table>.csv`.

        The first write of a table in this session writes the header (and
        replaces any existing file when `overwrite` is True); later writes append.

        Args:
            table: Table name (file stem).
            df: Rows to write.
            recording_id: If given, prepended as an 'ID' column.

        Returns:
            Path of the CSV file.
        """
        path = self.path_for(table)
        if recording_id is not None:
            df = df.copy()
            df.insert(0, "ID", recording_id)
        first = table not in self._headers
        if first and not self.overwrite and path.exists():
            first = False
        df.to_csv(path, mode="w" if first else "a", header=first, index=False)
        self._headers.add(table)
        self.rows_written[table] = self.rows_written.get(table, 0) + len(df)
        logger.debug("Wrote %d rows to %s", len(df), path)
        return path

    def close(self) -> None:
        for table, n in sorted(self.rows_written.items()):
            logger.info("Report %s: %d rows", self.path_for(table), n)

    def __enter__(self) -> "ReportSession":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
