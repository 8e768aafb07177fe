"""
CSV exporter: Streams flattened risky user / risk detection rows to disk.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Any, Iterable, Sequence


class CsvRecordWriter:
    """
    Writes a header on open, then appends rows page by page.
    Columns are fixed by the record type's field names.
    """

    def __init__(self, path: Path, fieldnames: Sequence[str]):
        self.path = Path(path)
        self.fieldnames = list(fieldnames)
        self.count = 0
        self._fh = None
        self._writer = None

    def __enter__(self) -> "CsvRecordWriter":
        self.open()
        return self

    def __exit__(self, *exc):
        self.close()

    def open(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        # utf-8-sig so Excel detects the encoding
        self._fh = open(self.path, "w", newline="", encoding="utf-8-sig")
        self._writer = csv.DictWriter(self._fh, fieldnames=self.fieldnames, extrasaction="ignore")
        self._writer.writeheader()

    def write_page(self, records: Iterable[Any]) -> int:
        """Write one page of records, returning how many were written."""
        if self._writer is None:
            raise RuntimeError("CsvRecordWriter is not open.")
        written = 0
        for record in records:
            row = record.to_row() if hasattr(record, "to_row") else record
            self._writer.writerow({k: _cell(v) for k, v in row.items()})
            written += 1
        self._fh.flush()
        self.count += written
        return written

    def close(self):
        if self._fh is None:
            return
        self._fh.close()
        self._fh = None
        self._writer = None


def _cell(value: Any) -> Any:
    return "" if value is None else value
