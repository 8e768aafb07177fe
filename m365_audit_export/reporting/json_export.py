"""
JSON exporter: Streams audit log records into a single JSON array file.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Iterable


class JsonArrayWriter:
    """
    Append-only JSON array writer. Each page is written as one array fragment
    so memory stays bounded by the page size; the file is a valid JSON array
    once the writer is closed, including when no records were written.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.count = 0
        self._fh = None

    def __enter__(self) -> "JsonArrayWriter":
        self.open()
        return self

    def __exit__(self, *exc):
        self.close()

    def open(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = open(self.path, "w", encoding="utf-8")
        self._fh.write("[")

    def write_page(self, records: Iterable[Any]) -> int:
        """Write one page of records, returning how many were written."""
        if self._fh is None:
            raise RuntimeError("JsonArrayWriter is not open.")
        items = [
            json.dumps(_to_row(r), indent=2, default=str, ensure_ascii=False)
            for r in records
        ]
        if not items:
            return 0
        prefix = ",\n" if self.count else "\n"
        self._fh.write(prefix + ",\n".join(items))
        self._fh.flush()
        self.count += len(items)
        return len(items)

    def close(self):
        if self._fh is None:
            return
        self._fh.write("\n]\n" if self.count else "]\n")
        self._fh.close()
        self._fh = None


def _to_row(record: Any) -> Any:
    return record.to_row() if hasattr(record, "to_row") else record
