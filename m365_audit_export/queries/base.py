"""
Run bookkeeping shared by the audit log and risk queries.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Optional

logger = logging.getLogger("m365_audit_export.queries")


class ExportResult:
    """Counts, errors, and per-user failures for one export run."""

    def __init__(self, query_name: str, output_path: Optional[Path] = None):
        self.query_name = query_name
        self.output_path = output_path
        self.records_written = 0
        self.pages_fetched = 0
        self.errors: list[str] = []
        self.failed_users: dict[str, str] = {}
        self.stats: dict = {}
        self.started_at = time.time()
        self.completed_at: Optional[float] = None

    def add_page(self, record_count: int):
        self.pages_fetched += 1
        self.records_written += record_count

    def add_error(self, error: str):
        self.errors.append(error)
        logger.error(f"[{self.query_name}] {error}")

    def add_user_failure(self, user_id: str, error: str):
        self.failed_users[user_id] = error
        logger.warning(f"[{self.query_name}] Lookup failed for {user_id}: {error}")

    def complete(self):
        self.completed_at = time.time()

    @property
    def duration_seconds(self) -> float:
        end = self.completed_at if self.completed_at is not None else time.time()
        return round(end - self.started_at, 2)

    @property
    def ok(self) -> bool:
        return not self.errors and not self.failed_users

    def to_dict(self) -> dict:
        return {
            "query": self.query_name,
            "output_path": str(self.output_path) if self.output_path else None,
            "records_written": self.records_written,
            "pages_fetched": self.pages_fetched,
            "errors": list(self.errors),
            "failed_users": dict(self.failed_users),
            "duration_seconds": self.duration_seconds,
        }
