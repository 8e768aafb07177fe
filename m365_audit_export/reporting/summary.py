"""
End-of-run summary printed by the CLI.
"""

from __future__ import annotations

import time
from typing import Optional


def format_elapsed(seconds: float) -> str:
    minutes, secs = divmod(int(round(seconds)), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes:02d}m {secs:02d}s"
    if minutes:
        return f"{minutes}m {secs:02d}s"
    return f"{secs}s"


def build_summary(result, run_started: float, client_stats: Optional[dict] = None,
                  now: Optional[float] = None) -> dict:
    """Combine an ExportResult with run timing and client statistics."""
    finished = now if now is not None else time.time()
    summary = result.to_dict()
    summary["elapsed"] = format_elapsed(finished - run_started)
    summary.update(client_stats or {})
    return summary


def print_summary(result, run_started: float, client_stats: Optional[dict] = None) -> dict:
    summary = build_summary(result, run_started, client_stats)

    print("\n" + "=" * 70)
    print(" EXPORT COMPLETE" if result.ok else " EXPORT COMPLETED WITH ERRORS")
    print("=" * 70)
    print(f"  Query:    {summary['query']}")
    print(f"  Records:  {summary['records_written']} ({summary['pages_fetched']} pages)")
    if summary.get("total_requests") is not None:
        print(f"  Requests: {summary['total_requests']} "
              f"({summary.get('throttle_events', 0)} throttled)")
    print(f"  Elapsed:  {summary['elapsed']}")
    if summary["output_path"]:
        print(f"  File:     {summary['output_path']}")
    for user_id, error in summary["failed_users"].items():
        print(f"  ⚠  {user_id}: {error}")
    for error in summary["errors"]:
        print(f"  ❌ {error}")
    print()
    return summary
