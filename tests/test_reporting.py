from __future__ import annotations

import csv
import json

import pytest

from m365_audit_export.models import AuditLogRecord, RiskyUser
from m365_audit_export.queries import ExportResult
from m365_audit_export.reporting import CsvRecordWriter, JsonArrayWriter
from m365_audit_export.reporting.summary import build_summary, format_elapsed


def test_json_writer_with_no_records_is_empty_array(tmp_path):
    path = tmp_path / "empty.json"
    with JsonArrayWriter(path) as writer:
        writer.write_page([])
    assert json.loads(path.read_text(encoding="utf-8")) == []


def test_json_writer_appends_pages_into_one_array(tmp_path):
    path = tmp_path / "out" / "audit.json"
    with JsonArrayWriter(path) as writer:
        assert writer.write_page([AuditLogRecord(id="1"), AuditLogRecord(id="2")]) == 2
        writer.write_page([])
        assert writer.write_page([AuditLogRecord(id="3", operation="Set-Mailbox")]) == 1

    data = json.loads(path.read_text(encoding="utf-8"))
    assert [r["id"] for r in data] == ["1", "2", "3"]
    assert data[2]["operation"] == "Set-Mailbox"
    assert set(data[0]) == set(AuditLogRecord.fieldnames())
    assert writer.count == 3


def test_json_writer_closes_file_on_error(tmp_path):
    path = tmp_path / "partial.json"
    with pytest.raises(RuntimeError):
        with JsonArrayWriter(path) as writer:
            writer.write_page([{"id": "1"}])
            raise RuntimeError("interrupted")
    assert json.loads(path.read_text(encoding="utf-8")) == [{"id": "1"}]


def test_json_writer_must_be_open(tmp_path):
    with pytest.raises(RuntimeError):
        JsonArrayWriter(tmp_path / "x.json").write_page([{"id": "1"}])


def test_csv_writer_header_only_when_empty(tmp_path):
    path = tmp_path / "users.csv"
    with CsvRecordWriter(path, RiskyUser.fieldnames()):
        pass
    with open(path, newline="", encoding="utf-8-sig") as fh:
        rows = list(csv.reader(fh))
    assert rows == [RiskyUser.fieldnames()]


def test_csv_writer_streams_rows(tmp_path):
    path = tmp_path / "users.csv"
    with CsvRecordWriter(path, RiskyUser.fieldnames()) as writer:
        writer.write_page([RiskyUser(id="u1", riskLevel="high", isDeleted=False)])
        writer.write_page([RiskyUser(id="u2", userPrincipalName="b@contoso.com")])

    with open(path, newline="", encoding="utf-8-sig") as fh:
        rows = list(csv.DictReader(fh))
    assert [r["id"] for r in rows] == ["u1", "u2"]
    assert rows[0]["riskLevel"] == "high"
    assert rows[0]["isDeleted"] == "False"
    assert rows[1]["riskLevel"] == ""
    assert rows[1]["userPrincipalName"] == "b@contoso.com"


@pytest.mark.parametrize(
    "seconds, expected",
    [(0, "0s"), (59.6, "1m 00s"), (125, "2m 05s"), (3725, "1h 02m 05s")],
)
def test_format_elapsed(seconds, expected):
    assert format_elapsed(seconds) == expected


def test_summary_uses_explicit_run_start():
    result = ExportResult("risky-users")
    result.add_page(2)
    result.add_user_failure("user-2", "404")
    summary = build_summary(result, run_started=1000.0, client_stats={"total_requests": 4}, now=1090.0)
    assert summary["elapsed"] == "1m 30s"
    assert summary["records_written"] == 2
    assert summary["failed_users"] == {"user-2": "404"}
    assert summary["total_requests"] == 4
    assert not result.ok
