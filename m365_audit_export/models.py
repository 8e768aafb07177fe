"""
Data models: query requests, job state, result pages and flattened records.

Records are fixed dataclasses, one per API flavour. ``from_graph`` flattens a
raw Graph item (nested objects become prefixed scalar fields, lists become a
single "; "-joined string) and ``to_row`` returns the flat mapping written to
CSV/JSON.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from .config import DEFAULT_LOOKBACK_DAYS

LIST_SEPARATOR = "; "


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_graph_datetime(value: datetime) -> str:
    """Format a datetime the way Graph filters expect (UTC, Z suffix)."""
    return _as_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


# ─── Query request / job ────────────────────────────────────────────────────

@dataclass(frozen=True)
class QueryRequest:
    """
    An audit log search. Constructed once from caller input, never mutated.
    Defaults to the last 90 days when no time range is given.
    """
    search_name: str
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    keyword: str = ""
    service: str = ""
    record_types: tuple[str, ...] = ()
    operations: tuple[str, ...] = ()
    user_principal_names: tuple[str, ...] = ()
    ip_addresses: tuple[str, ...] = ()
    object_ids: tuple[str, ...] = ()
    administrative_unit_ids: tuple[str, ...] = ()

    def __post_init__(self):
        if not self.search_name or not self.search_name.strip():
            raise ValueError("search_name is required")
        end = _as_utc(self.end) if self.end else _utcnow()
        start = _as_utc(self.start) if self.start else end - timedelta(days=DEFAULT_LOOKBACK_DAYS)
        if start > end:
            raise ValueError(f"start ({start.isoformat()}) is after end ({end.isoformat()})")
        # frozen dataclass: normalise through object.__setattr__
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)
        for name in ("record_types", "operations", "user_principal_names",
                     "ip_addresses", "object_ids", "administrative_unit_ids"):
            object.__setattr__(self, name, tuple(getattr(self, name) or ()))

    def to_graph_body(self) -> dict:
        """Map onto the Graph auditLogQuery resource. Empty filters are omitted."""
        body: dict[str, Any] = {
            "displayName": self.search_name,
            "filterStartDateTime": format_graph_datetime(self.start),
            "filterEndDateTime": format_graph_datetime(self.end),
        }
        if self.keyword:
            body["keywordFilter"] = self.keyword
        if self.service:
            body["serviceFilter"] = self.service
        optional_lists = {
            "recordTypeFilters": self.record_types,
            "operationFilters": self.operations,
            "userPrincipalNameFilters": self.user_principal_names,
            "ipAddressFilters": self.ip_addresses,
            "objectIdFilters": self.object_ids,
            "administrativeUnitIdFilters": self.administrative_unit_ids,
        }
        for key, values in optional_lists.items():
            if values:
                body[key] = list(values)
        return body


class QueryStatus(str, Enum):
    NOT_STARTED = "notStarted"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"
    UNKNOWN = "unknownFutureValue"

    @classmethod
    def parse(cls, value: Optional[str]) -> "QueryStatus":
        for status in cls:
            if status.value == value:
                return status
        return cls.UNKNOWN

    @property
    def pending(self) -> bool:
        return self in (QueryStatus.NOT_STARTED, QueryStatus.RUNNING)


@dataclass
class QueryJob:
    """An audit log query accepted by the service."""
    id: str
    request: QueryRequest
    status: QueryStatus = QueryStatus.NOT_STARTED


# ─── Pages ──────────────────────────────────────────────────────────────────

R = TypeVar("R")


@dataclass(frozen=True)
class ResultPage(Generic[R]):
    """One page of decoded records. ``next_link`` is None on the last page."""
    records: tuple[R, ...] = ()
    next_link: Optional[str] = None

    def __len__(self) -> int:
        return len(self.records)


# ─── Flattening helpers ─────────────────────────────────────────────────────

def _scalar(value: Any) -> Any:
    """Collapse a value to something a CSV cell can hold."""
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, list):
        return join_values(value)
    if isinstance(value, dict):
        return json.dumps(value, separators=(",", ":"), sort_keys=True, ensure_ascii=False)
    return str(value)


def join_values(values: Any) -> str:
    """
    Join a list into one delimited string.
    Key/value pairs ({"Key": k, "Value": v}, as used in additionalInfo) render as k=v.
    """
    if values is None:
        return ""
    if isinstance(values, str):
        return values
    parts = []
    for v in values:
        if isinstance(v, dict) and "Key" in v and "Value" in v:
            parts.append(f"{v['Key']}={_scalar(v['Value'])}")
        elif isinstance(v, dict):
            parts.append(_scalar(v))
        elif v is not None:
            parts.append(str(v))
    return LIST_SEPARATOR.join(parts)


def _parse_additional_info(raw: Any) -> str:
    """additionalInfo arrives as a JSON-encoded string holding a Key/Value list."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return raw
    if isinstance(raw, list):
        return join_values(raw)
    return _scalar(raw) or ""


class FlatRecord:
    """Mixin providing the flat row contract shared by all record types."""

    @classmethod
    def fieldnames(cls) -> list[str]:
        return [f.name for f in fields(cls)]

    def to_row(self) -> dict:
        return {name: getattr(self, name) for name in self.fieldnames()}


# ─── Record types ───────────────────────────────────────────────────────────

@dataclass
class AuditLogRecord(FlatRecord):
    id: str = ""
    createdDateTime: Optional[str] = None
    auditLogRecordType: Optional[str] = None
    operation: Optional[str] = None
    organizationId: Optional[str] = None
    userType: Optional[str] = None
    userId: Optional[str] = None
    userPrincipalName: Optional[str] = None
    service: Optional[str] = None
    objectId: Optional[str] = None
    clientIp: Optional[str] = None
    administrativeUnits: str = ""
    auditData: str = ""

    @classmethod
    def from_graph(cls, item: dict) -> "AuditLogRecord":
        audit_data = item.get("auditData")
        if audit_data is None:
            audit_text = ""
        elif isinstance(audit_data, str):
            audit_text = audit_data
        else:
            audit_text = json.dumps(audit_data, separators=(",", ":"), ensure_ascii=False, default=str)
        return cls(
            id=item.get("id", ""),
            createdDateTime=item.get("createdDateTime"),
            auditLogRecordType=item.get("auditLogRecordType"),
            operation=item.get("operation"),
            organizationId=item.get("organizationId"),
            userType=item.get("userType"),
            userId=item.get("userId"),
            userPrincipalName=item.get("userPrincipalName"),
            service=item.get("service"),
            objectId=item.get("objectId"),
            clientIp=item.get("clientIp"),
            administrativeUnits=join_values(item.get("administrativeUnits")),
            auditData=audit_text,
        )


@dataclass
class RiskyUser(FlatRecord):
    id: str = ""
    userDisplayName: Optional[str] = None
    userPrincipalName: Optional[str] = None
    riskLevel: Optional[str] = None
    riskState: Optional[str] = None
    riskDetail: Optional[str] = None
    riskLastUpdatedDateTime: Optional[str] = None
    isDeleted: Optional[bool] = None
    isProcessing: Optional[bool] = None

    @classmethod
    def from_graph(cls, item: dict) -> "RiskyUser":
        return cls(**{name: _scalar(item.get(name)) for name in cls.fieldnames() if name in item})


@dataclass
class RiskDetection(FlatRecord):
    id: str = ""
    requestId: Optional[str] = None
    correlationId: Optional[str] = None
    riskEventType: Optional[str] = None
    riskType: Optional[str] = None
    riskState: Optional[str] = None
    riskLevel: Optional[str] = None
    riskDetail: Optional[str] = None
    source: Optional[str] = None
    detectionTimingType: Optional[str] = None
    activity: Optional[str] = None
    tokenIssuerType: Optional[str] = None
    ipAddress: Optional[str] = None
    activityDateTime: Optional[str] = None
    detectedDateTime: Optional[str] = None
    lastUpdatedDateTime: Optional[str] = None
    userId: Optional[str] = None
    userDisplayName: Optional[str] = None
    userPrincipalName: Optional[str] = None
    locationCity: Optional[str] = None
    locationState: Optional[str] = None
    locationCountryOrRegion: Optional[str] = None
    locationLatitude: Optional[float] = None
    locationLongitude: Optional[float] = None
    additionalInfo: str = ""

    _LOCATION_FIELDS = {
        "city": "locationCity",
        "state": "locationState",
        "countryOrRegion": "locationCountryOrRegion",
    }

    @classmethod
    def from_graph(cls, item: dict) -> "RiskDetection":
        values = {
            name: _scalar(item[name])
            for name in cls.fieldnames()
            if name in item and name != "additionalInfo"
        }

        location = item.get("location")
        if isinstance(location, dict):
            for src, dst in cls._LOCATION_FIELDS.items():
                values[dst] = location.get(src)
            coords = location.get("geoCoordinates") or {}
            values["locationLatitude"] = coords.get("latitude")
            values["locationLongitude"] = coords.get("longitude")

        if "additionalInfo" in item:
            values["additionalInfo"] = _parse_additional_info(item["additionalInfo"])
        return cls(**values)
