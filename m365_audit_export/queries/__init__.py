from .base import ExportResult
from .audit_log import (
    AuditLogSearch,
    AuditQueryError,
    SubmissionError,
    QueryFailedError,
    QueryTimeoutError,
)
from .risk import RiskQuery

__all__ = [
    "ExportResult",
    "AuditLogSearch",
    "AuditQueryError",
    "SubmissionError",
    "QueryFailedError",
    "QueryTimeoutError",
    "RiskQuery",
]
