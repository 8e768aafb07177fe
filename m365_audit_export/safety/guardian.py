"""
Request Guardian: Keeps the exporter read-only against the tenant.
Only GETs and the audit log query creation POST are allowed through.
"""

from __future__ import annotations

import logging
import re
from typing import Optional

logger = logging.getLogger("m365_audit_export.safety")

READ_METHODS = {"GET", "HEAD", "OPTIONS"}

# Creating an audit log query is a POST but does not change tenant state
SAFE_POST_ENDPOINTS = [
    re.compile(r"/security/auditLog/queries/?$"),
]


class SafetyViolation(Exception):
    """Raised when a request would modify the tenant."""
    pass


class RequestGuardian:
    """Validates every outbound request before the HTTP client sends it."""

    def validate_request(self, method: str, url: str, body: Optional[dict] = None) -> bool:
        """Return True if the request is allowed, raise SafetyViolation if not."""
        method_upper = method.upper()

        if method_upper in READ_METHODS:
            return True

        if method_upper == "POST":
            path = url.split("?", 1)[0]
            if any(pattern.search(path) for pattern in SAFE_POST_ENDPOINTS):
                return True

        logger.critical(f"Blocked write request: {method_upper} {url}")
        raise SafetyViolation(f"Write request blocked: {method_upper} {url}")
