"""
Configuration module for the M365 Audit & Risk Export tool.
Defines Graph endpoints, polling and throttling parameters, and output settings.
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class ConfigurationError(Exception):
    """Raised when configuration is unusable (e.g. output directory not writable)."""
    pass


# ─── Tenant Authentication ───────────────────────────────────────────────────

@dataclass
class CertificateAuth:
    """Certificate-based app-only authentication configuration."""
    tenant_id: str
    client_id: str
    certificate_path: str          # Path to base64-encoded PFX
    certificate_password: str = "" # Falls back to M365_CERT_PASSWORD, then prompt


@dataclass
class SecretAuth:
    """Client-secret app-only authentication configuration."""
    tenant_id: str
    client_id: str
    client_secret: str = ""        # Falls back to M365_CLIENT_SECRET


@dataclass
class DelegatedAuth:
    """Delegated (device code) authentication configuration."""
    tenant_id: str
    client_id: str
    scopes: list[str] = field(default_factory=lambda: list(DELEGATED_SCOPES))


@dataclass
class AuthConfig:
    """Authentication configuration: one of certificate, secret, delegated, token."""
    mode: str = "certificate"
    certificate: Optional[CertificateAuth] = None
    secret: Optional[SecretAuth] = None
    delegated: Optional[DelegatedAuth] = None
    access_token: str = ""         # mode "token": pre-issued bearer token


# ─── Graph API Settings ─────────────────────────────────────────────────────

GRAPH_BASE_URL = "https://graph.microsoft.com"
GRAPH_API_VERSION = "v1.0"
GRAPH_BETA_VERSION = "beta"

AUDIT_LOG_QUERIES_ENDPOINT = "security/auditLog/queries"
RISKY_USERS_ENDPOINT = "identityProtection/riskyUsers"
RISK_DETECTIONS_ENDPOINT = "identityProtection/riskDetections"

DELEGATED_SCOPES = [
    "https://graph.microsoft.com/AuditLogsQuery.Read.All",
    "https://graph.microsoft.com/IdentityRiskyUser.Read.All",
    "https://graph.microsoft.com/IdentityRiskEvent.Read.All",
]

# Throttling
MAX_RETRIES = 5                   # Retry count for throttled requests
INITIAL_BACKOFF_SECONDS = 2.0     # First retry delay
MAX_BACKOFF_SECONDS = 120.0       # Cap on exponential backoff
BACKOFF_MULTIPLIER = 2.0

# Pagination
DEFAULT_PAGE_SIZE = 500           # riskyUsers/riskDetections cap $top at 500
MAX_PAGES_PER_ENDPOINT = 10000    # Safety cap on pagination loops

# Audit log query polling
DEFAULT_POLL_INTERVAL_SECONDS = 10.0
DEFAULT_MAX_WAIT_SECONDS = 1800.0
DEFAULT_LOOKBACK_DAYS = 90


# ─── Polling ────────────────────────────────────────────────────────────────

@dataclass
class PollingConfig:
    """Controls how long and how often an audit log query is polled."""
    interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    max_wait_seconds: Optional[float] = DEFAULT_MAX_WAIT_SECONDS

    def __post_init__(self):
        if self.interval_seconds < 0:
            raise ConfigurationError("Poll interval must not be negative.")
        if self.max_wait_seconds is not None and self.max_wait_seconds <= 0:
            raise ConfigurationError("Maximum wait must be positive.")


# ─── Output Configuration ───────────────────────────────────────────────────

@dataclass
class OutputConfig:
    """Output directory and file naming."""
    base_dir: str = ""
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
        if not self.base_dir:
            self.base_dir = os.path.join(os.getcwd(), "m365_audit_output")

    @property
    def output_dir(self) -> Path:
        return Path(self.base_dir)

    def prepare(self) -> Path:
        """
        Create the output directory if missing and verify it is writable.
        Raises ConfigurationError for an unusable path; never a silent no-op.
        """
        path = self.output_dir
        if path.exists() and not path.is_dir():
            raise ConfigurationError(f"Output path exists but is not a directory: {path}")
        try:
            path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise ConfigurationError(f"Cannot create output directory {path}: {e}") from e
        if not os.access(path, os.W_OK | os.X_OK):
            raise ConfigurationError(f"Output directory is not writable: {path}")
        return path

    def audit_log_path(self, search_name: str) -> Path:
        return self.output_dir / f"{self.timestamp}-{_safe_filename(search_name)}-UnifiedAuditLog.json"

    def risky_users_path(self) -> Path:
        return self.output_dir / f"{self.timestamp}-RiskyUsers.csv"

    def risk_detections_path(self) -> Path:
        return self.output_dir / f"{self.timestamp}-RiskyDetections.csv"


def _safe_filename(name: str) -> str:
    """Replace characters that are not allowed in file names on Windows or POSIX."""
    cleaned = "".join("_" if c in '<>:"/\\|?*' or ord(c) < 32 else c for c in name)
    return cleaned.strip().strip(".") or "search"


# ─── Master Configuration ───────────────────────────────────────────────────

@dataclass
class ExportConfig:
    """Top-level configuration for an export run."""
    auth: AuthConfig = field(default_factory=AuthConfig)
    polling: PollingConfig = field(default_factory=PollingConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    verbose: bool = False

    @classmethod
    def from_file(cls, path: str | Path) -> "ExportConfig":
        """Load configuration from a JSON file."""
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read config file {path}: {e}") from e

        config = cls()
        auth_data = data.get("auth", {})
        if auth_data:
            config.auth.mode = auth_data.get("mode", "certificate")
            config.auth.access_token = auth_data.get("access_token", "")
            try:
                if "certificate" in auth_data:
                    c = auth_data["certificate"]
                    config.auth.certificate = CertificateAuth(
                        tenant_id=c["tenant_id"],
                        client_id=c["client_id"],
                        certificate_path=c.get("certificate_path", "./base64.txt"),
                        certificate_password=c.get("certificate_password", ""),
                    )
                if "secret" in auth_data:
                    s = auth_data["secret"]
                    config.auth.secret = SecretAuth(
                        tenant_id=s["tenant_id"],
                        client_id=s["client_id"],
                        client_secret=s.get("client_secret", ""),
                    )
                if "delegated" in auth_data:
                    d = auth_data["delegated"]
                    config.auth.delegated = DelegatedAuth(
                        tenant_id=d["tenant_id"],
                        client_id=d["client_id"],
                    )
            except KeyError as e:
                raise ConfigurationError(f"Missing auth setting in {path}: {e}") from e

        if "polling" in data:
            p = data["polling"]
            max_wait = p.get("max_wait_seconds", DEFAULT_MAX_WAIT_SECONDS)
            try:
                config.polling = PollingConfig(
                    interval_seconds=float(p.get("interval_seconds", DEFAULT_POLL_INTERVAL_SECONDS)),
                    max_wait_seconds=float(max_wait) if max_wait is not None else None,
                )
            except (TypeError, ValueError) as e:
                raise ConfigurationError(f"Invalid polling setting in {path}: {e}") from e
        if "output" in data:
            for k, v in data["output"].items():
                if hasattr(config.output, k):
                    setattr(config.output, k, v)
        config.verbose = data.get("verbose", False)
        return config


# ─── Required Graph API Permissions (Read-Only) ─────────────────────────────

REQUIRED_PERMISSIONS = {
    "AuditLogsQuery.Read.All": "Create and read unified audit log queries",
    "IdentityRiskyUser.Read.All": "Read risky user signals",
    "IdentityRiskEvent.Read.All": "Read risk detections",
}
