"""
M365 Audit & Risk Export: command line entry point.

Usage:
    python -m m365_audit_export audit-log --search-name "Mailbox access" --start 2024-05-01
    python -m m365_audit_export audit-log --search-name Test --operation MailItemsAccessed --user a@contoso.com
    python -m m365_audit_export risky-users --risk-level high medium
    python -m m365_audit_export risky-users --user-id <objectId> --user-id <objectId>
    python -m m365_audit_export risky-detections --start 2024-05-01 --user-id a@contoso.com

Profile management:
    python -m m365_audit_export profile add <name> --tenant-id ... --client-id ...
    python -m m365_audit_export profile list
    python -m m365_audit_export profile remove <name>
    python -m m365_audit_export profile set-default <name>
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import httpx

from .config import (
    CertificateAuth,
    ConfigurationError,
    DelegatedAuth,
    ExportConfig,
    PollingConfig,
    REQUIRED_PERMISSIONS,
    SecretAuth,
)
from .auth.authenticator import AuthenticationError, Authenticator
from .graph.client import GraphAPIError, GraphClient, PageLimitError
from .models import QueryRequest, RiskDetection, RiskyUser
from .profiles import ProfileStore, TenantProfile
from .queries import AuditLogSearch, AuditQueryError, ExportResult, RiskQuery
from .reporting import CsvRecordWriter, JsonArrayWriter, print_summary
from .safety.guardian import RequestGuardian, SafetyViolation

logger = logging.getLogger("m365_audit_export")

AUTH_MODES = ["certificate", "secret", "delegated", "token"]


# ---------------------------------------------------------------------------
# Profile management sub-commands
# ---------------------------------------------------------------------------

def _cmd_profile(args: argparse.Namespace) -> int:
    store = ProfileStore.load()
    action = args.profile_action

    if action == "list":
        profiles = store.list_profiles()
        if not profiles:
            print("No profiles configured. Add one with:\n")
            print("  python -m m365_audit_export profile add <name> --tenant-id <GUID> --client-id <GUID>")
            return 0
        print(f"\n  {'Name':<20s} {'Tenant ID':<38s} {'Client ID':<38s} {'Auth':<12s} {'Default'}")
        print(f"  {'─'*20} {'─'*38} {'─'*38} {'─'*12} {'─'*7}")
        for p in profiles:
            marker = "  ✓" if p.name == store.default_profile else ""
            print(f"  {p.name:<20s} {p.tenant_id:<38s} {p.client_id:<38s} {p.auth_mode:<12s}{marker}")
        print()
        return 0

    if action == "add":
        if store.get(args.profile_name):
            print(f"  Profile '{args.profile_name}' already exists. It will be overwritten.")
        store.add(
            TenantProfile(
                name=args.profile_name,
                tenant_id=args.tenant_id,
                client_id=args.client_id,
                auth_mode=args.auth_mode or "certificate",
                cert_path=str(args.cert_path) if args.cert_path else "./base64.txt",
                output_dir=str(args.output_dir) if args.output_dir else "",
                notes=args.notes or "",
            ),
            set_default=args.set_default,
        )
        print(f"  ✅ Profile '{args.profile_name}' saved.")
        return 0

    if action == "remove":
        if store.remove(args.profile_name):
            print(f"  ✅ Profile '{args.profile_name}' removed.")
            return 0
        print(f"  ❌ Profile '{args.profile_name}' not found.")
        return 1

    if action == "set-default":
        if store.set_default(args.profile_name):
            print(f"  ✅ Default profile set to '{args.profile_name}'.")
            return 0
        print(f"  ❌ Profile '{args.profile_name}' not found.")
        return 1

    print("Usage: python -m m365_audit_export profile {add|list|remove|set-default}")
    return 0


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------

def _iso_datetime(value: str) -> datetime:
    """argparse type: ISO 8601 date or datetime, naive values treated as UTC."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO 8601 date/time: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _connection_options() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--profile", "-p", help="Tenant profile name (see 'profile list')")
    common.add_argument("--config", "-c", type=Path, help="Path to JSON configuration file")
    common.add_argument("--tenant-id", help="Tenant ID (overrides profile)")
    common.add_argument("--client-id", help="App registration client ID (overrides profile)")
    common.add_argument("--cert-path", type=Path, help="Path to base64-encoded PFX (overrides profile)")
    common.add_argument("--auth-mode", choices=AUTH_MODES, help="Authentication mode")
    common.add_argument("--output-dir", "-o", type=Path, help="Directory for exported files")
    common.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return common


def _permissions_epilog() -> str:
    lines = ["Required Graph application permissions:"]
    lines += [f"  {name:<30} {why}" for name, why in REQUIRED_PERMISSIONS.items()]
    return "\n".join(lines)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="m365_audit_export",
        description="Export Unified Audit Log searches, risky users and risk detections from Microsoft Graph",
        epilog=_permissions_epilog(),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    subparsers = parser.add_subparsers(dest="command")
    common = _connection_options()

    audit = subparsers.add_parser("audit-log", parents=[common], help="Search the Unified Audit Log")
    audit.add_argument("--search-name", required=True, help="Display name of the search (used in the file name)")
    audit.add_argument("--start", type=_iso_datetime, help="Start of the time range (default: 90 days ago)")
    audit.add_argument("--end", type=_iso_datetime, help="End of the time range (default: now)")
    audit.add_argument("--keyword", default="", help="Free-text keyword filter")
    audit.add_argument("--service", default="", help="Workload filter (e.g. Exchange, SharePoint)")
    audit.add_argument("--record-type", action="append", default=[], dest="record_types")
    audit.add_argument("--operation", action="append", default=[], dest="operations")
    audit.add_argument("--user", action="append", default=[], dest="user_principal_names",
                       help="User principal name filter (repeatable)")
    audit.add_argument("--ip", action="append", default=[], dest="ip_addresses")
    audit.add_argument("--object-id", action="append", default=[], dest="object_ids")
    audit.add_argument("--admin-unit", action="append", default=[], dest="administrative_unit_ids")
    audit.add_argument("--poll-interval", type=float, help="Seconds between status checks")
    audit.add_argument("--max-wait", type=float, help="Give up after this many seconds")

    users = subparsers.add_parser("risky-users", parents=[common], help="Export risky users to CSV")
    users.add_argument("--user-id", action="append", default=[], dest="user_ids",
                       help="Look up a single user by object id (repeatable)")
    users.add_argument("--risk-level", nargs="+", default=[], dest="risk_levels")
    users.add_argument("--risk-state", nargs="+", default=[], dest="risk_states")

    detections = subparsers.add_parser("risky-detections", parents=[common], help="Export risk detections to CSV")
    detections.add_argument("--user-id", action="append", default=[], dest="user_ids",
                            help="User object id or UPN (repeatable)")
    detections.add_argument("--start", type=_iso_datetime, help="Earliest detectedDateTime")
    detections.add_argument("--end", type=_iso_datetime, help="Latest detectedDateTime")
    detections.add_argument("--risk-level", nargs="+", default=[], dest="risk_levels")

    prof = subparsers.add_parser("profile", help="Manage tenant profiles")
    prof_sub = prof.add_subparsers(dest="profile_action")
    add_p = prof_sub.add_parser("add", help="Add or update a tenant profile")
    add_p.add_argument("profile_name")
    add_p.add_argument("--tenant-id", required=True)
    add_p.add_argument("--client-id", required=True)
    add_p.add_argument("--auth-mode", choices=AUTH_MODES[:3])
    add_p.add_argument("--cert-path", type=Path)
    add_p.add_argument("--output-dir", type=Path)
    add_p.add_argument("--notes")
    add_p.add_argument("--set-default", action="store_true")
    prof_sub.add_parser("list", help="List configured profiles")
    rm_p = prof_sub.add_parser("remove", help="Remove a profile")
    rm_p.add_argument("profile_name")
    sd_p = prof_sub.add_parser("set-default", help="Set the default profile")
    sd_p.add_argument("profile_name")

    return parser


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

def build_config(args: argparse.Namespace, store: Optional[ProfileStore] = None) -> ExportConfig:
    """Merge defaults, config file, profile and CLI flags (later wins)."""
    config = ExportConfig.from_file(args.config) if args.config else ExportConfig()

    profile = None
    if args.profile:
        store = store or ProfileStore.load()
        profile = store.get(args.profile)
        if not profile:
            raise ConfigurationError(f"Profile '{args.profile}' not found.")
    elif not args.config and not args.tenant_id:
        store = store or ProfileStore.load()
        profile = store.get_default()

    auth = config.auth
    if profile:
        auth.mode = profile.auth_mode
        if profile.output_dir:
            config.output.base_dir = profile.output_dir
    if args.auth_mode:
        auth.mode = args.auth_mode

    tenant_id = args.tenant_id or (profile.tenant_id if profile else None)
    client_id = args.client_id or (profile.client_id if profile else None)
    if tenant_id and client_id:
        if auth.mode == "certificate":
            cert_path = str(args.cert_path) if args.cert_path else (
                profile.resolve_cert_path() if profile else "./base64.txt"
            )
            auth.certificate = CertificateAuth(tenant_id, client_id, cert_path)
        elif auth.mode == "secret":
            auth.secret = SecretAuth(tenant_id, client_id)
        elif auth.mode == "delegated":
            auth.delegated = DelegatedAuth(tenant_id, client_id)
    elif auth.mode != "token" and not (auth.certificate or auth.secret or auth.delegated):
        raise ConfigurationError(
            "No tenant credentials found. Use --profile, --tenant-id/--client-id, "
            "--config, or --auth-mode token with M365_ACCESS_TOKEN."
        )

    if args.output_dir:
        config.output.base_dir = str(args.output_dir)
    if getattr(args, "poll_interval", None) is not None or getattr(args, "max_wait", None) is not None:
        config.polling = PollingConfig(
            interval_seconds=args.poll_interval if args.poll_interval is not None
            else config.polling.interval_seconds,
            max_wait_seconds=args.max_wait if args.max_wait is not None
            else config.polling.max_wait_seconds,
        )
    config.verbose = args.verbose or config.verbose
    return config


def build_request(args: argparse.Namespace) -> QueryRequest:
    return QueryRequest(
        search_name=args.search_name,
        start=args.start,
        end=args.end,
        keyword=args.keyword,
        service=args.service,
        record_types=tuple(args.record_types),
        operations=tuple(args.operations),
        user_principal_names=tuple(args.user_principal_names),
        ip_addresses=tuple(args.ip_addresses),
        object_ids=tuple(args.object_ids),
        administrative_unit_ids=tuple(args.administrative_unit_ids),
    )


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)


# ---------------------------------------------------------------------------
# Export runs
# ---------------------------------------------------------------------------

async def _record_truncation(result: ExportResult, export) -> None:
    """Await an export, recording a page-cap cut-off as a run error."""
    try:
        await export
    except PageLimitError as e:
        result.add_error(f"Output is incomplete: {e}")


async def run_export(
    args: argparse.Namespace,
    config: ExportConfig,
    token: str,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> ExportResult:
    """Run the selected export against Graph and write its output file."""
    guardian = RequestGuardian()
    output = config.output

    async with GraphClient(access_token=token, guardian=guardian, transport=transport) as client:
        if args.command == "audit-log":
            request = build_request(args)
            path = output.audit_log_path(request.search_name)
            result = ExportResult(f"audit-log:{request.search_name}", path)
            search = AuditLogSearch(client)
            job = await search.submit(request)
            await search.wait_for_completion(
                job,
                poll_interval=config.polling.interval_seconds,
                max_wait=config.polling.max_wait_seconds,
            )
            # the file is only created once the query has succeeded
            with JsonArrayWriter(path) as writer:
                await _record_truncation(result, search.export_records(job, writer, result))

        elif args.command == "risky-users":
            path = output.risky_users_path()
            result = ExportResult("risky-users", path)
            with CsvRecordWriter(path, RiskyUser.fieldnames()) as writer:
                await _record_truncation(result, RiskQuery(client).export_risky_users(
                    writer,
                    result,
                    user_ids=args.user_ids,
                    risk_levels=args.risk_levels,
                    risk_states=args.risk_states,
                ))

        elif args.command == "risky-detections":
            path = output.risk_detections_path()
            result = ExportResult("risky-detections", path)
            with CsvRecordWriter(path, RiskDetection.fieldnames()) as writer:
                await _record_truncation(result, RiskQuery(client).export_risk_detections(
                    writer,
                    result,
                    user_ids=args.user_ids,
                    start=args.start,
                    end=args.end,
                    risk_levels=args.risk_levels,
                ))
        else:
            raise ConfigurationError(f"Unknown command: {args.command}")

        result.stats = client.get_stats()

    result.complete()
    return result


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0
    if args.command == "profile":
        return _cmd_profile(args)

    run_started = time.time()
    configure_logging(args.verbose)

    try:
        config = build_config(args)
        if args.command == "audit-log":
            build_request(args)  # reject bad time ranges before touching the network
        output_dir = config.output.prepare()
        print(f"📂 Output:  {output_dir.resolve()}")

        print("🔐 Authenticating...")
        token = Authenticator(config.auth).acquire_token()

        result = asyncio.run(run_export(args, config, token))
    except KeyboardInterrupt:
        print("\n  Interrupted.")
        return 130
    except (ConfigurationError, ValueError) as e:
        print(f"❌ Configuration error: {e}")
        return 1
    except AuthenticationError as e:
        print(f"❌ Authentication failed: {e}")
        return 1
    except (AuditQueryError, GraphAPIError, SafetyViolation, httpx.HTTPError) as e:
        logger.debug("Export failed", exc_info=True)
        print(f"❌ Export failed: {e}")
        return 1

    print_summary(result, run_started, result.stats)
    # per-user failures are reported but do not fail the run
    return 1 if result.errors else 0


if __name__ == "__main__":
    sys.exit(main())
