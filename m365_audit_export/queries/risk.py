"""
Identity Protection queries: risky users and risk detections.

Listings page through the whole tenant. When user ids are given, each user is
looked up on its own and a failure for one user is recorded on the
ExportResult without stopping the others.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional
from urllib.parse import quote

import httpx

from ..config import DEFAULT_PAGE_SIZE, RISK_DETECTIONS_ENDPOINT, RISKY_USERS_ENDPOINT
from ..graph.client import GraphAPIError, GraphClient
from ..models import RiskDetection, RiskyUser, format_graph_datetime
from .base import ExportResult

logger = logging.getLogger("m365_audit_export.queries.risk")

# Errors isolated to a single user during per-user enumeration
PER_USER_ERRORS = (GraphAPIError, httpx.HTTPError)


def odata_literal(value: str) -> str:
    """Quote a string for an OData $filter, doubling embedded single quotes."""
    return "'" + value.replace("'", "''") + "'"


def any_of(field_name: str, values: Optional[Iterable[str]]) -> str:
    """Build "(f eq 'a' or f eq 'b')" or an empty string when no values."""
    values = [v for v in (values or []) if v]
    if not values:
        return ""
    clause = " or ".join(f"{field_name} eq {odata_literal(v)}" for v in values)
    return f"({clause})" if len(values) > 1 else clause


def build_filter(*clauses: str) -> str:
    return " and ".join(c for c in clauses if c)


class RiskQuery:
    """Exports risky users and risk detections through a page writer."""

    def __init__(self, graph: GraphClient):
        self.graph = graph

    # ── Risky users ─────────────────────────────────────────────────────────

    async def export_risky_users(
        self,
        writer,
        result: ExportResult,
        user_ids: Optional[list[str]] = None,
        risk_levels: Optional[list[str]] = None,
        risk_states: Optional[list[str]] = None,
    ) -> ExportResult:
        if user_ids:
            for user_id in user_ids:
                try:
                    data = await self.graph.get(f"{RISKY_USERS_ENDPOINT}/{quote(user_id, safe='')}")
                except PER_USER_ERRORS as e:
                    result.add_user_failure(user_id, str(e))
                    continue
                result.add_page(writer.write_page([RiskyUser.from_graph(data)]))
            return result

        params = {"$top": str(DEFAULT_PAGE_SIZE)}
        odata_filter = build_filter(
            any_of("riskLevel", risk_levels),
            any_of("riskState", risk_states),
        )
        if odata_filter:
            params["$filter"] = odata_filter

        async for page in self.graph.iter_pages(RISKY_USERS_ENDPOINT, RiskyUser.from_graph, params=params):
            result.add_page(writer.write_page(page.records))
        logger.info(f"Risky users exported: {result.records_written}")
        return result

    # ── Risk detections ─────────────────────────────────────────────────────

    async def export_risk_detections(
        self,
        writer,
        result: ExportResult,
        user_ids: Optional[list[str]] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        risk_levels: Optional[list[str]] = None,
    ) -> ExportResult:
        if start and end and start > end:
            raise ValueError("start is after end")

        base_clauses = [any_of("riskLevel", risk_levels)]
        if start:
            base_clauses.append(f"detectedDateTime ge {format_graph_datetime(start)}")
        if end:
            base_clauses.append(f"detectedDateTime le {format_graph_datetime(end)}")

        if not user_ids:
            await self._export_detection_pages(writer, result, build_filter(*base_clauses))
            logger.info(f"Risk detections exported: {result.records_written}")
            return result

        for user_id in user_ids:
            key = "userPrincipalName" if "@" in user_id else "userId"
            odata_filter = build_filter(f"{key} eq {odata_literal(user_id)}", *base_clauses)
            # a user's rows are written only once all of their pages arrived
            try:
                pages = [page async for page in self._detection_pages(odata_filter)]
            except PER_USER_ERRORS as e:
                result.add_user_failure(user_id, str(e))
                continue
            for page in pages:
                result.add_page(writer.write_page(page.records))
        return result

    async def _export_detection_pages(self, writer, result: ExportResult, odata_filter: str):
        async for page in self._detection_pages(odata_filter):
            result.add_page(writer.write_page(page.records))

    def _detection_pages(self, odata_filter: str):
        params = {"$top": str(DEFAULT_PAGE_SIZE)}
        if odata_filter:
            params["$filter"] = odata_filter
        return self.graph.iter_pages(RISK_DETECTIONS_ENDPOINT, RiskDetection.from_graph, params=params)
