"""
Unified Audit Log search via the Graph audit log query API.

Three steps:
  1. POST   /beta/security/auditLog/queries               (submit)
  2. GET    /beta/security/auditLog/queries/{id}          (poll until succeeded)
  3. GET    /beta/security/auditLog/queries/{id}/records  (page through results)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import AsyncIterator, Awaitable, Callable, Optional

from ..config import (
    AUDIT_LOG_QUERIES_ENDPOINT,
    DEFAULT_MAX_WAIT_SECONDS,
    DEFAULT_POLL_INTERVAL_SECONDS,
)
from ..graph.client import GraphAPIError, GraphClient
from ..models import AuditLogRecord, QueryJob, QueryRequest, QueryStatus, ResultPage
from .base import ExportResult

logger = logging.getLogger("m365_audit_export.queries.audit_log")


class AuditQueryError(Exception):
    """Base class for audit log query failures."""
    pass


class SubmissionError(AuditQueryError):
    """The service refused to create the query."""
    pass


class QueryFailedError(AuditQueryError):
    """The query reached a terminal status other than succeeded."""
    def __init__(self, job_id: str, status: QueryStatus, raw_status: Optional[str] = None):
        self.job_id = job_id
        self.status = status
        shown = raw_status if raw_status is not None else status.value
        super().__init__(f"Audit log query {job_id} ended with status '{shown}'")


class QueryTimeoutError(AuditQueryError):
    """The query did not finish within the allowed wait."""
    def __init__(self, job_id: str, waited: float, status: QueryStatus):
        self.job_id = job_id
        self.waited = waited
        self.status = status
        super().__init__(
            f"Audit log query {job_id} still '{status.value}' after {waited:.0f}s"
        )


class AuditLogSearch:
    """Submits an audit log query, waits for it, and streams its records."""

    def __init__(
        self,
        graph: GraphClient,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.graph = graph
        self._clock = clock
        self._sleep = sleep

    async def submit(self, request: QueryRequest) -> QueryJob:
        """Create the query. Raises SubmissionError if the service rejects it."""
        logger.info(f"Submitting audit log query '{request.search_name}'")
        try:
            data = await self.graph.post(
                AUDIT_LOG_QUERIES_ENDPOINT, request.to_graph_body(), beta=True
            )
        except GraphAPIError as e:
            raise SubmissionError(f"Audit log query '{request.search_name}' rejected: {e}") from e

        job_id = data.get("id")
        if not job_id:
            raise SubmissionError(
                f"Audit log query '{request.search_name}' created without an id"
            )
        job = QueryJob(id=job_id, request=request, status=QueryStatus.parse(data.get("status")))
        logger.info(f"Audit log query created: {job.id} ({job.status.value})")
        return job

    async def fetch_status(self, job: QueryJob) -> tuple[QueryStatus, Optional[str]]:
        data = await self.graph.get(f"{AUDIT_LOG_QUERIES_ENDPOINT}/{job.id}", beta=True)
        raw = data.get("status")
        return QueryStatus.parse(raw), raw

    async def wait_for_completion(
        self,
        job: QueryJob,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_wait: Optional[float] = DEFAULT_MAX_WAIT_SECONDS,
    ) -> QueryStatus:
        """
        Poll until the query succeeds.

        Waits while the query is notStarted, then while it is running, logging
        only when the status changes. Raises QueryFailedError on failed,
        cancelled or unrecognised statuses, and QueryTimeoutError once
        ``max_wait`` seconds pass (None waits indefinitely).
        """
        started = self._clock()
        last_status: Optional[QueryStatus] = None

        while True:
            status, raw = await self.fetch_status(job)
            job.status = status

            if status != last_status:
                logger.info(f"Audit log query {job.id}: {status.value}")
                last_status = status

            if status == QueryStatus.SUCCEEDED:
                return status
            if not status.pending:
                raise QueryFailedError(job.id, status, raw)

            delay = poll_interval
            if max_wait is not None:
                waited = self._clock() - started
                if waited >= max_wait:
                    raise QueryTimeoutError(job.id, waited, status)
                delay = min(poll_interval, max_wait - waited)

            await self._sleep(delay)

    def fetch_pages(self, job: QueryJob) -> AsyncIterator[ResultPage[AuditLogRecord]]:
        """Lazily page through the query's records, starting from page one."""
        return self.graph.iter_pages(
            f"{AUDIT_LOG_QUERIES_ENDPOINT}/{job.id}/records",
            AuditLogRecord.from_graph,
            beta=True,
        )

    async def run(
        self,
        request: QueryRequest,
        writer,
        result: ExportResult,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_wait: Optional[float] = DEFAULT_MAX_WAIT_SECONDS,
    ) -> QueryJob:
        """Submit, wait, and stream every page into ``writer``."""
        job = await self.submit(request)
        await self.wait_for_completion(job, poll_interval=poll_interval, max_wait=max_wait)
        await self.export_records(job, writer, result)
        return job

    async def export_records(self, job: QueryJob, writer, result: ExportResult) -> ExportResult:
        """Stream the records of a succeeded query into ``writer``."""
        async for page in self.fetch_pages(job):
            written = writer.write_page(page.records)
            result.add_page(written)
        logger.info(
            f"Audit log query {job.id}: {result.records_written} records "
            f"in {result.pages_fetched} pages"
        )
        return result
