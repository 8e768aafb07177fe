"""
Async Graph API client with pagination, throttling retry, and request guarding.
Issues one request at a time; result sets are streamed page by page.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Optional, TypeVar

import httpx

from ..config import (
    GRAPH_BASE_URL,
    GRAPH_API_VERSION,
    GRAPH_BETA_VERSION,
    MAX_RETRIES,
    INITIAL_BACKOFF_SECONDS,
    MAX_BACKOFF_SECONDS,
    BACKOFF_MULTIPLIER,
    MAX_PAGES_PER_ENDPOINT,
)
from ..models import ResultPage
from ..safety.guardian import RequestGuardian

logger = logging.getLogger("m365_audit_export.graph")

R = TypeVar("R")

RETRYABLE_STATUS = (429, 503, 504)


class GraphAPIError(Exception):
    """Raised when Graph API returns a non-recoverable error."""
    def __init__(self, status_code: int, message: str, url: str):
        self.status_code = status_code
        self.url = url
        super().__init__(f"Graph API Error {status_code} for {url}: {message}")


class PageLimitError(GraphAPIError):
    """Raised when the page cap is reached while a continuation link remains."""
    def __init__(self, max_pages: int, next_link: str):
        self.max_pages = max_pages
        super().__init__(0, f"stopped after {max_pages} pages with more results pending", next_link)


class GraphClient:
    """
    Async Microsoft Graph API client.
    Features:
      - Guarded requests (read-only apart from audit log query creation)
      - Lazy page iteration over @odata.nextLink, shared by every endpoint
      - Exponential backoff on 429/503/504 honouring Retry-After
      - v1.0 and beta endpoint support
    """

    def __init__(
        self,
        access_token: str,
        guardian: RequestGuardian,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        initial_backoff: float = INITIAL_BACKOFF_SECONDS,
        max_pages: int = MAX_PAGES_PER_ENDPOINT,
    ):
        self.access_token = access_token
        self.guardian = guardian
        self.initial_backoff = initial_backoff
        self.max_pages = max_pages
        self._transport = transport
        self._request_count = 0
        self._throttle_count = 0
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self):
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(60.0, connect=30.0),
            transport=self._transport,
            headers={
                "Authorization": f"Bearer {self.access_token}",
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )
        return self

    async def __aexit__(self, *args):
        if self._client:
            await self._client.aclose()
            self._client = None

    def _build_url(self, endpoint: str, beta: bool = False) -> str:
        """Build full Graph URL from relative endpoint."""
        if endpoint.startswith("http"):
            return endpoint
        version = GRAPH_BETA_VERSION if beta else GRAPH_API_VERSION
        endpoint = endpoint.lstrip("/")
        return f"{GRAPH_BASE_URL}/{version}/{endpoint}"

    async def get(
        self,
        endpoint: str,
        params: Optional[dict] = None,
        beta: bool = False,
    ) -> dict:
        """Execute a single GET request with retry/throttle handling."""
        url = self._build_url(endpoint, beta=beta)
        self.guardian.validate_request("GET", url)
        return await self._execute_with_retry("GET", url, params=params)

    async def post(
        self,
        endpoint: str,
        json_body: dict,
        beta: bool = False,
    ) -> dict:
        """Execute a single POST request with retry/throttle handling."""
        url = self._build_url(endpoint, beta=beta)
        self.guardian.validate_request("POST", url, json_body)
        return await self._execute_with_retry("POST", url, json_body=json_body)

    async def iter_pages(
        self,
        endpoint: str,
        decode: Callable[[dict], R],
        params: Optional[dict] = None,
        beta: bool = False,
    ) -> AsyncIterator[ResultPage[R]]:
        """
        Yield decoded pages of a paginated endpoint, following @odata.nextLink
        until it is absent. Each call starts again from the first page.
        Raises PageLimitError if max_pages is reached while a link remains.
        """
        url: Optional[str] = self._build_url(endpoint, beta=beta)
        params = dict(params) if params else None
        pages = 0

        while url and pages < self.max_pages:
            self.guardian.validate_request("GET", url)
            data = await self._execute_with_retry("GET", url, params=params)

            next_link = data.get("@odata.nextLink")
            records = tuple(decode(item) for item in data.get("value", []))
            pages += 1
            logger.debug(f"Page {pages} of {endpoint}: {len(records)} records")
            yield ResultPage(records=records, next_link=next_link)

            # nextLink already carries the query string
            url = next_link
            params = None

        if url:
            raise PageLimitError(self.max_pages, url)

    async def _execute_with_retry(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> dict:
        """Execute request with exponential backoff on throttling."""
        backoff = self.initial_backoff

        for attempt in range(MAX_RETRIES + 1):
            try:
                response = await self._execute_raw(
                    method, url, params=params, json_body=json_body
                )
                self._request_count += 1

                if response.status_code in (200, 201, 202):
                    if not response.content or not response.content.strip():
                        return {}
                    try:
                        return response.json()
                    except ValueError:
                        raise GraphAPIError(
                            response.status_code, "Response body is not JSON", url
                        )

                if response.status_code == 204:
                    return {}

                if response.status_code in RETRYABLE_STATUS and attempt < MAX_RETRIES:
                    self._throttle_count += 1
                    wait_time = max(_retry_after(response, backoff), backoff)
                    logger.warning(
                        f"Throttled ({response.status_code}) on {url}. "
                        f"Retry {attempt + 1}/{MAX_RETRIES} in {wait_time:.1f}s"
                    )
                    await asyncio.sleep(wait_time)
                    backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)
                    continue

                raise GraphAPIError(response.status_code, _error_message(response), url)

            except httpx.TimeoutException:
                logger.warning(f"Timeout on {url}, attempt {attempt + 1}/{MAX_RETRIES}")
                if attempt == MAX_RETRIES:
                    raise
                await asyncio.sleep(backoff)
                backoff = min(backoff * BACKOFF_MULTIPLIER, MAX_BACKOFF_SECONDS)

        raise GraphAPIError(0, "Maximum retries exceeded", url)

    async def _execute_raw(
        self,
        method: str,
        url: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> httpx.Response:
        """Execute raw HTTP request."""
        if not self._client:
            raise RuntimeError("GraphClient not initialized. Use 'async with' context.")

        if method == "GET":
            return await self._client.get(url, params=params)
        elif method == "POST":
            return await self._client.post(url, json=json_body, params=params)
        raise ValueError(f"Unsupported method: {method}")

    def get_stats(self) -> dict:
        """Return client statistics."""
        return {
            "total_requests": self._request_count,
            "throttle_events": self._throttle_count,
        }


def _retry_after(response: httpx.Response, default: float) -> float:
    try:
        return float(response.headers.get("Retry-After", default))
    except ValueError:
        return default


def _error_message(response: httpx.Response) -> str:
    """Pull error.message out of a Graph error body, falling back to raw text."""
    try:
        body: Any = response.json() if response.content else {}
    except ValueError:
        return response.text[:200]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
    return response.text[:200] or response.reason_phrase
