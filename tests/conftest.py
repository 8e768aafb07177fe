# tests/conftest.py
from __future__ import annotations

import asyncio
import inspect
from typing import Callable, Union

import httpx
import pytest

from m365_audit_export.graph.client import GraphClient
from m365_audit_export.safety.guardian import RequestGuardian

GRAPH = "https://graph.microsoft.com"

Responder = Union[httpx.Response, Callable[[httpx.Request], httpx.Response]]


@pytest.hookimpl(tryfirst=True)
def pytest_pyfunc_call(pyfuncitem: pytest.Function) -> bool | None:
    """Minimal asyncio support without requiring pytest-asyncio."""
    test_func = pyfuncitem.obj
    if inspect.iscoroutinefunction(test_func):
        call_kwargs = {
            name: pyfuncitem.funcargs[name] for name in pyfuncitem._fixtureinfo.argnames
        }
        asyncio.run(test_func(**call_kwargs))
        return True
    return None


class FakeGraph:
    """
    In-memory stand-in for graph.microsoft.com.

    Responses are queued per (method, path). Each request takes the next
    queued response; the last one repeats once the queue is down to one.
    A queued callable receives the request and returns the response.
    """

    def __init__(self):
        self.routes: dict[tuple[str, str], list[Responder]] = {}
        self.requests: list[httpx.Request] = []

    def add(self, method: str, path: str, *responses: Responder) -> "FakeGraph":
        self.routes.setdefault((method, path), []).extend(responses)
        return self

    def json(self, method: str, path: str, *bodies: dict, status: int = 200) -> "FakeGraph":
        return self.add(method, path, *(httpx.Response(status, json=b) for b in bodies))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": {"code": "NotFound", "message": "no route"}})
        responder = queue.pop(0) if len(queue) > 1 else queue[0]
        return responder(request) if callable(responder) else responder

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    def client(self, **kwargs) -> GraphClient:
        kwargs.setdefault("initial_backoff", 0)
        return GraphClient(
            access_token="test-token",
            guardian=RequestGuardian(),
            transport=httpx.MockTransport(self.handler),
            **kwargs,
        )


@pytest.fixture()
def fake_graph() -> FakeGraph:
    return FakeGraph()


class PageRecorder:
    """Page writer that keeps everything in memory."""

    def __init__(self):
        self.pages: list[list] = []

    def write_page(self, records) -> int:
        records = list(records)
        self.pages.append(records)
        return len(records)

    @property
    def records(self) -> list:
        return [r for page in self.pages for r in page]


@pytest.fixture()
def recorder() -> PageRecorder:
    return PageRecorder()
