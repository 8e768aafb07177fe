from __future__ import annotations

import httpx
import pytest

from m365_audit_export.graph.client import GraphAPIError, PageLimitError
from m365_audit_export.safety.guardian import RequestGuardian, SafetyViolation

USERS = "/v1.0/identityProtection/riskyUsers"
NEXT = "https://graph.microsoft.com/v1.0/identityProtection/riskyUsers?$skiptoken=page2"


async def test_iter_pages_follows_next_link(fake_graph):
    fake_graph.json(
        "GET", USERS,
        {"value": [{"id": "a"}, {"id": "b"}], "@odata.nextLink": NEXT},
        {"value": [{"id": "c"}]},
    )
    async with fake_graph.client() as client:
        pages = [p async for p in client.iter_pages("identityProtection/riskyUsers", dict,
                                                    params={"$top": "2"})]

    assert [len(p) for p in pages] == [2, 1]
    assert pages[0].next_link == NEXT
    assert pages[-1].next_link is None
    assert [r["id"] for p in pages for r in p.records] == ["a", "b", "c"]

    first, second = fake_graph.calls("GET", USERS)
    assert first.url.params["$top"] == "2"
    # second request uses the nextLink verbatim, without re-sending params
    assert "$top" not in second.url.params
    assert second.url.params["$skiptoken"] == "page2"


async def test_iter_pages_empty_result(fake_graph):
    fake_graph.json("GET", USERS, {"value": []})
    async with fake_graph.client() as client:
        pages = [p async for p in client.iter_pages("identityProtection/riskyUsers", dict)]
    assert sum(len(p) for p in pages) == 0


async def test_iter_pages_restarts_from_first_page(fake_graph):
    fake_graph.json("GET", USERS, {"value": [{"id": "a"}]})
    async with fake_graph.client() as client:
        for _ in range(2):
            pages = [p async for p in client.iter_pages("identityProtection/riskyUsers", dict)]
            assert [r["id"] for p in pages for r in p.records] == ["a"]
    assert len(fake_graph.calls("GET", USERS)) == 2


async def test_iter_pages_raises_when_page_cap_cuts_off_results(fake_graph):
    fake_graph.json("GET", USERS, {"value": [{"id": "x"}], "@odata.nextLink": NEXT})
    pages = []
    async with fake_graph.client(max_pages=2) as client:
        with pytest.raises(PageLimitError) as exc:
            async for page in client.iter_pages("identityProtection/riskyUsers", dict):
                pages.append(page)
    assert len(pages) == 2
    assert exc.value.max_pages == 2
    assert exc.value.url == NEXT


async def test_iter_pages_at_page_cap_without_next_link_is_complete(fake_graph):
    fake_graph.json(
        "GET", USERS,
        {"value": [{"id": "a"}], "@odata.nextLink": NEXT},
        {"value": [{"id": "b"}]},
    )
    async with fake_graph.client(max_pages=2) as client:
        pages = [p async for p in client.iter_pages("identityProtection/riskyUsers", dict)]
    assert [r["id"] for p in pages for r in p.records] == ["a", "b"]


async def test_throttled_request_is_retried(fake_graph):
    fake_graph.add(
        "GET", USERS,
        httpx.Response(429, headers={"Retry-After": "0"}),
        httpx.Response(200, json={"value": [{"id": "a"}]}),
    )
    async with fake_graph.client() as client:
        data = await client.get("identityProtection/riskyUsers")
        stats = client.get_stats()
    assert data["value"] == [{"id": "a"}]
    assert stats == {"total_requests": 2, "throttle_events": 1}


async def test_error_status_raises_with_graph_message(fake_graph):
    fake_graph.json(
        "GET", USERS,
        {"error": {"code": "Forbidden", "message": "Missing IdentityRiskyUser.Read.All"}},
        status=403,
    )
    async with fake_graph.client() as client:
        with pytest.raises(GraphAPIError) as exc:
            await client.get("identityProtection/riskyUsers")
    assert exc.value.status_code == 403
    assert "IdentityRiskyUser.Read.All" in str(exc.value)


async def test_requests_carry_bearer_token(fake_graph):
    fake_graph.json("GET", USERS, {"value": []})
    async with fake_graph.client() as client:
        await client.get("identityProtection/riskyUsers")
    assert fake_graph.requests[0].headers["Authorization"] == "Bearer test-token"


async def test_write_outside_allow_list_is_blocked(fake_graph):
    async with fake_graph.client() as client:
        with pytest.raises(SafetyViolation):
            await client.post("identityProtection/riskyUsers/dismiss", {"userIds": ["a"]})
    assert fake_graph.requests == []


def test_guardian_allows_audit_query_creation():
    guardian = RequestGuardian()
    assert guardian.validate_request(
        "POST", "https://graph.microsoft.com/beta/security/auditLog/queries"
    )
    assert guardian.validate_request(
        "GET", "https://graph.microsoft.com/beta/security/auditLog/queries/abc/records"
    )


def test_guardian_blocks_and_logs_writes(caplog):
    guardian = RequestGuardian()
    with pytest.raises(SafetyViolation):
        guardian.validate_request("DELETE", "https://graph.microsoft.com/v1.0/users/a")
    with pytest.raises(SafetyViolation):
        guardian.validate_request(
            "POST", "https://graph.microsoft.com/beta/security/auditLog/queries/abc/cancel"
        )
    blocked = [r.getMessage() for r in caplog.records if r.name == "m365_audit_export.safety"]
    assert len(blocked) == 2
    assert blocked[0].startswith("Blocked write request: DELETE")


async def test_client_requires_context_manager(fake_graph):
    client = fake_graph.client()
    with pytest.raises(RuntimeError):
        await client.get("identityProtection/riskyUsers")
