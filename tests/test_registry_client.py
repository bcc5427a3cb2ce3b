"""
Tests for the registry HTTP client retry policy, using httpx.MockTransport.
"""

import json

import httpx
import pytest

from healforge.config import DEFAULT_REGISTRY_URL
from healforge.errors import RateLimitedError, RegistryError, TransientNetworkError
from healforge.registry.client import REGISTRY_URL_ENV, RegistryClient
from healforge.registry.types import RegistryPattern


BASE_URL = "https://registry.test"


class Recorder:
    """Serves queued responses and remembers every request."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(response, Exception):
            raise response
        return response


def make_client(recorder, retries=3):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    client = RegistryClient(
        BASE_URL, retries=retries, backoff_base=0.5,
        transport=httpx.MockTransport(recorder), sleep=fake_sleep,
    )
    return client, sleeps


def push_ok(pushed=1):
    return httpx.Response(200, json={
        "status": "ok", "pushed": pushed, "skipped": 0,
        "rateLimit": {"remaining": 99, "resetAt": "2025-06-01T13:00:00Z"},
    })


PATTERN = RegistryPattern(
    id="00000000-0000-4000-8000-000000000001",
    type="fix",
    data={"name": "Unused import", "description": "Remove unused imports flagged by lint"},
    hash="abc",
)


# =============================================================================
# Base URL
# =============================================================================

def test_base_url_precedence(monkeypatch):
    """Argument beats environment, environment beats the default."""
    monkeypatch.delenv(REGISTRY_URL_ENV, raising=False)
    assert RegistryClient().base_url == DEFAULT_REGISTRY_URL

    monkeypatch.setenv(REGISTRY_URL_ENV, "https://env.example/")
    assert RegistryClient().base_url == "https://env.example"
    assert RegistryClient("https://arg.example").base_url == "https://arg.example"


# =============================================================================
# push / pull / get
# =============================================================================

@pytest.mark.asyncio
async def test_push_sends_contributor_header():
    recorder = Recorder(push_ok())
    client, _ = make_client(recorder)

    result = await client.push([PATTERN], "contributor-0001")

    assert result.pushed == 1
    assert result.rate_limit.remaining == 99
    request = recorder.requests[0]
    assert request.url.path == "/api/patterns/push"
    assert request.headers["X-Contributor-Id"] == "contributor-0001"
    body = json.loads(request.content)
    assert body["patterns"][0]["id"] == PATTERN.id
    assert body["patterns"][0]["hash"] == "abc"


@pytest.mark.asyncio
async def test_pull_passes_filters():
    recorder = Recorder(httpx.Response(200, json={
        "patterns": [{**PATTERN.to_dict(), "createdAt": "2025-06-01T12:00:00Z"}],
        "pagination": {"offset": 0, "limit": 10, "total": 1, "hasMore": False},
    }))
    client, _ = make_client(recorder)

    result = await client.pull("fix", limit=10, since="2025-01-01T00:00:00Z")

    params = recorder.requests[0].url.params
    assert params["type"] == "fix"
    assert params["limit"] == "10"
    assert params["since"] == "2025-01-01T00:00:00Z"
    assert "offset" not in params
    assert result.patterns[0].created_at == "2025-06-01T12:00:00Z"
    assert result.pagination.total == 1


@pytest.mark.asyncio
async def test_get_pattern_missing_is_none():
    client, _ = make_client(Recorder(httpx.Response(404, json={"error": "Pattern not found"})))

    assert await client.get_pattern(PATTERN.id) is None


# =============================================================================
# Retry policy
# =============================================================================

@pytest.mark.asyncio
async def test_rate_limit_is_not_retried():
    """429 surfaces immediately with the server's reset time."""
    recorder = Recorder(httpx.Response(429, json={
        "error": "Rate limit exceeded",
        "message": "You can push up to 100 patterns per window",
        "resetAt": "2025-06-01T13:00:00Z",
        "remaining": 0,
    }))
    client, sleeps = make_client(recorder)

    with pytest.raises(RateLimitedError) as exc_info:
        await client.push([PATTERN], "contributor-0001")

    assert exc_info.value.reset_at == "2025-06-01T13:00:00Z"
    assert exc_info.value.remaining == 0
    assert len(recorder.requests) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    recorder = Recorder(httpx.Response(400, json={"error": "Invalid request body", "details": []}))
    client, sleeps = make_client(recorder)

    with pytest.raises(RegistryError) as exc_info:
        await client.push([PATTERN], "contributor-0001")

    assert exc_info.value.status_code == 400
    assert exc_info.value.body["error"] == "Invalid request body"
    assert len(recorder.requests) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_server_error_is_retried_with_backoff():
    recorder = Recorder(httpx.Response(503, json={"error": "down"}), httpx.Response(502), push_ok())
    client, sleeps = make_client(recorder)

    result = await client.push([PATTERN], "contributor-0001")

    assert result.pushed == 1
    assert len(recorder.requests) == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_transport_errors_exhaust_retries():
    recorder = Recorder(httpx.ConnectError("connection refused"))
    client, sleeps = make_client(recorder, retries=2)

    with pytest.raises(TransientNetworkError):
        await client.pull()

    assert len(recorder.requests) == 2
    assert sleeps == [1.0]


@pytest.mark.asyncio
async def test_timeout_is_transient():
    recorder = Recorder(httpx.ReadTimeout("slow"), push_ok())
    client, _ = make_client(recorder)

    result = await client.push([PATTERN], "contributor-0001")

    assert result.pushed == 1
    assert len(recorder.requests) == 2


@pytest.mark.asyncio
async def test_health_check():
    healthy, _ = make_client(Recorder(httpx.Response(200, json={"status": "ok"})))
    broken, _ = make_client(Recorder(httpx.Response(503, json={"status": "error"})), retries=1)

    assert await healthy.health_check() is True
    assert await broken.health_check() is False


@pytest.mark.asyncio
async def test_server_errors_exhaust_retries():
    """After the last attempt the final server error is raised."""
    recorder = Recorder(httpx.Response(503, json={"error": "down"}))
    client, sleeps = make_client(recorder, retries=3)

    with pytest.raises(RegistryError) as exc_info:
        await client.pull()

    assert exc_info.value.status_code == 503
    assert len(recorder.requests) == 3
    assert sleeps == [1.0, 2.0]
