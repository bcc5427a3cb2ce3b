"""
Registry Client
===============

HTTP client for pushing patterns to and pulling patterns from the community
pattern registry.

Retry policy:
- transport errors, timeouts and 5xx responses are retried up to `retries`
  attempts with exponential backoff (backoff_base * 2**attempt seconds)
- 429 raises RateLimitedError immediately
- any other 4xx raises RegistryError immediately

Usage:
    client = RegistryClient()
    try:
        result = await client.push(patterns, contributor_id)
    except RateLimitedError as e:
        print(f"Try again in {e.time_until_reset()}")
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import httpx

from healforge.config import DEFAULT_REGISTRY_URL, RegistryConfig
from healforge.errors import RateLimitedError, RegistryError, TransientNetworkError
from healforge.registry.types import PullResponse, PushResponse, RegistryPattern

logger = logging.getLogger(__name__)

REGISTRY_URL_ENV = "HEALFORGE_REGISTRY_URL"


def _json_body(response: httpx.Response) -> dict:
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


class RegistryClient:
    """Handles HTTP communication with the pattern registry API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        retries: int = 3,
        backoff_base: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        # argument > env var > default
        url = base_url or os.environ.get(REGISTRY_URL_ENV) or DEFAULT_REGISTRY_URL
        self.base_url = url.rstrip("/")
        self.timeout = timeout
        self.retries = max(1, retries)
        self.backoff_base = backoff_base
        self._transport = transport
        self._sleep = sleep

    @classmethod
    def from_config(cls, config: RegistryConfig) -> "RegistryClient":
        return cls(base_url=config.url, timeout=config.timeout, retries=config.retries)

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        async with httpx.AsyncClient(
            base_url=self.base_url,
            headers={"User-Agent": "HealForge/0.1"},
            timeout=self.timeout,
            transport=self._transport,
        ) as client:
            yield client

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        last_error: Exception
        for attempt in range(1, self.retries + 1):
            try:
                async with self._client() as client:
                    response = await client.request(method, path, **kwargs)
            except httpx.TimeoutException as e:
                last_error = TransientNetworkError(f"Registry request timed out after {self.timeout:.0f}s")
                last_error.__cause__ = e
            except httpx.TransportError as e:
                last_error = TransientNetworkError(f"Registry request failed: {e}")
                last_error.__cause__ = e
            else:
                if response.status_code == 429:
                    body = _json_body(response)
                    raise RateLimitedError(
                        body.get("message") or "Rate limit exceeded",
                        body.get("resetAt"),
                        body.get("remaining", 0),
                    )
                if response.status_code >= 400:
                    body = _json_body(response)
                    error = RegistryError(
                        body.get("error") or f"Request failed with status {response.status_code}",
                        response.status_code,
                        body,
                    )
                    if response.status_code < 500:
                        raise error
                    last_error = error
                else:
                    return response.json()

            if attempt >= self.retries:
                raise last_error

            delay = self.backoff_base * 2 ** attempt
            logger.warning(
                "Registry %s %s failed (attempt %d/%d): %s; retrying in %.1fs",
                method, path, attempt, self.retries, last_error, delay,
            )
            await self._sleep(delay)

    async def push(self, patterns: list[RegistryPattern], contributor_id: str) -> PushResponse:
        """Push anonymized patterns; returns pushed/skipped counts and the rate-limit state."""
        payload = {
            "patterns": [
                {"id": p.id, "type": p.type, "data": p.data, **({"hash": p.hash} if p.hash else {})}
                for p in patterns
            ]
        }
        body = await self._request(
            "POST", "/api/patterns/push",
            json=payload,
            headers={"X-Contributor-Id": contributor_id},
        )
        return PushResponse.from_dict(body)

    async def pull(
        self,
        pattern_type: Optional[str] = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        since: Optional[str] = None,
    ) -> PullResponse:
        params: dict[str, Any] = {}
        if pattern_type:
            params["type"] = pattern_type
        if limit:
            params["limit"] = limit
        if offset:
            params["offset"] = offset
        if since:
            params["since"] = since
        body = await self._request("GET", "/api/patterns/pull", params=params)
        return PullResponse.from_dict(body)

    async def get_pattern(self, pattern_id: str) -> Optional[RegistryPattern]:
        """A single pattern, or None when the registry does not have it."""
        try:
            body = await self._request("GET", f"/api/patterns/{pattern_id}")
        except RegistryError as e:
            if e.status_code == 404:
                return None
            raise
        return RegistryPattern.from_dict(body)

    async def health_check(self) -> bool:
        try:
            await self._request("GET", "/api/health")
        except (TransientNetworkError, RegistryError, RateLimitedError) as e:
            logger.info("Registry health check failed: %s", e)
            return False
        return True
