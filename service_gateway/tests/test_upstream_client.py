"""
Unit tests for the upstream HTTP client.
"""

import httpx
import pytest
from unittest.mock import AsyncMock

from service_gateway.app.adapters.upstream_client import UpstreamClient
from shared.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from shared.errors import CircuitOpenError, ExternalServiceError
from shared.resilience import ResilientCaller
from shared.retry import RetryError, RetryExecutor, RetryPolicy


def make_client(handler, clock, max_attempts=2):
    breaker = CircuitBreaker("database", CircuitBreakerConfig(failure_threshold=2, cooldown_ms=1000), clock=clock)
    caller = ResilientCaller(
        breaker,
        retry_policy=RetryPolicy(max_attempts=max_attempts, base_delay_ms=100, jitter=False),
        executor=RetryExecutor(sleep=AsyncMock()),
    )
    return UpstreamClient("database", "http://db.internal", caller, transport=httpx.MockTransport(handler))


class TestUpstreamClient:
    """Test cases for UpstreamClient."""

    @pytest.mark.asyncio
    async def test_get_json(self, clock):
        client = make_client(lambda request: httpx.Response(200, json={"ok": True}), clock)

        assert await client.get_json("/status") == {"ok": True}
        await client.close()

    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self, clock):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            return httpx.Response(503) if len(calls) == 1 else httpx.Response(200, json={"ok": True})

        client = make_client(handler, clock)

        response = await client.request("GET", "/status")

        assert response.status_code == 200
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_client_errors_are_returned(self, clock):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(404)

        client = make_client(handler, clock)

        response = await client.request("GET", "/missing")

        assert response.status_code == 404
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_breaker_opens_after_repeated_failures(self, clock):
        client = make_client(lambda request: httpx.Response(500), clock)

        with pytest.raises(RetryError) as exc_info:
            await client.request("GET", "/status")
        assert isinstance(exc_info.value.last_exception, ExternalServiceError)

        with pytest.raises(CircuitOpenError):
            await client.request("GET", "/status")

    @pytest.mark.asyncio
    async def test_ping_reports_status(self, clock):
        healthy = make_client(lambda request: httpx.Response(200), clock)
        broken = make_client(lambda request: httpx.Response(500), clock, max_attempts=1)

        assert (await healthy.ping())["status"] == "ok"
        result = await broken.ping()
        assert result["status"] == "error"
        assert result["url"] == "http://db.internal"
