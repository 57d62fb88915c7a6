"""
HTTP client for the Gateway's upstream dependencies.
"""

import httpx
from typing import Any, Dict, Optional

from shared.errors import ExternalServiceError, GovernanceError
from shared.logging import get_logger
from shared.resilience import ResilientCaller
from shared.retry import RetryError


class UpstreamClient:
    """Calls one upstream service through its breaker and retry policy.

    5xx answers are treated as transient and retried, 4xx answers are
    returned to the caller untouched.
    """

    def __init__(self, name: str, base_url: str, caller: ResilientCaller,
                 timeout: float = 5.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.caller = caller
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self.logger = get_logger(f"gateway.upstream.{name}")

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport
            )
        return self._client

    async def request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Send a request, failing fast while the breaker is open."""
        async def _send() -> httpx.Response:
            response = await self._get_client().request(method, path, **kwargs)
            if response.status_code >= 500:
                raise ExternalServiceError(
                    self.name,
                    f"HTTP {response.status_code}",
                    details={"status_code": response.status_code, "path": path},
                    retryable=True
                )
            return response

        return await self.caller.call(_send)

    async def get_json(self, path: str, **kwargs) -> Any:
        response = await self.request("GET", path, **kwargs)
        response.raise_for_status()
        return response.json()

    async def ping(self, path: str = "/health") -> Dict[str, Any]:
        """Health probe reported by the dependency health endpoint."""
        breaker = self.caller.breaker.get_state()
        try:
            response = await self.request("GET", path)
            status = "ok" if response.status_code < 400 else "error"
        except (GovernanceError, RetryError, httpx.HTTPError) as e:
            self.logger.warning("Upstream health probe failed", upstream=self.name, error=str(e))
            status = "error"

        return {
            "status": status,
            "url": self.base_url,
            "circuit_breaker": breaker["state"],
        }

    async def close(self):
        if self._client is not None:
            await self._client.aclose()
            self._client = None
