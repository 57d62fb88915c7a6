"""
API Gateway service for the VIVK access governance layer.
"""

import hmac
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Depends, Header, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from shared.base_service import BaseService
from shared.circuit_breaker import build_circuit_breaker_manager
from shared.clock import Clock, now_ms
from shared.config import ServiceConfig
from shared.resilience import ResilientCaller
from shared.retry import RetryExecutor, RetryPolicy

from service_gateway.app.adapters.upstream_client import UpstreamClient
from service_gateway.app.domain.governance import (
    GovernanceMiddleware,
    GovernanceSettings,
    RequestGovernor,
    UserResolver,
    user_from_request_state,
    user_from_trusted_headers,
)
from service_gateway.app.domain.maintenance import MaintenanceState
from service_gateway.app.ratelimit.limiter import RateLimiter
from service_gateway.app.ratelimit.policies import PolicyRegistry, PolicySelector
from service_gateway.app.ratelimit.store import create_counter_store


class MaintenanceUpdate(BaseModel):
    """Body of the maintenance toggle endpoint."""
    enabled: bool
    message: Optional[str] = None
    estimated_time: Optional[str] = None


class GatewayService(BaseService):
    """API Gateway service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, clock: Optional[Clock] = None,
                 user_resolver: Optional[UserResolver] = None):
        self.clock = clock or now_ms
        self.user_resolver = user_resolver
        super().__init__("gateway", 8000, config)

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.store.close()
            for client in self.upstreams.values():
                await client.close()

        self._setup_gateway_routes()
        self._setup_admin_routes()

    def _build_governance(self):
        """Wire the rate limiter, breakers and maintenance state from configuration."""
        config = self.config

        if config.rate_limits_file:
            self.policies = PolicyRegistry.from_file(config.rate_limits_file)
        else:
            self.policies = PolicyRegistry()
        self.selector = PolicySelector(self.policies)

        self.store = create_counter_store(
            config.counter_store,
            config.redis_url,
            clock=self.clock,
            socket_timeout=config.counter_store_timeout_ms / 1000.0
        )
        self.rate_limiter = RateLimiter(
            self.policies,
            self.store,
            store_timeout_ms=config.counter_store_timeout_ms,
            clock=self.clock,
            metrics=self.metrics
        )

        self.circuit_breakers = build_circuit_breaker_manager(clock=self.clock, metrics=self.metrics)
        self.retry_executor = RetryExecutor(metrics=self.metrics)
        self.retry_policy = RetryPolicy(
            max_attempts=config.retry_max_attempts,
            base_delay_ms=config.retry_base_delay_ms,
            max_delay_ms=config.retry_max_delay_ms,
            jitter=config.retry_jitter
        )

        self.upstreams: Dict[str, UpstreamClient] = {}
        for name, url in (("database", config.database_url), ("ai", config.ai_provider_url)):
            if url:
                caller = ResilientCaller(
                    self.circuit_breakers.get_circuit_breaker(name),
                    retry_policy=self.retry_policy,
                    executor=self.retry_executor
                )
                self.upstreams[name] = UpstreamClient(
                    name, url, caller, timeout=config.upstream_timeout_seconds
                )

        self.maintenance = MaintenanceState(
            enabled=config.maintenance_mode,
            message=config.maintenance_message
        )
        self.governor = RequestGovernor(
            self.rate_limiter,
            self.selector,
            self.maintenance,
            settings=GovernanceSettings(
                allowed_origins=tuple(config.allowed_origins),
                timeout_ms=config.governance_timeout_ms
            ),
            user_resolver=self._resolve_user_resolver(),
            clock=self.clock,
            metrics=self.metrics
        )

    def _resolve_user_resolver(self) -> UserResolver:
        """Injected resolver, else forwarded headers when the proxy is trusted."""
        if self.user_resolver is not None:
            return self.user_resolver
        if self.config.trusted_user_headers:
            return user_from_trusted_headers
        return user_from_request_state

    def _setup_middleware(self):
        """Governance runs innermost, behind CORS and request timing."""
        self._build_governance()
        self.app.add_middleware(GovernanceMiddleware, governor=self.governor)
        super()._setup_middleware()

    async def _check_dependencies(self) -> Dict[str, str]:
        return {
            "counter_store": "ok" if await self.store.ping() else "error",
        }

    def _format_iso(self, value: datetime) -> str:
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")

    def _require_admin(self):
        """Dependency guarding the admin routes with the configured API key."""
        admin_key = self.config.admin_api_key

        async def verify(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")):
            if not admin_key or not x_admin_key or not hmac.compare_digest(x_admin_key, admin_key):
                raise HTTPException(status_code=403, detail="Admin access required")

        return verify

    def _setup_gateway_routes(self):
        """Set up gateway-specific routes."""

        @self.app.get("/api/health")
        async def api_health():
            """Liveness endpoint."""
            return {
                "service": "gateway",
                "status": "ok",
                "maintenance": self.maintenance.enabled,
                "timestamp": self._format_iso(datetime.now(timezone.utc)),
            }

        @self.app.get("/api/health/redis")
        async def counter_store_health():
            """Counter store reachability."""
            healthy = await self.store.ping()
            content = {
                "status": "ok" if healthy else "error",
                "backend": self.store.name,
                "degraded": self.rate_limiter.degraded,
                "timestamp": self._format_iso(datetime.now(timezone.utc)),
            }
            return JSONResponse(status_code=200 if healthy else 503, content=content)

        @self.app.get("/api/health/dependencies")
        async def dependencies_health():
            """Upstream reachability through their circuit breakers."""
            dependencies: Dict[str, Any] = {
                "counter_store": {
                    "status": "ok" if await self.store.ping() else "error",
                    "backend": self.store.name,
                }
            }
            for name, client in self.upstreams.items():
                dependencies[name] = await client.ping()

            status = "ok" if all(dep["status"] == "ok" for dep in dependencies.values()) else "degraded"
            return {
                "status": status,
                "dependencies": dependencies,
                "timestamp": self._format_iso(datetime.now(timezone.utc)),
            }

        @self.app.get("/maintenance")
        async def maintenance_page():
            """Target of the maintenance redirect for page requests."""
            return {
                "maintenance": self.maintenance.enabled,
                "message": self.maintenance.message,
            }

    def _setup_admin_routes(self):
        """Set up operator routes."""
        admin = [Depends(self._require_admin())]

        @self.app.get("/api/admin/maintenance", dependencies=admin)
        async def get_maintenance():
            """Current maintenance state."""
            return self.maintenance.snapshot()

        @self.app.post("/api/admin/maintenance", dependencies=admin)
        async def set_maintenance(update: MaintenanceUpdate):
            """Toggle maintenance mode."""
            return self.maintenance.set(
                update.enabled,
                message=update.message,
                estimated_time=update.estimated_time,
                changed_by="admin"
            )

        @self.app.get("/api/admin/circuit-breakers", dependencies=admin)
        async def get_circuit_breakers():
            """Get circuit breaker status."""
            circuit_breaker_states = self.circuit_breakers.get_all_states()
            return {
                "circuit_breakers": circuit_breaker_states,
                "count": len(circuit_breaker_states)
            }

        @self.app.get("/api/admin/rate-limits", dependencies=admin)
        async def get_rate_limits():
            """Configured policies and counter store state."""
            return {
                "policies": self.policies.to_dict(),
                "store": self.store.name,
                "degraded": self.rate_limiter.degraded,
            }

        @self.app.get("/api/admin/rate-limits/{policy}/{identity}", dependencies=admin)
        async def get_rate_limit_status(policy: str, identity: str):
            """Current window standing of one identity."""
            if policy not in self.policies:
                raise HTTPException(status_code=404, detail=f"Unknown policy '{policy}'")
            decision = await self.rate_limiter.status(policy, identity)
            return decision.to_dict()

        @self.app.delete("/api/admin/rate-limits/{policy}/{identity}", dependencies=admin)
        async def reset_rate_limit(policy: str, identity: str):
            """Clear the current window of one identity."""
            if policy not in self.policies:
                raise HTTPException(status_code=404, detail=f"Unknown policy '{policy}'")
            cleared = await self.rate_limiter.reset(policy, identity)
            return {"policy": policy, "identity": identity, "cleared": cleared}


def create_app(config: Optional[ServiceConfig] = None, user_resolver: Optional[UserResolver] = None):
    """Create FastAPI application."""
    service = GatewayService(config=config, user_resolver=user_resolver)
    return service.app


def run():
    """Console entry point."""
    GatewayService().run()


if __name__ == "__main__":
    run()
