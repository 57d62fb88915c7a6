"""
Request governance gate for the Gateway.

Runs before business logic on every request: maintenance mode, origin
validation for mutations, policy selection and rate limiting. The first
blocking condition short-circuits with a structured JSON response.
"""

import asyncio
import math
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

from fastapi import Request, Response
from fastapi.responses import JSONResponse, RedirectResponse
from starlette.middleware.base import BaseHTTPMiddleware

from shared.clock import Clock, now_ms
from shared.errors import (
    ForbiddenOriginError,
    GovernanceError,
    MaintenanceModeError,
    RateLimitExceededError,
)
from shared.logging import get_logger, set_client_context
from shared.metrics import MetricsCollector

from ..ratelimit.identity import RequestMetadata, client_ip, resolve_identity
from ..ratelimit.limiter import RateLimitDecision, RateLimiter
from ..ratelimit.policies import PolicySelector, UserContext
from .maintenance import MaintenanceState
from .origin import validate_request_origin

UserResolver = Callable[[Request], Optional[UserContext]]


def user_from_request_state(request: Request) -> Optional[UserContext]:
    """Read the caller that upstream auth placed on request.state."""
    user_info = getattr(request.state, "user_info", None)
    if isinstance(user_info, dict) and user_info.get("user_id"):
        return UserContext(
            user_id=str(user_info["user_id"]),
            subscription_tier=user_info.get("subscription_tier"),
        )
    return None


def user_from_trusted_headers(request: Request) -> Optional[UserContext]:
    """Caller from request.state, else from the auth proxy's forwarded headers.

    Only install this resolver when every request passes through a proxy
    that strips client-supplied X-User-Id and X-Subscription-Tier.
    """
    user = user_from_request_state(request)
    if user is not None:
        return user

    user_id = request.headers.get("x-user-id", "").strip()
    if not user_id:
        return None
    tier = request.headers.get("x-subscription-tier", "").strip().lower() or None
    request.state.user_info = {"user_id": user_id, "subscription_tier": tier}
    return UserContext(user_id=user_id, subscription_tier=tier)


def is_exempt_path(path: str, prefixes: Tuple[str, ...]) -> bool:
    """Exact match or a sub-path on a segment boundary."""
    for prefix in prefixes:
        base = prefix.rstrip("/")
        if path == prefix or path == base or path.startswith(base + "/"):
            return True
    return False


@dataclass(frozen=True)
class GovernanceSettings:
    """Static knobs of the governance gate."""
    api_prefix: str = "/api/"
    maintenance_page: str = "/maintenance"
    maintenance_exempt_prefixes: Tuple[str, ...] = (
        "/health", "/metrics", "/api/health", "/api/admin/maintenance", "/maintenance"
    )
    allowed_origins: Tuple[str, ...] = ()
    timeout_ms: int = 1000


@dataclass
class GovernanceResult:
    """Gate outcome: a blocking response, or the binding decision to expose."""
    response: Optional[Response] = None
    decision: Optional[RateLimitDecision] = None
    decisions: List[RateLimitDecision] = field(default_factory=list)


def rate_limit_headers(decision: RateLimitDecision, now: float, denied: bool = False) -> dict:
    """Standard rate limit headers for a decision."""
    headers = {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
        "X-RateLimit-Reset": str(math.ceil(decision.reset_at / 1000)),
        "X-RateLimit-Policy": decision.policy,
    }
    if denied:
        headers["Retry-After"] = str(decision.retry_after_seconds(now))
    if decision.degraded:
        headers["X-RateLimit-Degraded"] = "true"
    return headers


class RequestGovernor:
    """Evaluates the governance sequence for one request."""

    def __init__(self,
                 limiter: RateLimiter,
                 selector: PolicySelector,
                 maintenance: MaintenanceState,
                 settings: Optional[GovernanceSettings] = None,
                 user_resolver: UserResolver = user_from_request_state,
                 clock: Optional[Clock] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.limiter = limiter
        self.selector = selector
        self.maintenance = maintenance
        self.settings = settings or GovernanceSettings()
        self.user_resolver = user_resolver
        self._clock = clock or now_ms
        self.metrics = metrics
        self.logger = get_logger("gateway.governance")

    def now(self) -> float:
        return self._clock()

    async def evaluate(self, request: Request) -> GovernanceResult:
        path = request.url.path

        blocked = self._check_maintenance(path)
        if blocked is not None:
            return GovernanceResult(response=blocked)

        if not validate_request_origin(request.method, request.headers, self.settings.allowed_origins):
            self.logger.warning(
                "Invalid request origin",
                method=request.method,
                path=path,
                origin=request.headers.get("origin"),
                referer=request.headers.get("referer")
            )
            return GovernanceResult(response=self._error_response(ForbiddenOriginError()))

        metadata = RequestMetadata.from_request(request)
        user = self.user_resolver(request)
        set_client_context(user_id=user.user_id if user else None, client_ip=client_ip(metadata))

        policies = self.selector.select(path, user)
        if not policies:
            return GovernanceResult()

        checks = [
            (policy.name, resolve_identity(policy.scope, metadata, user.user_id if user else None))
            for policy in policies
        ]

        try:
            decisions = await asyncio.wait_for(
                self.limiter.check_all(checks),
                self.settings.timeout_ms / 1000.0
            )
        except asyncio.TimeoutError:
            self.logger.error(
                "Rate limit evaluation timed out, allowing request",
                path=path,
                timeout_ms=self.settings.timeout_ms
            )
            return GovernanceResult()

        binding = RateLimiter.binding_decision(decisions)
        if binding is not None and not binding.allowed:
            return GovernanceResult(
                response=self._rate_limited_response(binding),
                decision=binding,
                decisions=decisions,
            )

        return GovernanceResult(decision=binding, decisions=decisions)

    def _check_maintenance(self, path: str) -> Optional[Response]:
        if not self.maintenance.enabled:
            return None
        if is_exempt_path(path, self.settings.maintenance_exempt_prefixes):
            return None

        if path.startswith(self.settings.api_prefix):
            return self._error_response(MaintenanceModeError(self.maintenance.message))

        if self.metrics:
            self.metrics.record_rejection("MAINTENANCE_MODE")
        return RedirectResponse(self.settings.maintenance_page, status_code=307)

    def _rate_limited_response(self, decision: RateLimitDecision) -> Response:
        now = self._clock()
        retry_after = decision.retry_after_seconds(now)
        error = RateLimitExceededError(
            decision.message,
            reset_at=decision.reset_at,
            retry_after=retry_after,
            details={"policy": decision.policy},
        )
        return self._error_response(error, headers=rate_limit_headers(decision, now, denied=True))

    def _error_response(self, error: GovernanceError, headers: Optional[dict] = None) -> JSONResponse:
        if self.metrics:
            self.metrics.record_rejection(error.code)
        return JSONResponse(
            status_code=error.status_code,
            content=error.to_response().to_body(),
            headers=headers,
        )


class GovernanceMiddleware(BaseHTTPMiddleware):
    """Starlette middleware wrapping RequestGovernor.

    Governance failures never reach business logic: configuration errors
    are rendered as JSON, anything unexpected is logged and the request
    fails open.
    """

    def __init__(self, app, governor: RequestGovernor):
        super().__init__(app)
        self.governor = governor
        self.logger = get_logger("gateway.governance_middleware")

    async def dispatch(self, request: Request, call_next):
        try:
            result = await self.governor.evaluate(request)
        except GovernanceError as e:
            self.logger.error("Governance error", code=e.code, message=e.message, details=e.details)
            return JSONResponse(status_code=e.status_code, content=e.to_response().to_body())
        except Exception as e:
            self.logger.error("Governance middleware error, allowing request", error=str(e), exc_info=True)
            result = GovernanceResult()

        if result.response is not None:
            return result.response

        response = await call_next(request)

        if result.decision is not None:
            response.headers.update(rate_limit_headers(result.decision, self.governor.now()))
        return response
