"""
Fixed-window rate limiter for the Gateway.
"""

import asyncio
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from shared.clock import Clock, now_ms
from shared.errors import CounterStoreUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from .policies import DEFAULT_MESSAGE, PolicyRegistry, RateLimitPolicy
from .store import CounterResult, CounterStore, MemoryCounterStore


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one policy check for one identity."""
    allowed: bool
    remaining: int
    reset_at: int
    limit: int
    policy: str
    identity: str
    count: int
    degraded: bool = False
    message: str = DEFAULT_MESSAGE

    def retry_after_seconds(self, now: float) -> int:
        return max(0, math.ceil((self.reset_at - now) / 1000))

    def to_dict(self) -> dict:
        return {
            "allowed": self.allowed,
            "remaining": self.remaining,
            "reset_at": self.reset_at,
            "limit": self.limit,
            "policy": self.policy,
            "identity": self.identity,
            "count": self.count,
            "degraded": self.degraded,
        }


class RateLimiter:
    """Allow/deny decisions from named policies and a counter store.

    Every checked request is counted, the denied one included. When the
    primary store fails or exceeds its deadline the check is served by an
    in-process fallback store and flagged degraded, so a cache outage
    neither blocks traffic nor lifts the limits entirely.
    """

    def __init__(self,
                 registry: PolicyRegistry,
                 store: CounterStore,
                 fallback_store: Optional[CounterStore] = None,
                 store_timeout_ms: int = 200,
                 clock: Optional[Clock] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.registry = registry
        self.store = store
        self._clock = clock or now_ms
        if fallback_store is None and not isinstance(store, MemoryCounterStore):
            fallback_store = MemoryCounterStore(clock=self._clock)
        self.fallback_store = fallback_store
        self.store_timeout = store_timeout_ms / 1000.0
        self.metrics = metrics
        self.logger = get_logger("gateway.rate_limiter")
        self.degraded = False

    @staticmethod
    def _make_key(policy: RateLimitPolicy, identity: str) -> str:
        """Generate rate limit key."""
        return f"{identity}:{policy.name}"

    async def _increment(self, key: str, window_ms: int) -> Tuple[CounterResult, bool]:
        if self.fallback_store is None:
            return await self.store.increment(key, window_ms), False

        try:
            result = await asyncio.wait_for(self.store.increment(key, window_ms), self.store_timeout)
        except (CounterStoreUnavailableError, asyncio.TimeoutError) as e:
            self._mark_degraded(e)
            return await self.fallback_store.increment(key, window_ms), True

        if self.degraded:
            self.degraded = False
            self.logger.info("Counter store recovered", store=self.store.name)
        return result, False

    def _mark_degraded(self, error: Exception):
        if not self.degraded:
            self.logger.error(
                "Counter store unavailable, using in-process fallback",
                store=self.store.name,
                error=str(error) or type(error).__name__
            )
        self.degraded = True

    async def check(self, policy_name: str, identity: str) -> RateLimitDecision:
        """Count this request against policy_name for identity."""
        policy = self.registry.get(policy_name)
        result, degraded = await self._increment(self._make_key(policy, identity), policy.window_ms)

        count = min(result.count, policy.max_requests + 1)
        allowed = count <= policy.max_requests
        decision = RateLimitDecision(
            allowed=allowed,
            remaining=max(0, policy.max_requests - count),
            reset_at=result.reset_at,
            limit=policy.max_requests,
            policy=policy.name,
            identity=identity,
            count=count,
            degraded=degraded,
            message=policy.message,
        )

        if not allowed:
            self.logger.warning(
                "Rate limit exceeded",
                policy=policy.name,
                identity=identity,
                limit=policy.max_requests,
                reset_at=decision.reset_at
            )
        if self.metrics:
            self.metrics.record_rate_limit_decision(policy.name, allowed, degraded)

        return decision

    async def check_all(self, checks: Sequence[Tuple[str, str]]) -> List[RateLimitDecision]:
        """Evaluate (policy_name, identity) pairs in order; all are counted."""
        return [await self.check(policy_name, identity) for policy_name, identity in checks]

    async def status(self, policy_name: str, identity: str) -> RateLimitDecision:
        """Current standing without counting a request."""
        policy = self.registry.get(policy_name)
        key = self._make_key(policy, identity)
        degraded = False

        try:
            result = await asyncio.wait_for(self.store.peek(key, policy.window_ms), self.store_timeout)
        except (CounterStoreUnavailableError, asyncio.TimeoutError):
            if self.fallback_store is None:
                raise
            result = await self.fallback_store.peek(key, policy.window_ms)
            degraded = True

        if result is None:
            window_start = int(self._clock() // policy.window_ms) * policy.window_ms
            result = CounterResult(count=0, window_start=window_start, window_ms=policy.window_ms)

        count = min(result.count, policy.max_requests + 1)
        return RateLimitDecision(
            allowed=count < policy.max_requests,
            remaining=max(0, policy.max_requests - count),
            reset_at=result.reset_at,
            limit=policy.max_requests,
            policy=policy.name,
            identity=identity,
            count=count,
            degraded=degraded,
            message=policy.message,
        )

    async def reset(self, policy_name: str, identity: str) -> bool:
        """Clear the current window for identity in every store."""
        policy = self.registry.get(policy_name)
        key = self._make_key(policy, identity)

        cleared = await self.store.reset(key, policy.window_ms)
        if self.fallback_store is not None:
            cleared = await self.fallback_store.reset(key, policy.window_ms) or cleared

        self.logger.info("Rate limit reset", policy=policy.name, identity=identity)
        return cleared

    @staticmethod
    def binding_decision(decisions: Sequence[RateLimitDecision]) -> Optional[RateLimitDecision]:
        """Most restrictive decision: any denial wins, latest reset first."""
        if not decisions:
            return None

        denied = [d for d in decisions if not d.allowed]
        if denied:
            return max(denied, key=lambda d: d.reset_at)

        return min(decisions, key=lambda d: (d.remaining, -d.reset_at))
