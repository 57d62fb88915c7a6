"""
Fixed-window counter stores for the Gateway rate limiter.

Two interchangeable backends implement CounterStore: RedisCounterStore for
the shared, cross-process counters and MemoryCounterStore for a single
process (local development, tests, and the degraded-mode fallback).
"""

import heapq
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.clock import Clock, now_ms
from shared.errors import ConfigurationError, CounterStoreUnavailableError
from shared.logging import get_logger


@dataclass(frozen=True)
class CounterResult:
    """Counter value for one identity+policy window."""
    count: int
    window_start: int
    window_ms: int

    @property
    def reset_at(self) -> int:
        return self.window_start + self.window_ms


def window_start_for(now: float, window_ms: int) -> int:
    """Start of the fixed window containing now."""
    return int(now // window_ms) * window_ms


def window_key(key: str, window_start: int) -> str:
    return f"{key}:{window_start}"


class CounterStore(ABC):
    """Window counter storage contract."""

    name = "abstract"

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or now_ms

    def _window(self, window_ms: int) -> int:
        if window_ms <= 0:
            raise ConfigurationError("window_ms must be positive", details={"window_ms": window_ms})
        return window_start_for(self._clock(), window_ms)

    @abstractmethod
    async def increment(self, key: str, window_ms: int) -> CounterResult:
        """Atomically create-or-increment the counter of the current window."""

    @abstractmethod
    async def peek(self, key: str, window_ms: int) -> Optional[CounterResult]:
        """Read the current window's counter without counting."""

    @abstractmethod
    async def reset(self, key: str, window_ms: int) -> bool:
        """Drop the current window's counter."""

    async def ping(self) -> bool:
        return True

    async def close(self):
        return None


class MemoryCounterStore(CounterStore):
    """In-process counters guarded by a lock."""

    name = "memory"

    def __init__(self, clock: Optional[Clock] = None, max_keys: int = 100000, prune_interval: int = 1000):
        super().__init__(clock)
        self.max_keys = max_keys
        self.prune_interval = prune_interval
        self._counters: Dict[str, Tuple[int, int]] = {}
        self._lock = threading.Lock()
        self._operations = 0
        self.logger = get_logger("gateway.memory_counter_store")

    async def increment(self, key: str, window_ms: int) -> CounterResult:
        window_start = self._window(window_ms)
        full_key = window_key(key, window_start)
        expires_at = window_start + window_ms

        with self._lock:
            self._maybe_prune(full_key)
            entry = self._counters.get(full_key)
            count = entry[0] + 1 if entry else 1
            self._counters[full_key] = (count, expires_at)

        return CounterResult(count=count, window_start=window_start, window_ms=window_ms)

    async def peek(self, key: str, window_ms: int) -> Optional[CounterResult]:
        window_start = self._window(window_ms)

        with self._lock:
            entry = self._counters.get(window_key(key, window_start))

        if entry is None:
            return None
        return CounterResult(count=entry[0], window_start=window_start, window_ms=window_ms)

    async def reset(self, key: str, window_ms: int) -> bool:
        window_start = self._window(window_ms)

        with self._lock:
            return self._counters.pop(window_key(key, window_start), None) is not None

    def _maybe_prune(self, incoming: str):
        """Drop expired windows. Caller holds the lock.

        When the map is still at max_keys, evict the soonest-expiring live
        windows other than the incoming key.
        """
        self._operations += 1
        if self._operations % self.prune_interval and len(self._counters) < self.max_keys:
            return

        now = self._clock()
        expired = [k for k, (_, expires_at) in self._counters.items() if expires_at <= now]
        for k in expired:
            del self._counters[k]

        if len(self._counters) < self.max_keys:
            return

        # Evict down to 90% so the next inserts do not rescan the map
        target = int(self.max_keys * 0.9)
        overflow = len(self._counters) - min(target, self.max_keys - 1)
        victims = heapq.nsmallest(
            overflow,
            ((k, v) for k, v in self._counters.items() if k != incoming),
            key=lambda item: item[1][1]
        )
        for k, _ in victims:
            del self._counters[k]
        self.logger.warning(
            "Memory counter store full, evicted live windows",
            evicted=len(victims),
            max_keys=self.max_keys
        )

    def __len__(self) -> int:
        return len(self._counters)


class RedisCounterStore(CounterStore):
    """Distributed counters in Redis.

    INCR and PEXPIREAT run in one MULTI/EXEC transaction so concurrent
    gateways see linearizable counts per key. The expiry is the absolute
    end of the window, so repeating it on every increment is idempotent.
    """

    name = "redis"

    def __init__(self,
                 redis_url: str = "redis://localhost:6379/0",
                 client: Optional[redis.Redis] = None,
                 clock: Optional[Clock] = None,
                 key_prefix: str = "rate_limit:",
                 socket_timeout: float = 0.5):
        super().__init__(clock)
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.socket_timeout = socket_timeout
        self.logger = get_logger("gateway.counter_store.redis")
        self._redis: Optional[redis.Redis] = client

    async def _get_redis(self) -> redis.Redis:
        """Get Redis connection."""
        if self._redis is None:
            self._redis = redis.from_url(
                self.redis_url,
                decode_responses=True,
                socket_connect_timeout=self.socket_timeout,
                socket_timeout=self.socket_timeout,
            )
        return self._redis

    def _make_key(self, key: str, window_start: int) -> str:
        return self.key_prefix + window_key(key, window_start)

    async def increment(self, key: str, window_ms: int) -> CounterResult:
        window_start = self._window(window_ms)
        full_key = self._make_key(key, window_start)

        try:
            client = await self._get_redis()
            async with client.pipeline(transaction=True) as pipe:
                pipe.incr(full_key)
                pipe.pexpireat(full_key, window_start + window_ms)
                results = await pipe.execute()
        except (RedisError, OSError) as e:
            raise CounterStoreUnavailableError(
                "Redis increment failed",
                details={"key": full_key, "error": str(e)}
            ) from e

        return CounterResult(count=int(results[0]), window_start=window_start, window_ms=window_ms)

    async def peek(self, key: str, window_ms: int) -> Optional[CounterResult]:
        window_start = self._window(window_ms)
        full_key = self._make_key(key, window_start)

        try:
            client = await self._get_redis()
            value = await client.get(full_key)
        except (RedisError, OSError) as e:
            raise CounterStoreUnavailableError(
                "Redis read failed",
                details={"key": full_key, "error": str(e)}
            ) from e

        if value is None:
            return None
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        return CounterResult(count=int(value), window_start=window_start, window_ms=window_ms)

    async def reset(self, key: str, window_ms: int) -> bool:
        window_start = self._window(window_ms)
        full_key = self._make_key(key, window_start)

        try:
            client = await self._get_redis()
            deleted = await client.delete(full_key)
        except (RedisError, OSError) as e:
            raise CounterStoreUnavailableError(
                "Redis delete failed",
                details={"key": full_key, "error": str(e)}
            ) from e

        self.logger.info("Rate limit counter reset", key=full_key)
        return bool(deleted)

    async def ping(self) -> bool:
        try:
            client = await self._get_redis()
            return bool(await client.ping())
        except (RedisError, OSError) as e:
            self.logger.error("Redis ping failed", error=str(e))
            return False

    async def close(self):
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_counter_store(backend: str, redis_url: str = "redis://localhost:6379/0",
                         clock: Optional[Clock] = None, socket_timeout: float = 0.5) -> CounterStore:
    """Build the configured counter store backend."""
    if backend == "redis":
        return RedisCounterStore(redis_url, clock=clock, socket_timeout=socket_timeout)
    if backend == "memory":
        return MemoryCounterStore(clock=clock)
    raise ConfigurationError(f"Unknown counter store backend '{backend}'")
