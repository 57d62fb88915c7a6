"""
Retry mechanism for resilient operations.
"""

import asyncio
import functools
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

import httpx
import redis.exceptions

from shared.errors import CircuitOpenError, ConfigurationError, GovernanceError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

T = TypeVar("T")

# Network and timeout class failures
TRANSIENT_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
    httpx.TransportError,
    redis.exceptions.ConnectionError,
    redis.exceptions.TimeoutError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Configuration for retry behavior."""
    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 10000
    jitter: bool = True

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ConfigurationError("max_attempts must be at least 1")
        if self.base_delay_ms < 0 or self.max_delay_ms < 0:
            raise ConfigurationError("retry delays must not be negative")


class RetryError(Exception):
    """Exception raised when all retry attempts are exhausted."""
    def __init__(self, message: str, last_exception: BaseException, attempts: int):
        super().__init__(message)
        self.last_exception = last_exception
        self.attempts = attempts


def is_transient_error(exc: BaseException) -> bool:
    """Default transient-failure classifier."""
    if isinstance(exc, CircuitOpenError):
        return False
    if isinstance(exc, GovernanceError):
        return exc.retryable
    return isinstance(exc, TRANSIENT_EXCEPTIONS)


def calculate_delay_ms(attempt: int, policy: RetryPolicy, rng: Callable[[], float] = random.random) -> float:
    """Delay to wait after the given failed attempt (1-based)."""
    delay = min(policy.base_delay_ms * (2 ** (attempt - 1)), policy.max_delay_ms)

    if policy.jitter and delay > 0:
        delay += rng() * delay

    return min(delay, policy.max_delay_ms)


class RetryExecutor:
    """Runs async operations with bounded exponential backoff."""

    def __init__(self,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
                 rng: Callable[[], float] = random.random,
                 metrics: Optional[MetricsCollector] = None):
        self._sleep = sleep
        self._rng = rng
        self._metrics = metrics
        self.logger = get_logger("retry")

    async def run(self,
                  operation: Callable[[], Awaitable[T]],
                  policy: Optional[RetryPolicy] = None,
                  is_transient: Optional[Callable[[BaseException], bool]] = None,
                  name: str = "operation") -> T:
        """Attempt operation up to policy.max_attempts times."""
        policy = policy or RetryPolicy()
        is_transient = is_transient or is_transient_error

        for attempt in range(1, policy.max_attempts + 1):
            try:
                result = await operation()
            except Exception as e:
                if not is_transient(e):
                    self._record(name, "fatal")
                    raise

                if attempt == policy.max_attempts:
                    self._record(name, "exhausted")
                    self.logger.error(
                        "All retry attempts exhausted",
                        operation=name,
                        attempts=attempt,
                        error=str(e)
                    )
                    raise RetryError(
                        f"{name} failed after {attempt} attempts",
                        last_exception=e,
                        attempts=attempt
                    ) from e

                delay_ms = calculate_delay_ms(attempt, policy, self._rng)
                self._record(name, "retry")
                self.logger.warning(
                    "Retry attempt failed, waiting before next attempt",
                    operation=name,
                    attempt=attempt,
                    max_attempts=policy.max_attempts,
                    delay_ms=round(delay_ms, 1),
                    error=str(e)
                )
                await self._sleep(delay_ms / 1000.0)
                continue

            if attempt > 1:
                self.logger.info("Retry succeeded", operation=name, attempt=attempt)
            self._record(name, "success")
            return result

        # max_attempts >= 1 guarantees the loop returns or raises
        raise AssertionError("unreachable")

    def _record(self, name: str, outcome: str):
        if self._metrics:
            self._metrics.record_retry_attempt(name, outcome)


def retry_on_exception(exceptions: Tuple[Type[BaseException], ...] = TRANSIENT_EXCEPTIONS,
                       policy: Optional[RetryPolicy] = None,
                       executor: Optional[RetryExecutor] = None) -> Callable:
    """Decorator for retrying async functions on the given exceptions."""

    def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            runner = executor or RetryExecutor()
            return await runner.run(
                lambda: func(*args, **kwargs),
                policy,
                is_transient=lambda e: isinstance(e, exceptions),
                name=func.__name__,
            )

        return wrapper

    return decorator
