"""
Composition of circuit breaking and retries for named dependencies.
"""

from typing import Awaitable, Callable, Optional, TypeVar

from shared.circuit_breaker import CircuitBreaker
from shared.retry import RetryExecutor, RetryPolicy, is_transient_error

T = TypeVar("T")


class ResilientCaller:
    """Calls one external dependency through its breaker, retrying transient failures.

    Each attempt goes through the breaker, so failed attempts count towards
    tripping it. Once the breaker opens, the resulting CircuitOpenError is
    not transient and ends the retry loop immediately.
    """

    def __init__(self,
                 breaker: CircuitBreaker,
                 retry_policy: Optional[RetryPolicy] = None,
                 executor: Optional[RetryExecutor] = None,
                 is_transient: Callable[[BaseException], bool] = is_transient_error):
        self.breaker = breaker
        self.retry_policy = retry_policy or RetryPolicy()
        self.executor = executor or RetryExecutor()
        self.is_transient = is_transient

    @property
    def name(self) -> str:
        return self.breaker.name

    async def call(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await self.executor.run(
            lambda: self.breaker.execute(operation),
            self.retry_policy,
            is_transient=self.is_transient,
            name=self.breaker.name,
        )
