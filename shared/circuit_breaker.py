"""
Circuit breaker pattern implementation for resilient service calls.
"""

import threading
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Dict, Any, Optional, Callable, Awaitable, Tuple, Type, TypeVar

from shared.clock import Clock, now_ms
from shared.errors import CircuitOpenError, ConfigurationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

T = TypeVar("T")


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, requests blocked
    HALF_OPEN = "half_open"  # Single trial call in flight


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for one circuit breaker."""
    failure_threshold: int = 5
    cooldown_ms: int = 60000
    # Failures older than this no longer count towards the threshold
    failure_window_ms: Optional[int] = None
    # Cooldown growth after repeated failed trials
    backoff_multiplier: float = 1.0
    max_cooldown_ms: Optional[int] = None
    expected_exception: Tuple[Type[BaseException], ...] = (Exception,)

    def __post_init__(self):
        if self.failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be at least 1")
        if self.cooldown_ms < 0:
            raise ConfigurationError("cooldown_ms must not be negative")
        if self.backoff_multiplier < 1.0:
            raise ConfigurationError("backoff_multiplier must be >= 1.0")


class CircuitBreaker:
    """Circuit breaker guarding one named external dependency.

    State checks and transitions happen inside a lock with no await in
    between, so exactly one caller can claim the HALF_OPEN trial even when
    many coroutines or threads arrive at once.
    """

    def __init__(self,
                 name: str = "default",
                 config: Optional[CircuitBreakerConfig] = None,
                 clock: Optional[Clock] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self.logger = get_logger(f"circuit_breaker.{name}")
        self._clock = clock or now_ms
        self._metrics = metrics
        self._lock = threading.Lock()

        self._state = CircuitBreakerState.CLOSED
        # Timestamps of counted failures, oldest first
        self._failures: Deque[float] = deque(maxlen=self.config.failure_threshold)
        self._success_count = 0
        self._last_failure_time = 0.0
        self._next_attempt_time = 0.0
        self._trips = 0
        self._trial_in_flight = False

        self._publish_state()

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    @property
    def failure_count(self) -> int:
        return len(self._failures)

    @property
    def next_attempt_time(self) -> float:
        return self._next_attempt_time

    def is_open(self) -> bool:
        """Check if circuit breaker is in OPEN state."""
        return self._state == CircuitBreakerState.OPEN

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run operation under breaker protection.

        Raises CircuitOpenError without invoking the operation while the
        breaker is blocking; otherwise propagates the operation's own result
        or exception.
        """
        is_trial = self._acquire()

        try:
            result = await operation()
        except self.config.expected_exception:
            self._record_failure(is_trial)
            raise
        except BaseException:
            # Cancellation or an error this breaker does not count
            self._release(is_trial)
            raise

        self._record_success(is_trial)
        return result

    async def call(self, func: Callable[..., Awaitable[T]], *args, **kwargs) -> T:
        """Execute function with circuit breaker protection."""
        return await self.execute(lambda: func(*args, **kwargs))

    def _acquire(self) -> bool:
        """Admit or reject a call. Returns True when the caller is the trial."""
        with self._lock:
            if self._state == CircuitBreakerState.CLOSED:
                return False

            if self._state == CircuitBreakerState.OPEN and self._clock() >= self._next_attempt_time:
                self._transition(CircuitBreakerState.HALF_OPEN)
                self._trial_in_flight = True
                self.logger.info("Circuit breaker admitting half-open trial call")
                return True

            # OPEN before cooldown, or HALF_OPEN with the trial already taken
            if self._metrics:
                self._metrics.record_breaker_rejection(self.name)
            raise CircuitOpenError(
                self.name,
                self._next_attempt_time,
                details={"state": self._state.value},
            )

    def _record_success(self, is_trial: bool):
        with self._lock:
            self._success_count += 1
            if is_trial:
                self._trial_in_flight = False
                self._failures.clear()
                self._trips = 0
                self._transition(CircuitBreakerState.CLOSED)
                self.logger.info("Circuit breaker reset to CLOSED after successful trial")
            elif self._state == CircuitBreakerState.CLOSED:
                self._failures.clear()

    def _record_failure(self, is_trial: bool):
        """Record a failure and update state."""
        with self._lock:
            now = self._clock()
            self._last_failure_time = now
            self._success_count = 0

            if is_trial:
                self._trial_in_flight = False
                self._trip(now)
                return

            if self._state != CircuitBreakerState.CLOSED:
                # Call admitted before another caller tripped the breaker
                return

            window = self.config.failure_window_ms
            if window is not None:
                while self._failures and now - self._failures[0] >= window:
                    self._failures.popleft()

            self._failures.append(now)
            if len(self._failures) >= self.config.failure_threshold:
                self._trip(now)

    def _release(self, is_trial: bool):
        """Give back a trial slot whose outcome was inconclusive."""
        if not is_trial:
            return
        with self._lock:
            self._trial_in_flight = False
            self._next_attempt_time = self._clock()
            self._transition(CircuitBreakerState.OPEN)

    def _trip(self, now: float):
        self._trips += 1
        cooldown = self.config.cooldown_ms * (self.config.backoff_multiplier ** (self._trips - 1))
        if self.config.max_cooldown_ms is not None:
            cooldown = min(cooldown, self.config.max_cooldown_ms)
        self._next_attempt_time = now + cooldown
        self._transition(CircuitBreakerState.OPEN)
        self.logger.warning(
            "Circuit breaker opened due to failures",
            failure_count=len(self._failures),
            threshold=self.config.failure_threshold,
            cooldown_ms=cooldown,
            next_attempt_time=self._next_attempt_time
        )

    def _transition(self, state: CircuitBreakerState):
        self._state = state
        self._publish_state()

    def _publish_state(self):
        if self._metrics:
            self._metrics.set_breaker_state(self.name, self._state.value)

    def get_state(self) -> Dict[str, Any]:
        """Get current circuit breaker state."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": len(self._failures),
            "success_count": self._success_count,
            "last_failure_time": self._last_failure_time,
            "next_attempt_time": self._next_attempt_time,
            "failure_threshold": self.config.failure_threshold,
            "cooldown_ms": self.config.cooldown_ms
        }


# Breakers for the application's external dependencies
DEFAULT_BREAKERS: Dict[str, CircuitBreakerConfig] = {
    "ai": CircuitBreakerConfig(failure_threshold=3, cooldown_ms=30000),
    "database": CircuitBreakerConfig(failure_threshold=5, cooldown_ms=60000),
    "payment": CircuitBreakerConfig(failure_threshold=3, cooldown_ms=120000),
}


class CircuitBreakerManager:
    """Registry of named circuit breakers.

    Constructed explicitly at process start and passed to whoever needs a
    breaker; asking for a name that was never registered is a
    configuration error.
    """

    def __init__(self, clock: Optional[Clock] = None, metrics: Optional[MetricsCollector] = None):
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self._clock = clock
        self._metrics = metrics
        self.logger = get_logger("circuit_breaker_manager")

    def register(self, name: str, config: Optional[CircuitBreakerConfig] = None) -> CircuitBreaker:
        """Create a breaker under a new name."""
        if name in self.circuit_breakers:
            raise ConfigurationError(f"Circuit breaker '{name}' is already registered")

        breaker = CircuitBreaker(name=name, config=config, clock=self._clock, metrics=self._metrics)
        self.circuit_breakers[name] = breaker
        self.logger.info("Created circuit breaker", name=name)
        return breaker

    def get_circuit_breaker(self, name: str) -> CircuitBreaker:
        """Look up a registered breaker."""
        try:
            return self.circuit_breakers[name]
        except KeyError:
            raise ConfigurationError(
                f"Unknown circuit breaker '{name}'",
                details={"registered": sorted(self.circuit_breakers)}
            ) from None

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        """Get states of all circuit breakers."""
        return {
            name: cb.get_state()
            for name, cb in self.circuit_breakers.items()
        }


def build_circuit_breaker_manager(configs: Optional[Dict[str, CircuitBreakerConfig]] = None,
                                  clock: Optional[Clock] = None,
                                  metrics: Optional[MetricsCollector] = None) -> CircuitBreakerManager:
    """Create a manager with one breaker per configured dependency."""
    manager = CircuitBreakerManager(clock=clock, metrics=metrics)
    for name, config in (configs if configs is not None else DEFAULT_BREAKERS).items():
        manager.register(name, config)
    return manager
