import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised by CircuitBreaker.execute() while the circuit is open."""

    failure_class = "circuit_open"

    def __init__(self, name: str, retry_in: Optional[float] = None) -> None:
        super().__init__(f"Circuit breaker {name} is OPEN")
        self.name = name
        self.retry_in = retry_in


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    success_threshold: int = 2
    open_timeout: float = 30.0  # seconds

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "CircuitBreakerConfig":
        if not data:
            return cls()
        return cls(**{k: data[k] for k in ("failure_threshold", "success_threshold", "open_timeout") if k in data})


class CircuitBreaker:
    """Per-service circuit breaker.

    OPEN turns into HALF_OPEN lazily: the transition happens when the state is
    read after ``open_timeout`` seconds have passed since the last failure.
    There is no background timer.

    ``counts_as_failure`` lets a caller exclude failures that say nothing
    about the health of the dependency (for example an expired session).
    Excluded failures propagate but leave the counters untouched.
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        counts_as_failure: Optional[Callable[[BaseException], bool]] = None,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._counts_as_failure = counts_as_failure
        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_at: Optional[float] = None

    @property
    def state(self) -> CircuitState:
        if (
            self._state == CircuitState.OPEN
            and self.last_failure_at is not None
            and self._clock() - self.last_failure_at > self.config.open_timeout
        ):
            logger.info("Circuit %s half-open after %.1fs", self.name, self.config.open_timeout)
            self._state = CircuitState.HALF_OPEN
            self.success_count = 0
        return self._state

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        if self.state == CircuitState.OPEN:
            retry_in = None
            if self.last_failure_at is not None:
                retry_in = max(0.0, self.config.open_timeout - (self._clock() - self.last_failure_at))
            raise CircuitOpenError(self.name, retry_in)

        try:
            result = await fn()
        except Exception as e:
            if self._counts_as_failure is None or self._counts_as_failure(e):
                self._on_failure()
            raise
        self._on_success()
        return result

    def reset(self) -> None:
        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0

    def _on_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                logger.info("Circuit %s closed", self.name)
                self.reset()
        else:
            self.failure_count = 0

    def _on_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_at = self._clock()
        if self._state == CircuitState.HALF_OPEN:
            logger.warning("Circuit %s reopened by failure while half-open", self.name)
            self._state = CircuitState.OPEN
            self.success_count = 0
        elif self.failure_count >= self.config.failure_threshold:
            if self._state != CircuitState.OPEN:
                logger.warning("Circuit %s opened after %d consecutive failures", self.name, self.failure_count)
            self._state = CircuitState.OPEN


class CircuitBreakerRegistry:
    """Long-lived breakers keyed by service id."""

    def __init__(self, default_config: Optional[CircuitBreakerConfig] = None) -> None:
        self._default = default_config or CircuitBreakerConfig()
        self._breakers: Dict[str, CircuitBreaker] = {}

    def get(self, service_id: str, config: Optional[CircuitBreakerConfig] = None, **kwargs) -> CircuitBreaker:
        breaker = self._breakers.get(service_id)
        if breaker is None:
            breaker = CircuitBreaker(service_id, config or self._default, **kwargs)
            self._breakers[service_id] = breaker
        return breaker

    def states(self) -> Dict[str, CircuitState]:
        return {name: b.state for name, b in self._breakers.items()}
