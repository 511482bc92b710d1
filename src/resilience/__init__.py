from .retry import RetryPolicy, retry_with_backoff, classify_failure
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitOpenError,
    CircuitState,
)

__all__ = [
    "RetryPolicy",
    "retry_with_backoff",
    "classify_failure",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitOpenError",
    "CircuitState",
]
