import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, FrozenSet, Optional, TypeVar, Union

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

FailureClass = Union[int, str]

DEFAULT_RETRYABLE: FrozenSet[FailureClass] = frozenset({429, 500, 502, 503, 504, "network", "timeout"})


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff settings for one service. Delays are in seconds."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_conditions: FrozenSet[FailureClass] = field(default_factory=lambda: DEFAULT_RETRYABLE)

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "RetryPolicy":
        if not data:
            return cls()
        kwargs: dict = {}
        for key in ("max_attempts", "base_delay", "max_delay", "backoff_multiplier"):
            if key in data and data[key] is not None:
                kwargs[key] = data[key]
        if data.get("retry_on"):
            kwargs["retryable_conditions"] = frozenset(data["retry_on"])
        return cls(**kwargs)


def _extract_status_code(exc: BaseException) -> Optional[int]:
    # Common patterns: custom exc.status_code, httpx.HTTPStatusError.response.status_code
    code = getattr(exc, "status_code", None)
    if isinstance(code, int):
        return code
    resp = getattr(exc, "response", None)
    if resp is not None:
        sc = getattr(resp, "status_code", None)
        if isinstance(sc, int):
            return sc
    return None


def _extract_retry_after(exc: BaseException) -> Optional[str]:
    ra = getattr(exc, "retry_after", None)
    if ra:
        return str(ra)
    resp = getattr(exc, "response", None)
    if resp is not None:
        headers = getattr(resp, "headers", {}) or {}
        retry_after = headers.get("retry-after") or headers.get("Retry-After")
        if retry_after:
            return str(retry_after)
    return None


def classify_failure(exc: BaseException) -> Optional[FailureClass]:
    """Return the failure class used to decide whether to retry.

    HTTP failures classify as their status code, transport failures as
    "timeout" or "network". Anything else is unclassified (None) and is
    never retried.
    """
    status_code = _extract_status_code(exc)
    if status_code is not None:
        return status_code
    failure = getattr(exc, "failure_class", None)
    if isinstance(failure, str):
        return failure
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError)):
        return "timeout"
    if isinstance(exc, (httpx.TransportError, ConnectionError)):
        return "network"
    return None


def calculate_backoff(attempt: int, policy: RetryPolicy, retry_after_header: Optional[str] = None) -> float:
    """Compute backoff seconds for a retry attempt (1-based).

    min(base * multiplier^(attempt-1), max_delay) plus up to 30% jitter. A
    numeric Retry-After header (capped at max_delay) can only lengthen the
    wait, never shorten it.
    """
    delay = min(policy.base_delay * policy.backoff_multiplier ** (attempt - 1), policy.max_delay)
    if retry_after_header:
        try:
            delay = max(delay, min(float(int(retry_after_header)), policy.max_delay))
        except ValueError:
            # HTTP-date form is not worth parsing here
            pass
    return delay + random.random() * 0.3 * delay


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
    name: str = "operation",
    sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
) -> T:
    """Call ``fn`` until it succeeds, a non-retryable failure occurs, or attempts run out."""
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as e:
            failure = classify_failure(e)
            if failure is None or failure not in policy.retryable_conditions:
                logger.debug("%s failed with non-retryable %s: %s", name, failure, e)
                raise
            if attempt >= policy.max_attempts:
                logger.warning("%s failed after %d attempts: %s", name, attempt, e)
                raise
            delay = calculate_backoff(attempt, policy, _extract_retry_after(e))
            logger.info("Retrying %s after %.2fs due to %s (attempt %d)", name, delay, failure, attempt)
            await (sleep or asyncio.sleep)(delay)
