from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

import httpx

from resilience import CircuitOpenError, classify_failure
from state.models import ServiceUsage


class UsageError(Exception):
    """Base class for failures raised inside service adapters."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        headers: Optional[Dict[str, str]] = None,
        failure_class: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        # "network" or "timeout" for failures without an HTTP status
        self.failure_class = failure_class
        self.headers = headers or {}
        self.retry_after = self.headers.get("retry-after") or self.headers.get("Retry-After")

    def __str__(self) -> str:
        return self.message


class CredentialNotFound(UsageError):
    pass


class SessionExpired(UsageError):
    pass


class UpstreamUnavailable(UsageError):
    pass


class UpstreamRejected(UsageError):
    pass


class LocalToolMissing(UsageError):
    pass


class MalformedResponse(UsageError):
    pass


def raise_for_status(resp: httpx.Response, service: str) -> None:
    """Map a non-2xx response onto the error taxonomy."""
    code = resp.status_code
    if code < 400:
        return
    headers = dict(resp.headers)
    if code in (401, 403):
        raise SessionExpired(f"{service} rejected the credential ({code})", code, headers)
    if code == 429 or code >= 500:
        raise UpstreamUnavailable(f"{service} is temporarily unavailable ({code})", code, headers)
    body = resp.text[:200].strip() if resp.text else ""
    raise UpstreamRejected(f"{service} request failed ({code}){': ' + body if body else ''}", code, headers)


class FailureKind(str, Enum):
    CREDENTIAL_NOT_FOUND = "credential_not_found"
    SESSION_EXPIRED = "session_expired"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    UPSTREAM_REJECTED = "upstream_rejected"
    LOCAL_TOOL_MISSING = "local_tool_missing"
    MALFORMED_RESPONSE = "malformed_response"
    CIRCUIT_OPEN = "circuit_open"


# Higher wins when several data sources fail for different reasons.
FAILURE_PRECEDENCE = [
    FailureKind.MALFORMED_RESPONSE,
    FailureKind.UPSTREAM_UNAVAILABLE,
    FailureKind.CIRCUIT_OPEN,
    FailureKind.LOCAL_TOOL_MISSING,
    FailureKind.UPSTREAM_REJECTED,
    FailureKind.CREDENTIAL_NOT_FOUND,
    FailureKind.SESSION_EXPIRED,
]


def classify_exception(exc: BaseException) -> FailureKind:
    if isinstance(exc, CircuitOpenError):
        return FailureKind.CIRCUIT_OPEN
    if isinstance(exc, SessionExpired):
        return FailureKind.SESSION_EXPIRED
    if isinstance(exc, CredentialNotFound):
        return FailureKind.CREDENTIAL_NOT_FOUND
    if isinstance(exc, LocalToolMissing):
        return FailureKind.LOCAL_TOOL_MISSING
    if isinstance(exc, UpstreamRejected):
        return FailureKind.UPSTREAM_REJECTED
    if isinstance(exc, UpstreamUnavailable):
        return FailureKind.UPSTREAM_UNAVAILABLE
    if isinstance(exc, MalformedResponse):
        return FailureKind.MALFORMED_RESPONSE
    failure = classify_failure(exc)
    if failure in (401, 403):
        return FailureKind.SESSION_EXPIRED
    if isinstance(failure, int):
        if failure == 429 or failure >= 500:
            return FailureKind.UPSTREAM_UNAVAILABLE
        return FailureKind.UPSTREAM_REJECTED
    if failure in ("network", "timeout"):
        return FailureKind.UPSTREAM_UNAVAILABLE
    return FailureKind.MALFORMED_RESPONSE


@dataclass(frozen=True)
class SourceFailure:
    source: str
    kind: FailureKind
    message: str


@dataclass
class FetchResult:
    """Outcome of running an adapter's data sources."""

    usage: Optional[ServiceUsage] = None
    source: Optional[str] = None
    failures: List[SourceFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.usage is not None

    def add_failure(self, source: str, exc: BaseException) -> SourceFailure:
        failure = SourceFailure(source=source, kind=classify_exception(exc), message=str(exc) or type(exc).__name__)
        self.failures.append(failure)
        return failure

    def decisive_failure(self) -> Optional[SourceFailure]:
        if not self.failures:
            return None
        return max(self.failures, key=lambda f: FAILURE_PRECEDENCE.index(f.kind))
