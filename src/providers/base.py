from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from resilience import CircuitBreaker, CircuitBreakerConfig, RetryPolicy, retry_with_backoff
from state.credentials import CredentialStore
from state.models import Credential, ServiceIdentity, ServiceUsage, utcnow
from .errors import (
    CredentialNotFound,
    FailureKind,
    FetchResult,
    MalformedResponse,
    classify_exception,
    raise_for_status,
)
from .login import LoginFlow, LoginPrompt
from .resolver import CredentialResolver, ResolutionStrategy

logger = logging.getLogger(__name__)

BROWSER_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"


class LoginNotSupported(Exception):
    pass


@dataclass
class DataSource:
    """One way of obtaining usage for a service.

    ``fetch`` receives the resolved credential (None if nothing resolved) and
    always runs inside the service's retry policy and circuit breaker.
    ``invalidates_session`` says whether a 401/403 from this source
    proves the stored session dead. ``when_signed_out`` sources only run when
    no credential is available (placeholders such as "CLI installed, not
    signed in").
    """

    name: str
    fetch: Callable[[Optional[Credential]], Awaitable[ServiceUsage]]
    needs_credential: bool = True
    invalidates_session: bool = True
    when_signed_out: bool = False


class ServiceAdapter(ABC):
    """Base class for service adapters.

    Subclasses declare their credential chain and ordered data sources;
    ``fetch_usage`` runs the chain and always returns a ServiceUsage.
    """

    service_id: str = "service"
    display_name: str = "Service"
    dashboard_url: Optional[str] = None
    status_page_url: Optional[str] = None
    login_hint: str = "Sign in to view usage"
    session_expired_message: Optional[str] = None
    supports_login: bool = False

    def __init__(
        self,
        store: Optional[CredentialStore] = None,
        client: Optional[httpx.AsyncClient] = None,
        retry_policy: Optional[RetryPolicy] = None,
        breaker: Optional[CircuitBreaker] = None,
        timeout: float = 10.0,
    ) -> None:
        self._store = store or CredentialStore()
        self._client = client  # may be injected for tests
        self._timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.breaker = breaker or CircuitBreaker(
            self.service_id, CircuitBreakerConfig(), counts_as_failure=trips_breaker
        )
        self.resolver = CredentialResolver(self.service_id, self.credential_strategies())
        self._login: Optional[LoginFlow] = None

    @property
    def identity(self) -> ServiceIdentity:
        return ServiceIdentity(id=self.service_id, display_name=self.display_name)

    @property
    def store(self) -> CredentialStore:
        return self._store

    def credential_strategies(self) -> List[ResolutionStrategy]:
        return []

    @abstractmethod
    def data_sources(self) -> List[DataSource]:
        """Ordered data sources; the first one producing usage wins."""

    async def is_available(self) -> bool:
        return await self.resolver.probe()

    async def fetch_usage(self) -> ServiceUsage:
        try:
            credential = await self.resolver.resolve()
            result = await self._run_sources(credential)
        except Exception as e:
            logger.exception("Unexpected error fetching %s usage: %s", self.service_id, e)
            result = FetchResult()
            result.add_failure("adapter", e)
        return self._finalize(result)

    async def _run_sources(self, credential: Optional[Credential]) -> FetchResult:
        result = FetchResult()
        for source in self.data_sources():
            if source.when_signed_out and credential is not None:
                continue
            if source.needs_credential and credential is None:
                if not any(f.kind == FailureKind.CREDENTIAL_NOT_FOUND for f in result.failures):
                    result.add_failure(source.name, CredentialNotFound(self.login_hint))
                continue
            logger.debug("Fetching %s usage via %s", self.service_id, source.name)
            try:
                usage = await self._call(source, credential)
            except Exception as e:
                failure = result.add_failure(source.name, e)
                logger.warning("%s source %s failed (%s): %s", self.service_id, source.name, failure.kind.value, e)
                if failure.kind == FailureKind.SESSION_EXPIRED and source.invalidates_session and credential:
                    await self.invalidate_credential(credential)
                    credential = None
                continue
            result.usage = usage
            result.source = source.name
            logger.info("Fetched %s usage via %s", self.service_id, source.name)
            return result
        return result

    async def _call(self, source: DataSource, credential: Optional[Credential]) -> ServiceUsage:
        async def attempt() -> ServiceUsage:
            return await source.fetch(credential)

        async def with_retry() -> ServiceUsage:
            return await retry_with_backoff(attempt, self.retry_policy, name=f"{self.service_id}:{source.name}")

        return await self.breaker.execute(with_retry)

    def _finalize(self, result: FetchResult) -> ServiceUsage:
        """Map the outcome of a fetch onto the canonical record."""
        now = utcnow()
        if result.usage is not None:
            return result.usage.model_copy(update={"updated_at": now})

        failure = result.decisive_failure()
        kind = failure.kind if failure else FailureKind.CREDENTIAL_NOT_FOUND
        message = failure.message if failure else self.login_hint
        needs_login = False
        if kind == FailureKind.CREDENTIAL_NOT_FOUND:
            error, needs_login = self.login_hint, True
        elif kind == FailureKind.SESSION_EXPIRED:
            error = self.session_expired_message or f"{self.display_name} session expired. {self.login_hint}"
            needs_login = True
        elif kind == FailureKind.UPSTREAM_UNAVAILABLE:
            error = f"{self.display_name} is temporarily unavailable: {message}"
        elif kind == FailureKind.UPSTREAM_REJECTED:
            error = message
        elif kind == FailureKind.LOCAL_TOOL_MISSING:
            error = message
        elif kind == FailureKind.CIRCUIT_OPEN:
            error = f"{self.display_name} is temporarily unavailable; will retry shortly"
        else:
            error = f"Could not read {self.display_name} usage data"
        return self.usage(error=error, needs_login=needs_login, updated_at=now)

    def usage(self, **fields: Any) -> ServiceUsage:
        """Build a record for this service with its identity and links filled in."""
        fields.setdefault("dashboard_url", self.dashboard_url)
        fields.setdefault("status_page_url", self.status_page_url)
        return ServiceUsage(service_id=self.service_id, display_name=self.display_name, **fields)

    async def invalidate_credential(self, credential: Credential) -> None:
        if credential.source == "stored":
            logger.info("Invalidating stored %s session after unauthorized response", self.service_id)
            await self._store.delete(self.service_id)
        else:
            logger.info("%s credential from %s was rejected; not owned here", self.service_id, credential.source)

    async def logout(self) -> bool:
        self.cancel_login()
        return await self._store.delete(self.service_id)

    # Login flow

    async def start_login(self) -> LoginPrompt:
        raise LoginNotSupported(f"{self.display_name} does not support interactive login")

    async def complete_login(self, payload: Dict[str, Any]) -> Credential:
        raise LoginNotSupported(f"{self.display_name} does not accept a login hand-back")

    @property
    def pending_login(self) -> Optional[LoginFlow]:
        if self._login is not None and self._login.done:
            return None
        return self._login

    def _replace_login(self, flow: LoginFlow) -> LoginFlow:
        self.cancel_login()
        self._login = flow
        return flow

    def cancel_login(self) -> None:
        if self._login is not None and not self._login.done:
            logger.info("Cancelling pending %s login", self.service_id)
            self._login.cancel()
        self._login = None

    async def wait_for_login(self, timeout: float) -> Credential:
        flow = self.pending_login
        if flow is None:
            raise LookupError(f"No pending login for {self.service_id}")
        return await flow.wait(timeout)

    async def _save_credential(self, credential: Credential) -> None:
        await self._store.save(self.service_id, credential)

    def _require_credential(self, credential: Optional[Credential]) -> Credential:
        if credential is None:
            raise CredentialNotFound(self.login_hint)
        return credential

    # HTTP helpers

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self._client

    async def _get_json(self, url: str, headers: Dict[str, str]) -> Dict[str, Any]:
        resp = await self._get_client().get(url, headers=headers, timeout=self._timeout)
        return self._json_body(resp)

    def _json_body(self, resp: httpx.Response) -> Dict[str, Any]:
        raise_for_status(resp, self.display_name)
        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponse(f"{self.display_name} returned a non-JSON body") from e
        if not isinstance(data, dict):
            raise MalformedResponse(f"{self.display_name} returned an unexpected payload")
        return data

    async def aclose(self) -> None:
        self.cancel_login()
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def trips_breaker(exc: BaseException) -> bool:
    """Only failures that say the dependency is unhealthy count toward opening the circuit."""
    return classify_exception(exc) in (FailureKind.UPSTREAM_UNAVAILABLE, FailureKind.MALFORMED_RESPONSE)
