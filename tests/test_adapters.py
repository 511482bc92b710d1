from typing import Any, Dict, List

import httpx
import pytest

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from providers.claude import ClaudeAdapter
from providers.cursor import CursorAdapter, format_membership
from providers.errors import CredentialNotFound, LocalToolMissing
from resilience import CircuitBreaker, CircuitBreakerConfig, CircuitState, RetryPolicy
from providers.base import trips_breaker
from state.credentials import CredentialStore
from state.models import CookieEntry, Credential

FAST_RETRY = RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0)


class _MockTransport(httpx.AsyncBaseTransport):
    def __init__(self, handlers: Dict[str, Any]):
        self.handlers = handlers
        self.calls: List[str] = []

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:  # type: ignore[override]
        key = f"{request.method} {request.url.path}"
        self.calls.append(key)
        handler = self.handlers.get(key)
        if handler is None:
            return httpx.Response(404, request=request, json={"error": "not found"})
        return await handler(request)


def _json(status: int, body: Any):
    async def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=body)

    return handler


def _session(name: str = "WorkosCursorSessionToken") -> Credential:
    return Credential(kind="cookie_set", cookies=[CookieEntry(name=name, value="s3cret")])


@pytest.fixture(autouse=True)
def _no_env_credentials(monkeypatch):
    for var in ("CURSOR_SESSION_COOKIE", "CLAUDE_SESSION_COOKIE"):
        monkeypatch.delenv(var, raising=False)


def _cursor(tmp_path, handlers, **kwargs):
    transport = _MockTransport(handlers)
    client = httpx.AsyncClient(transport=transport)
    adapter = CursorAdapter(
        store=CredentialStore(tmp_path), client=client, retry_policy=kwargs.pop("retry_policy", FAST_RETRY), **kwargs
    )
    return adapter, transport


SUMMARY = {
    "billingCycleEnd": "2024-02-01T00:00:00Z",
    "membershipType": "pro",
    "individualUsage": {
        "plan": {"used": 500, "limit": 2000},
        "onDemand": {"used": 10, "limit": 40},
    },
}


@pytest.mark.asyncio
async def test_cursor_fetch_success(tmp_path):
    adapter, transport = _cursor(
        tmp_path,
        {
            "GET /api/usage-summary": _json(200, SUMMARY),
            "GET /api/auth/me": _json(200, {"email": "dev@example.com"}),
        },
    )
    await adapter.store.save("cursor", _session())

    usage = await adapter.fetch_usage()
    assert usage.error is None
    assert usage.needs_login is False
    assert usage.primary.used_percent == 25.0
    assert usage.primary.reset_description == "Plan Usage"
    assert usage.secondary.used_percent == 25.0
    assert usage.account_email == "dev@example.com"
    assert usage.account_plan == "Pro"
    assert usage.dashboard_url == "https://cursor.com/settings"
    await adapter.aclose()


@pytest.mark.asyncio
async def test_cursor_sends_session_cookie(tmp_path):
    seen = {}

    async def summary(request: httpx.Request) -> httpx.Response:
        seen["cookie"] = request.headers.get("cookie")
        return httpx.Response(200, json=SUMMARY)

    adapter, _ = _cursor(tmp_path, {"GET /api/usage-summary": summary})
    await adapter.store.save("cursor", _session())
    await adapter.fetch_usage()
    assert seen["cookie"] == "WorkosCursorSessionToken=s3cret"


def test_cursor_hobby_message_and_fraction(tmp_path):
    adapter = CursorAdapter(store=CredentialStore(tmp_path))
    hobby = adapter.parse_usage_summary(
        {"membershipType": "hobby", "autoModelSelectedDisplayMessage": "You have 40 requests remaining"}
    )
    assert hobby.primary.used_percent == 20.0
    assert hobby.primary.reset_description == "Monthly Requests"
    assert hobby.account_plan == "Hobby (Free)"

    frac = adapter.parse_usage_summary({"individualUsage": {"plan": {"totalPercentUsed": 0.42}}})
    assert frac.primary.used_percent == pytest.approx(42.0)
    assert format_membership("ultra") == "Ultra"
    assert format_membership(None) == "Cursor"


@pytest.mark.asyncio
async def test_no_credential_needs_login(tmp_path):
    adapter, transport = _cursor(tmp_path, {})
    usage = await adapter.fetch_usage()
    assert usage.needs_login is True
    assert usage.primary is None
    assert usage.error == adapter.login_hint
    assert transport.calls == []


@pytest.mark.asyncio
async def test_unauthorized_invalidates_stored_session(tmp_path):
    adapter, transport = _cursor(tmp_path, {"GET /api/usage-summary": _json(401, {"error": "unauthorized"})})
    await adapter.store.save("cursor", _session())

    usage = await adapter.fetch_usage()
    assert usage.needs_login is True
    assert "session expired" in usage.error
    assert await adapter.store.load("cursor") is None
    # 401 is not retried
    assert transport.calls.count("GET /api/usage-summary") == 1


@pytest.mark.asyncio
async def test_unauthorized_env_cookie_is_not_deleted(tmp_path, monkeypatch):
    monkeypatch.setenv("CURSOR_SESSION_COOKIE", "WorkosCursorSessionToken=abc")
    adapter, _ = _cursor(tmp_path, {"GET /api/usage-summary": _json(401, {})})
    await adapter.store.save("cursor", _session())

    usage = await adapter.fetch_usage()
    assert usage.needs_login is True
    # the env credential won; the stored one belongs to a different strategy and survives
    assert await adapter.store.load("cursor") is not None


@pytest.mark.asyncio
async def test_network_error_keeps_credential_and_is_transient(tmp_path):
    async def broken(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection reset", request=request)

    adapter, transport = _cursor(tmp_path, {"GET /api/usage-summary": broken})
    await adapter.store.save("cursor", _session())

    usage = await adapter.fetch_usage()
    assert usage.error is not None
    assert usage.needs_login is False
    assert usage.primary is None
    assert await adapter.store.load("cursor") is not None
    assert transport.calls.count("GET /api/usage-summary") == 3


@pytest.mark.asyncio
async def test_malformed_body_maps_to_error_record(tmp_path):
    async def garbage(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>oops</html>")

    adapter, _ = _cursor(tmp_path, {"GET /api/usage-summary": garbage})
    await adapter.store.save("cursor", _session())

    usage = await adapter.fetch_usage()
    assert usage.error == "Could not read Cursor usage data"
    assert usage.needs_login is False
    assert await adapter.store.load("cursor") is not None


@pytest.mark.asyncio
async def test_breaker_opens_and_short_circuits(tmp_path):
    breaker = CircuitBreaker("cursor", CircuitBreakerConfig(failure_threshold=2), counts_as_failure=trips_breaker)
    adapter, transport = _cursor(
        tmp_path,
        {"GET /api/usage-summary": _json(503, {})},
        retry_policy=RetryPolicy(max_attempts=1),
        breaker=breaker,
    )
    await adapter.store.save("cursor", _session())

    await adapter.fetch_usage()
    await adapter.fetch_usage()
    assert breaker.state == CircuitState.OPEN

    before = transport.calls.count("GET /api/usage-summary")
    usage = await adapter.fetch_usage()
    assert transport.calls.count("GET /api/usage-summary") == before
    assert "temporarily unavailable" in usage.error
    assert usage.needs_login is False


@pytest.mark.asyncio
async def test_auth_failures_do_not_trip_breaker(tmp_path):
    breaker = CircuitBreaker("cursor", CircuitBreakerConfig(failure_threshold=1), counts_as_failure=trips_breaker)
    adapter, _ = _cursor(tmp_path, {"GET /api/usage-summary": _json(401, {})}, breaker=breaker)
    await adapter.store.save("cursor", _session())
    await adapter.fetch_usage()
    assert breaker.state == CircuitState.CLOSED


# Claude


def _claude(tmp_path, handlers):
    client = httpx.AsyncClient(transport=_MockTransport(handlers))
    return ClaudeAdapter(
        store=CredentialStore(tmp_path),
        client=client,
        retry_policy=RetryPolicy(max_attempts=1),
        claude_ai_url="https://claude.test",
        console_url="https://console.test/console",
    )


@pytest.mark.asyncio
async def test_claude_converts_percent_remaining(tmp_path):
    body = {
        "session_usage": {"percent_remaining": 70, "reset_at": "2024-01-01T05:00:00Z"},
        "weekly_usage": {"percent_remaining": 40},
        "plan": "Claude Max",
        "user": {"email": "me@example.com"},
    }
    adapter = _claude(tmp_path, {"GET /api/usage": _json(200, body)})
    await adapter.store.save("claude", _session("sessionKey"))

    usage = await adapter.fetch_usage()
    assert usage.primary.used_percent == 30.0
    assert usage.secondary.used_percent == 60.0
    assert usage.account_plan == "Claude Max"
    assert usage.account_email == "me@example.com"


@pytest.mark.asyncio
async def test_claude_falls_back_to_console(tmp_path):
    console = {"usage": {"session": {"percent_used": 12}}, "organization": {"name": "Acme"}}
    adapter = _claude(
        tmp_path,
        {
            "GET /api/usage": _json(500, {}),
            "GET /console/api/usage": _json(200, console),
        },
    )
    await adapter.store.save("claude", _session("sessionKey"))

    usage = await adapter.fetch_usage()
    assert usage.primary.used_percent == 12.0
    assert usage.account_plan == "Acme"
    assert usage.version == "console"


@pytest.mark.asyncio
async def test_claude_forbidden_keeps_session(tmp_path):
    adapter = _claude(
        tmp_path,
        {"GET /api/usage": _json(403, {}), "GET /console/api/usage": _json(403, {})},
    )
    await adapter.store.save("claude", _session("sessionKey"))

    usage = await adapter.fetch_usage()
    assert usage.error == "Logged in. Usage API not available for your plan."
    assert usage.needs_login is False
    assert await adapter.store.load("claude") is not None


@pytest.mark.asyncio
async def test_claude_cli_installed_but_signed_out(tmp_path, monkeypatch):
    async def fake_version(tool, timeout=5.0):
        return "1.0.3"

    monkeypatch.setattr("providers.claude.detect_version", fake_version)
    adapter = _claude(tmp_path, {})

    usage = await adapter.fetch_usage()
    assert usage.needs_login is True
    assert usage.primary is None
    assert usage.version == "1.0.3"
    assert "Claude CLI detected" in usage.error


@pytest.mark.asyncio
async def test_claude_nothing_available_prefers_login_hint(tmp_path, monkeypatch):
    async def no_cli(tool, timeout=5.0):
        return None

    monkeypatch.setattr("providers.claude.detect_version", no_cli)
    adapter = _claude(tmp_path, {})

    usage = await adapter.fetch_usage()
    assert usage.needs_login is True
    assert usage.error == adapter.login_hint


@pytest.mark.asyncio
async def test_fetch_usage_never_raises_on_adapter_bug(tmp_path, monkeypatch):
    adapter, _ = _cursor(tmp_path, {})

    async def broken_resolve():
        raise LocalToolMissing("resolver exploded")

    monkeypatch.setattr(adapter.resolver, "resolve", broken_resolve)
    usage = await adapter.fetch_usage()
    assert usage.error is not None
    assert usage.primary is None


@pytest.mark.asyncio
async def test_credentialed_source_without_credential_raises_not_found(tmp_path):
    adapter, transport = _cursor(tmp_path, {})
    with pytest.raises(CredentialNotFound) as excinfo:
        await adapter._fetch_usage_summary(None)
    assert str(excinfo.value) == adapter.login_hint
    assert transport.calls == []
