import asyncio
from typing import Any, Dict, List

import httpx
import pytest

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from providers.base import LoginNotSupported
from providers.codex import CodexAdapter
from providers.copilot import CopilotAdapter
from providers.cursor import CursorAdapter
from providers.errors import MalformedResponse, UpstreamRejected
from providers.login import LoginCancelled
from state.credentials import CredentialStore


class _MockTransport(httpx.AsyncBaseTransport):
    def __init__(self, handlers: Dict[str, Any]):
        self.handlers = handlers

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:  # type: ignore[override]
        key = f"{request.method} {request.url.path}"
        handler = self.handlers.get(key)
        if handler is None:
            return httpx.Response(404, request=request, json={"error": "not found"})
        return await handler(request)


@pytest.fixture
def opened(monkeypatch) -> List[str]:
    urls: List[str] = []
    monkeypatch.setattr("providers.browser_session.webbrowser.open", lambda url: urls.append(url) or True)
    return urls


@pytest.mark.asyncio
async def test_browser_login_hand_back_persists_cookies(tmp_path, opened):
    adapter = CursorAdapter(store=CredentialStore(tmp_path))
    prompt = await adapter.start_login()
    assert prompt.method == "browser"
    assert opened == [adapter.login_url]

    waiter = asyncio.create_task(adapter.wait_for_login(timeout=5))
    await asyncio.sleep(0)
    await adapter.complete_login({"cookie_header": "WorkosCursorSessionToken=abc; theme=dark"})

    credential = await waiter
    assert credential.kind == "cookie_set"
    assert await adapter.has_stored_session() is True
    assert adapter.pending_login is None


@pytest.mark.asyncio
async def test_browser_login_filters_cookies_by_domain(tmp_path, opened):
    adapter = CursorAdapter(store=CredentialStore(tmp_path))
    credential = await adapter.complete_login(
        {
            "cookies": [
                {"name": "WorkosCursorSessionToken", "value": "abc", "domain": ".cursor.com"},
                {"name": "tracker", "value": "x", "domain": ".ads.example"},
            ]
        }
    )
    assert [c.name for c in credential.cookies] == ["WorkosCursorSessionToken"]
    record = await adapter.store.load("cursor")
    assert record.credential.cookies[0].value == "abc"


@pytest.mark.asyncio
async def test_browser_login_requires_session_cookie(tmp_path, opened):
    adapter = CursorAdapter(store=CredentialStore(tmp_path))
    with pytest.raises(UpstreamRejected):
        await adapter.complete_login({"cookie_header": "theme=dark"})
    assert await adapter.store.load("cursor") is None


@pytest.mark.asyncio
async def test_login_wait_times_out_and_can_be_cancelled(tmp_path, opened):
    adapter = CursorAdapter(store=CredentialStore(tmp_path))
    await adapter.start_login()
    flow = adapter.pending_login

    with pytest.raises(asyncio.TimeoutError):
        await adapter.wait_for_login(timeout=0.01)
    assert adapter.pending_login is flow

    adapter.cancel_login()
    with pytest.raises(LoginCancelled):
        await flow.wait(timeout=1)
    assert adapter.pending_login is None


@pytest.mark.asyncio
async def test_logout_removes_stored_session(tmp_path, opened):
    adapter = CursorAdapter(store=CredentialStore(tmp_path))
    await adapter.complete_login({"cookie_header": "WorkosCursorSessionToken=abc"})
    assert await adapter.logout() is True
    assert await adapter.has_stored_session() is False


@pytest.mark.asyncio
async def test_login_not_supported(tmp_path):
    adapter = CodexAdapter(store=CredentialStore(tmp_path))
    with pytest.raises(LoginNotSupported):
        await adapter.start_login()
    with pytest.raises(LookupError):
        await adapter.wait_for_login(timeout=1)


def _device_transport(token_replies: List[Dict[str, Any]]) -> _MockTransport:
    async def device_code(request: httpx.Request) -> httpx.Response:
        assert b"client_id=" in request.content
        return httpx.Response(
            200,
            json={
                "device_code": "dev-123",
                "user_code": "ABCD-1234",
                "verification_uri": "https://github.com/login/device",
                "expires_in": 900,
                "interval": 0,
            },
        )

    async def access_token(request: httpx.Request) -> httpx.Response:
        assert b"device_code=dev-123" in request.content
        reply = token_replies.pop(0) if len(token_replies) > 1 else token_replies[0]
        return httpx.Response(200, json=reply)

    return _MockTransport(
        {
            "POST /login/device/code": device_code,
            "POST /login/oauth/access_token": access_token,
        }
    )


@pytest.mark.asyncio
async def test_copilot_device_flow_saves_token(tmp_path):
    transport = _device_transport(
        [{"error": "authorization_pending"}, {"error": "authorization_pending"}, {"access_token": "gho_new"}]
    )
    adapter = CopilotAdapter(store=CredentialStore(tmp_path), client=httpx.AsyncClient(transport=transport))

    prompt = await adapter.start_login()
    assert prompt.method == "device_code"
    assert prompt.user_code == "ABCD-1234"
    assert prompt.expires_at is not None

    credential = await adapter.wait_for_login(timeout=5)
    assert credential.token == "gho_new"
    record = await adapter.store.load("copilot")
    assert record.credential.token == "gho_new"


@pytest.mark.asyncio
async def test_copilot_device_flow_denied(tmp_path):
    transport = _device_transport([{"error": "access_denied"}])
    adapter = CopilotAdapter(store=CredentialStore(tmp_path), client=httpx.AsyncClient(transport=transport))
    await adapter.start_login()
    with pytest.raises(LoginCancelled):
        await adapter.wait_for_login(timeout=5)
    assert await adapter.store.load("copilot") is None


@pytest.mark.asyncio
async def test_copilot_device_flow_cancel_stops_polling(tmp_path):
    transport = _device_transport([{"error": "authorization_pending"}])
    adapter = CopilotAdapter(store=CredentialStore(tmp_path), client=httpx.AsyncClient(transport=transport))
    await adapter.start_login()
    flow = adapter.pending_login
    await asyncio.sleep(0.01)

    adapter.cancel_login()
    with pytest.raises(LoginCancelled):
        await flow.wait(timeout=1)
    await asyncio.sleep(0)
    assert await adapter.store.load("copilot") is None


@pytest.mark.asyncio
async def test_starting_login_again_replaces_pending_browser_flow(tmp_path, opened):
    adapter = CursorAdapter(store=CredentialStore(tmp_path))
    await adapter.start_login()
    first = adapter.pending_login

    await adapter.start_login()
    second = adapter.pending_login
    assert second is not first
    with pytest.raises(LoginCancelled):
        await first.wait(timeout=1)

    await adapter.complete_login({"cookie_header": "WorkosCursorSessionToken=abc"})
    assert await second.wait(timeout=1) is not None


@pytest.mark.asyncio
async def test_starting_device_login_again_cancels_first_poller(tmp_path):
    transport = _device_transport([{"error": "authorization_pending"}])
    adapter = CopilotAdapter(store=CredentialStore(tmp_path), client=httpx.AsyncClient(transport=transport))
    await adapter.start_login()
    first = adapter.pending_login
    first_task = first._task
    await asyncio.sleep(0.01)

    await adapter.start_login()
    assert adapter.pending_login is not first
    with pytest.raises(LoginCancelled):
        await first.wait(timeout=1)
    await asyncio.wait([first_task], timeout=1)
    assert first_task.cancelled()

    adapter.cancel_login()


@pytest.mark.asyncio
async def test_device_login_rejects_malformed_start_response(tmp_path):
    async def no_code(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"user_code": "ABCD-1234"})

    async def not_json(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>rate limited</html>")

    for handler in (no_code, not_json):
        transport = _MockTransport({"POST /login/device/code": handler})
        adapter = CopilotAdapter(store=CredentialStore(tmp_path), client=httpx.AsyncClient(transport=transport))
        with pytest.raises(MalformedResponse):
            await adapter.start_login()
        assert adapter.pending_login is None
