import json
import os
import stat
from datetime import timedelta
from typing import Optional

import pytest

# Ensure import path includes src
import sys
from pathlib import Path
sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from providers.resolver import (
    ConfigFile,
    CredentialResolver,
    EnvOverride,
    ResolutionStrategy,
    StoredSession,
    parse_cookie_header,
)
from providers.cursor import CursorAdapter
from state.credentials import CredentialStore
from state.models import CookieEntry, Credential, utcnow


class _Static(ResolutionStrategy):
    def __init__(self, name: str, credential: Optional[Credential]):
        self.name = name
        self.credential = credential
        self.calls = 0

    async def resolve(self) -> Optional[Credential]:
        self.calls += 1
        return self.credential


class _Exploding(ResolutionStrategy):
    name = "exploding"

    async def resolve(self) -> Optional[Credential]:
        raise RuntimeError("keychain locked")


@pytest.mark.asyncio
async def test_store_round_trip_and_permissions(tmp_path):
    store = CredentialStore(tmp_path)
    await store.save("cursor", Credential(kind="bearer_token", token="t0k"))

    path = store.path_for("cursor")
    assert path.exists()
    if os.name == "posix":
        assert stat.S_IMODE(path.stat().st_mode) == 0o600

    record = await store.load("cursor")
    assert record is not None
    assert record.credential.token == "t0k"
    assert record.service_id == "cursor"

    assert await store.delete("cursor") is True
    assert await store.load("cursor") is None
    assert await store.delete("cursor") is False


@pytest.mark.asyncio
async def test_store_ignores_corrupt_file(tmp_path):
    store = CredentialStore(tmp_path)
    store.path_for("claude").parent.mkdir(parents=True)
    store.path_for("claude").write_text("{not json", encoding="utf-8")
    assert await store.load("claude") is None


@pytest.mark.asyncio
async def test_resolver_returns_first_success_in_order():
    first = _Static("a", None)
    second = _Static("b", Credential(kind="bearer_token", token="B"))
    third = _Static("c", Credential(kind="bearer_token", token="C"))
    resolver = CredentialResolver("svc", [first, second, third])
    cred = await resolver.resolve()
    assert cred.token == "B"
    assert third.calls == 0


@pytest.mark.asyncio
async def test_resolver_exhausted_is_none_not_error():
    resolver = CredentialResolver("svc", [_Static("a", None), _Exploding()])
    assert await resolver.resolve() is None
    assert await resolver.probe() is False


@pytest.mark.asyncio
async def test_expired_stored_session_is_deleted_and_chain_continues(tmp_path):
    store = CredentialStore(tmp_path)
    expired = Credential(kind="bearer_token", token="old", expires_at=utcnow() - timedelta(minutes=1))
    await store.save("svc", expired)

    fallback = _Static("fallback", Credential(kind="bearer_token", token="fresh"))
    resolver = CredentialResolver("svc", [StoredSession(store, "svc"), fallback])

    cred = await resolver.resolve()
    assert cred.token == "fresh"
    assert await store.load("svc") is None


@pytest.mark.asyncio
async def test_stored_session_drops_expired_cookies(tmp_path):
    store = CredentialStore(tmp_path)
    cookies = [
        CookieEntry(name="old", value="1", expires_at=utcnow() - timedelta(days=1)),
        CookieEntry(name="sessionKey", value="abc", expires_at=utcnow() + timedelta(days=1)),
    ]
    await store.save("claude", Credential(kind="cookie_set", cookies=cookies))

    cred = await StoredSession(store, "claude").resolve()
    assert [c.name for c in cred.cookies] == ["sessionKey"]
    assert cred.source == "stored"


@pytest.mark.asyncio
async def test_cookie_set_with_only_expired_cookies_is_removed(tmp_path):
    store = CredentialStore(tmp_path)
    cookies = [CookieEntry(name="sessionKey", value="abc", expires_at=utcnow() - timedelta(seconds=1))]
    await store.save("claude", Credential(kind="cookie_set", cookies=cookies))
    assert await StoredSession(store, "claude").resolve() is None
    assert not store.path_for("claude").exists()


@pytest.mark.asyncio
async def test_stored_session_probe_leaves_expired_record_in_place(tmp_path):
    store = CredentialStore(tmp_path)
    cookies = [CookieEntry(name="sessionKey", value="abc", expires_at=utcnow() - timedelta(seconds=1))]
    await store.save("claude", Credential(kind="cookie_set", cookies=cookies))

    assert await StoredSession(store, "claude").probe() is False
    assert store.path_for("claude").exists()

    await store.save("claude", Credential(kind="bearer_token", token="t", expires_at=utcnow() + timedelta(hours=1)))
    assert await StoredSession(store, "claude").probe() is True


@pytest.mark.asyncio
async def test_adapter_availability_check_does_not_delete_credentials(tmp_path, monkeypatch):
    monkeypatch.delenv("CURSOR_SESSION_COOKIE", raising=False)
    store = CredentialStore(tmp_path)
    expired = [CookieEntry(name="WorkosCursorSessionToken", value="abc", expires_at=utcnow() - timedelta(minutes=5))]
    await store.save("cursor", Credential(kind="cookie_set", cookies=expired))

    adapter = CursorAdapter(store=store)
    assert await adapter.is_available() is False
    assert store.path_for("cursor").exists()

    # a real fetch still self-heals
    usage = await adapter.fetch_usage()
    assert usage.needs_login is True
    assert not store.path_for("cursor").exists()


@pytest.mark.asyncio
async def test_env_override(monkeypatch):
    monkeypatch.setenv("SOME_TOKEN", "  abc  ")
    cred = await EnvOverride("SOME_TOKEN").resolve()
    assert cred.token == "abc"
    assert cred.auth_headers() == {"Authorization": "Bearer abc"}

    monkeypatch.setenv("SOME_COOKIE", "a=1; sessionKey=xyz")
    cred = await EnvOverride("SOME_COOKIE", kind="cookie_set").resolve()
    assert cred.cookie_header() == "a=1; sessionKey=xyz"

    monkeypatch.delenv("SOME_TOKEN")
    assert await EnvOverride("SOME_TOKEN").resolve() is None


@pytest.mark.asyncio
async def test_config_file_skips_expired_without_deleting(tmp_path):
    expired = tmp_path / "a.json"
    expired.write_text(json.dumps({"token": "old", "expiry": (utcnow() - timedelta(hours=1)).isoformat()}))
    valid = tmp_path / "b.json"
    valid.write_text(json.dumps({"token": "new"}))

    def extract(data):
        return Credential(kind="oauth_token", token=data["token"], expires_at=data.get("expiry"))

    cred = await ConfigFile([tmp_path / "missing.json", expired, valid], extract).resolve()
    assert cred.token == "new"
    assert cred.source == f"file:{valid}"
    assert expired.exists()


def test_parse_cookie_header():
    cookies = parse_cookie_header("a=1; b = two ;junk; c=")
    assert [(c.name, c.value) for c in cookies] == [("a", "1"), ("b", "two"), ("c", "")]
