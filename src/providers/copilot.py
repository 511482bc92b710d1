import asyncio
import logging
import time
from datetime import timedelta
from typing import Any, Dict, List, Optional

import httpx

from state.models import Credential, ServiceUsage, utcnow
from .base import DataSource, ServiceAdapter
from .errors import MalformedResponse, SessionExpired, UpstreamRejected, UpstreamUnavailable, raise_for_status
from .login import LoginCancelled, LoginFlow, LoginPrompt
from .normalize import window_from_used_limit
from .resolver import (
    CommandToken,
    ConfigFile,
    EnvOverride,
    ResolutionStrategy,
    StoredSession,
    app_data_dirs,
)

logger = logging.getLogger(__name__)

GITHUB_CLIENT_ID = "Iv1.b507a08c87ecfe98"
DEVICE_GRANT = "urn:ietf:params:oauth:grant-type:device_code"


def _hosts_token(data: Any) -> Optional[Credential]:
    if not isinstance(data, dict):
        return None
    for host, entry in data.items():
        if "github.com" in host and isinstance(entry, dict) and entry.get("oauth_token"):
            return Credential(kind="oauth_token", token=entry["oauth_token"], account=entry.get("user"))
    return None


class CopilotAdapter(ServiceAdapter):
    """GitHub Copilot usage from the Copilot usage API.

    Token chain: COPILOT_API_TOKEN, a token saved by the device-flow login,
    ``gh auth token``, then the Copilot editor plugin's hosts.json.
    """

    service_id = "copilot"
    display_name = "GitHub Copilot"
    dashboard_url = "https://github.com/settings/copilot"
    status_page_url = "https://www.githubstatus.com"
    login_hint = "Copilot token not found. Set COPILOT_API_TOKEN or login via GitHub CLI."
    supports_login = True

    def __init__(
        self,
        *args: Any,
        api_url: str = "https://api.github.com",
        github_url: str = "https://github.com",
        client_id: str = GITHUB_CLIENT_ID,
        **kwargs: Any,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._github_url = github_url.rstrip("/")
        self._client_id = client_id
        super().__init__(*args, **kwargs)

    def credential_strategies(self) -> List[ResolutionStrategy]:
        hosts = [d / "hosts.json" for d in app_data_dirs("github-copilot", "GitHub Copilot")]
        return [
            EnvOverride("COPILOT_API_TOKEN"),
            StoredSession(self._store, self.service_id),
            CommandToken(["gh", "auth", "token"]),
            ConfigFile(hosts, _hosts_token),
        ]

    def data_sources(self) -> List[DataSource]:
        return [DataSource("api", self._fetch_api)]

    async def _fetch_api(self, credential: Optional[Credential]) -> ServiceUsage:
        credential = self._require_credential(credential)
        headers = {
            "Authorization": f"Bearer {credential.token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        }
        resp = await self._get_client().get(f"{self._api_url}/copilot/usage", headers=headers, timeout=self._timeout)
        if resp.status_code == 404:
            raise UpstreamRejected("Copilot usage API not available for your account.", 404)
        return self.parse_usage(self._json_body(resp))

    def parse_usage(self, data: Dict[str, Any]) -> ServiceUsage:
        usage = data.get("usage") or {}
        current = usage.get("current_period")
        monthly = usage.get("monthly")
        if not isinstance(current, dict) and not isinstance(monthly, dict):
            raise MalformedResponse("Copilot usage response has no usage periods")

        windows = []
        if isinstance(current, dict):
            windows.append(
                window_from_used_limit(current.get("used"), current.get("limit"), current.get("resets_at"), "Current Period")
            )
        if isinstance(monthly, dict):
            windows.append(window_from_used_limit(monthly.get("used"), monthly.get("limit"), monthly.get("resets_at"), "Monthly"))

        user = data.get("user") or {}
        return self.usage(
            primary=windows[0],
            secondary=windows[1] if len(windows) > 1 else None,
            account_email=user.get("login"),
            account_plan=user.get("plan") or "Copilot",
            version="api",
        )

    # Device authorization login

    async def start_login(self) -> LoginPrompt:
        try:
            resp = await self._get_client().post(
                f"{self._github_url}/login/device/code",
                data={"client_id": self._client_id, "scope": "read:user"},
                headers={"Accept": "application/json"},
                timeout=self._timeout,
            )
        except httpx.TransportError as e:
            raise UpstreamUnavailable(f"Could not reach GitHub to start device login: {e}") from e
        data = self._json_body(resp)
        device_code = data.get("device_code")
        if not device_code:
            raise MalformedResponse("GitHub device login response has no device code")
        try:
            expires_in = int(data.get("expires_in") or 900)
            interval = float(data["interval"]) if data.get("interval") is not None else 5.0
        except (TypeError, ValueError) as e:
            raise MalformedResponse("GitHub device login response has invalid timing fields") from e
        prompt = LoginPrompt(
            service_id=self.service_id,
            method="device_code",
            url=data.get("verification_uri") or f"{self._github_url}/login/device",
            user_code=data.get("user_code"),
            expires_at=utcnow() + timedelta(seconds=expires_in),
        )

        async def poll() -> Credential:
            return await self._poll_device_token(device_code, interval, expires_in)

        flow = self._replace_login(LoginFlow(prompt, on_success=self._save_credential, poller=poll))
        logger.info("Started %s device login; code expires in %ds", self.service_id, expires_in)
        return flow.prompt

    async def _poll_device_token(self, device_code: str, interval: float, expires_in: float) -> Credential:
        deadline = time.monotonic() + expires_in
        while time.monotonic() < deadline:
            await asyncio.sleep(interval)
            try:
                resp = await self._get_client().post(
                    f"{self._github_url}/login/oauth/access_token",
                    data={"client_id": self._client_id, "device_code": device_code, "grant_type": DEVICE_GRANT},
                    headers={"Accept": "application/json"},
                    timeout=self._timeout,
                )
                raise_for_status(resp, self.display_name)
                data = resp.json()
            except (UpstreamUnavailable, httpx.TransportError) as e:
                logger.debug("Device token poll failed, retrying: %s", e)
                continue
            if data.get("access_token"):
                return Credential(kind="oauth_token", token=data["access_token"], source="login")
            error = data.get("error")
            if error == "authorization_pending":
                continue
            if error == "slow_down":
                interval = float(data.get("interval") or interval + 5)
                continue
            if error == "access_denied":
                raise LoginCancelled("GitHub authorization was denied")
            if error == "expired_token":
                break
            raise UpstreamRejected(f"GitHub device login failed: {error or 'unexpected response'}")
        raise SessionExpired("GitHub device code expired before authorization")
