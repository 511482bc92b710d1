import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from state.models import Credential, ServiceUsage
from .base import DataSource, ServiceAdapter
from .errors import CredentialNotFound, LocalToolMissing, MalformedResponse
from .normalize import parse_timestamp, window_from_used_limit
from .process import CommandFailed, detect_version, run_command
from .resolver import ConfigFile, EnvOverride, ResolutionStrategy, app_data_dirs

logger = logging.getLogger(__name__)


def _gemini_token(data: Any) -> Optional[Credential]:
    if not isinstance(data, dict) or not data.get("access_token"):
        return None
    return Credential(
        kind="oauth_token",
        token=data["access_token"],
        refresh_token=data.get("refresh_token"),
        expires_at=parse_timestamp(data.get("token_expiry")),
    )


class GeminiAdapter(ServiceAdapter):
    """Gemini quota via the Gemini CLI's OAuth token, falling back to ``gemini quota --json``."""

    service_id = "gemini"
    display_name = "Gemini"
    login_hint = 'Could not fetch Gemini quota. Run "gemini login" to authenticate.'

    def __init__(
        self,
        *args: Any,
        api_url: str = "https://generativelanguage.googleapis.com",
        command_timeout: float = 10.0,
        **kwargs: Any,
    ) -> None:
        self._api_url = api_url.rstrip("/")
        self._command_timeout = command_timeout
        super().__init__(*args, **kwargs)

    def credential_strategies(self) -> List[ResolutionStrategy]:
        paths = [d / "credentials.json" for d in app_data_dirs("gemini")]
        paths.append(Path.home() / ".gemini" / "credentials.json")
        return [EnvOverride("GEMINI_ACCESS_TOKEN", kind="oauth_token"), ConfigFile(paths, _gemini_token)]

    def data_sources(self) -> List[DataSource]:
        return [
            DataSource("api", self._fetch_api),
            DataSource("cli", self._fetch_cli, needs_credential=False),
        ]

    async def is_available(self) -> bool:
        if await detect_version("gemini") is not None:
            return True
        return await self.resolver.probe()

    async def _fetch_api(self, credential: Optional[Credential]) -> ServiceUsage:
        credential = self._require_credential(credential)
        headers = {"Authorization": f"Bearer {credential.token}", "Content-Type": "application/json"}
        data = await self._get_json(f"{self._api_url}/v1/quota", headers)
        version = await detect_version("gemini") or "api"
        return self.parse_quota(data, version)

    async def _fetch_cli(self, credential: Optional[Credential]) -> ServiceUsage:
        version = await detect_version("gemini")
        if version is None:
            raise LocalToolMissing("Gemini CLI not found. Install it from Google.")
        try:
            out = await run_command(["gemini", "quota", "--json"], timeout=self._command_timeout)
        except CommandFailed as e:
            logger.debug("gemini quota failed: %s", e)
            raise CredentialNotFound(self.login_hint) from e
        try:
            data = json.loads(out)
        except ValueError as e:
            raise MalformedResponse("gemini quota printed invalid JSON") from e
        return self.parse_cli(data, version)

    def parse_quota(self, data: Dict[str, Any], version: str) -> ServiceUsage:
        quotas = [q for q in data.get("quotas") or [] if isinstance(q, dict)]
        requests = next((q for q in quotas if "requests" in str(q.get("metric") or "")), None)
        tokens = next((q for q in quotas if "tokens" in str(q.get("metric") or "")), None)
        if requests is None and tokens is None:
            raise MalformedResponse("Gemini quota response has no request or token quota")

        windows = [
            window_from_used_limit(q.get("usage"), q.get("limit"), q.get("reset_time"), label)
            for q, label in ((requests, "Requests"), (tokens, "Tokens"))
            if q is not None
        ]
        return self.usage(
            primary=windows[0],
            secondary=windows[1] if len(windows) > 1 else None,
            account_email=(data.get("user") or {}).get("email"),
            version=version,
        )

    def parse_cli(self, data: Any, version: str) -> ServiceUsage:
        if not isinstance(data, dict) or not isinstance(data.get("requests"), dict):
            raise MalformedResponse("gemini quota output has no request quota")
        req = data["requests"]
        return self.usage(
            primary=window_from_used_limit(req.get("used"), req.get("limit"), req.get("reset_at"), "Requests"),
            account_email=data.get("email"),
            version=version,
        )
