import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from state.models import Credential, ServiceUsage
from .base import DataSource, ServiceAdapter
from .errors import MalformedResponse
from .normalize import window_from_percent_or_pair, window_from_used_limit
from .resolver import ConfigFile, EnvOverride, ResolutionStrategy, app_data_dirs

logger = logging.getLogger(__name__)


def _zai_token(data: Any) -> Optional[Credential]:
    if not isinstance(data, dict):
        return None
    token = data.get("api_token") or data.get("apiToken") or data.get("token")
    return Credential(kind="bearer_token", token=token) if token else None


class ZaiAdapter(ServiceAdapter):
    """z.ai quota and MCP windows, authenticated with an API token."""

    service_id = "zai"
    display_name = "z.ai"
    login_hint = "Set ZAI_API_TOKEN or configure in settings"
    session_expired_message = "z.ai token invalid or expired."

    def __init__(self, *args: Any, api_url: str = "https://api.z.ai", **kwargs: Any) -> None:
        self._api_url = api_url.rstrip("/")
        super().__init__(*args, **kwargs)

    def credential_strategies(self) -> List[ResolutionStrategy]:
        paths = [d / "config.json" for d in app_data_dirs("zai")]
        paths.append(Path.home() / ".zai" / "config.json")
        return [EnvOverride("ZAI_API_TOKEN"), ConfigFile(paths, _zai_token)]

    def data_sources(self) -> List[DataSource]:
        return [DataSource("api", self._fetch_api)]

    async def _fetch_api(self, credential: Optional[Credential]) -> ServiceUsage:
        credential = self._require_credential(credential)
        headers = {"Authorization": f"Bearer {credential.token}", "Content-Type": "application/json"}
        return self.parse_usage(await self._get_json(f"{self._api_url}/v1/usage", headers))

    def parse_usage(self, data: Dict[str, Any]) -> ServiceUsage:
        quota = data.get("quota")
        if not isinstance(quota, dict):
            raise MalformedResponse("z.ai usage response has no quota")
        primary = window_from_percent_or_pair(
            quota.get("percent_used"), quota.get("used"), quota.get("limit"), quota.get("reset_at"), "Quota"
        )

        secondary = None
        mcp_windows = (data.get("mcp") or {}).get("windows") or []
        if mcp_windows and isinstance(mcp_windows[0], dict):
            mcp = mcp_windows[0]
            secondary = window_from_used_limit(mcp.get("used"), mcp.get("limit"), mcp.get("reset_at"), mcp.get("name") or "MCP")

        user = data.get("user") or {}
        return self.usage(
            primary=primary,
            secondary=secondary,
            account_email=user.get("email"),
            account_plan=user.get("plan"),
            version="api",
        )
