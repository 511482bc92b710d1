import logging
from typing import Any, Dict, List, Optional

from state.models import Credential, ServiceUsage
from .base import DataSource, ServiceAdapter
from .errors import MalformedResponse
from .normalize import window_from_percent_or_pair
from .resolver import ConfigFile, EnvOverride, ResolutionStrategy, app_data_dirs

logger = logging.getLogger(__name__)


def _factory_token(data: Any) -> Optional[Credential]:
    if not isinstance(data, dict):
        return None
    token = data.get("accessToken") or data.get("workosToken")
    if not token:
        return None
    return Credential(kind="bearer_token", token=token, refresh_token=data.get("refreshToken"), account=data.get("email"))


class FactoryAdapter(ServiceAdapter):
    service_id = "factory"
    display_name = "Droid (Factory)"
    login_hint = "Factory credentials not found. Login via Factory app."
    session_expired_message = "Factory session expired. Please login again."

    def __init__(self, *args: Any, api_url: str = "https://api.factory.dev", **kwargs: Any) -> None:
        self._api_url = api_url.rstrip("/")
        super().__init__(*args, **kwargs)

    def credential_strategies(self) -> List[ResolutionStrategy]:
        paths = [d / "credentials.json" for d in app_data_dirs("Factory", "Droid", "factory", "droid")]
        return [EnvOverride("FACTORY_API_TOKEN"), ConfigFile(paths, _factory_token)]

    def data_sources(self) -> List[DataSource]:
        return [DataSource("api", self._fetch_api)]

    async def _fetch_api(self, credential: Optional[Credential]) -> ServiceUsage:
        credential = self._require_credential(credential)
        headers = {"Authorization": f"Bearer {credential.token}", "Content-Type": "application/json"}
        data = await self._get_json(f"{self._api_url}/v1/usage", headers)
        return self.parse_usage(data, account=credential.account)

    def parse_usage(self, data: Dict[str, Any], account: Optional[str] = None) -> ServiceUsage:
        usage = data.get("usage") or {}
        current = usage.get("current")
        if not isinstance(current, dict):
            raise MalformedResponse("Factory usage response has no current period")
        billing = usage.get("billing") or {}
        primary = window_from_percent_or_pair(
            current.get("percent"),
            current.get("used"),
            current.get("limit"),
            current.get("reset_at") or billing.get("period_end"),
            "Usage",
        )
        return self.usage(
            primary=primary,
            account_email=account or (data.get("user") or {}).get("email"),
            account_plan=billing.get("plan"),
            version="api",
        )
