import logging
from typing import Any, Dict, List, Optional

from state.models import Credential, RateWindow, ServiceUsage
from .base import DataSource
from .browser_session import BrowserSessionAdapter
from .errors import LocalToolMissing, UpstreamRejected
from .normalize import percent_direct, percent_from_remaining, window
from .process import detect_version

logger = logging.getLogger(__name__)


class ClaudeAdapter(BrowserSessionAdapter):
    """Claude usage via the claude.ai and console.anthropic.com web APIs.

    Uses the browser session captured after signing in (or
    CLAUDE_SESSION_COOKIE). Without a session, an installed Claude CLI is
    reported as detected-but-not-signed-in.

    A 403 from a usage endpoint means the plan has no usage API, not that the
    session died, so only 401 invalidates the stored session.
    """

    service_id = "claude"
    display_name = "Claude"
    dashboard_url = "https://console.anthropic.com/settings/usage"
    status_page_url = "https://status.anthropic.com"
    login_hint = "Sign in with Claude Max/Pro to view usage"
    login_url = "https://claude.ai/login"
    cookie_env_var = "CLAUDE_SESSION_COOKIE"
    cookie_domains = ("anthropic.com", "claude.ai")
    session_cookie_names = (
        "sessionKey",
        "__Secure-next-auth.session-token",
        "next-auth.session-token",
    )

    def __init__(
        self,
        *args: Any,
        claude_ai_url: str = "https://claude.ai",
        console_url: str = "https://console.anthropic.com",
        **kwargs: Any,
    ) -> None:
        self._claude_ai_url = claude_ai_url.rstrip("/")
        self._console_url = console_url.rstrip("/")
        super().__init__(*args, **kwargs)

    def data_sources(self) -> List[DataSource]:
        return [
            DataSource("claude.ai", self._fetch_claude_ai),
            DataSource("console", self._fetch_console),
            DataSource(
                "cli",
                self._cli_placeholder,
                needs_credential=False,
                when_signed_out=True,
            ),
        ]

    async def is_available(self) -> bool:
        if await detect_version("claude") is not None:
            return True
        return await self.resolver.probe()

    async def _fetch_claude_ai(self, credential: Optional[Credential]) -> ServiceUsage:
        data = await self._get_usage(f"{self._claude_ai_url}/api/usage", credential)
        return self.parse_usage(data, source="claude.ai")

    async def _fetch_console(self, credential: Optional[Credential]) -> ServiceUsage:
        data = await self._get_usage(f"{self._console_url}/api/usage", credential)
        return self.parse_usage(data, source="console")

    async def _get_usage(self, url: str, credential: Optional[Credential]) -> Dict[str, Any]:
        credential = self._require_credential(credential)
        resp = await self._get_client().get(url, headers=self._session_headers(credential), timeout=self._timeout)
        if resp.status_code == 403:
            raise UpstreamRejected("Logged in. Usage API not available for your plan.", 403)
        return self._json_body(resp)

    async def _cli_placeholder(self, credential: Optional[Credential]) -> ServiceUsage:
        version = await detect_version("claude")
        if version is None:
            raise LocalToolMissing("Claude CLI not found")
        return self.usage(
            error="Claude CLI detected. Paid plan (Claude Max/Pro) required to view usage.",
            needs_login=True,
            version=version,
        )

    def parse_usage(self, data: Dict[str, Any], source: str) -> ServiceUsage:
        usage = data.get("usage") or {}

        session = _pick_window(data.get("session_usage"), usage.get("session"), "Session")
        weekly = _pick_window(data.get("weekly_usage"), usage.get("weekly"), "Weekly")

        return self.usage(
            primary=session or window(0.0, None, "Session"),
            secondary=weekly,
            account_email=(data.get("user") or {}).get("email"),
            account_plan=data.get("plan") or (data.get("organization") or {}).get("name") or "Claude",
            version=source,
        )


def _pick_window(remaining_shape: Any, used_shape: Any, label: str) -> Optional[RateWindow]:
    """claude.ai reports percent remaining, the console percent used."""
    if isinstance(remaining_shape, dict):
        return window(
            percent_from_remaining(remaining_shape.get("percent_remaining"), fraction=False),
            remaining_shape.get("reset_at"),
            label,
        )
    if isinstance(used_shape, dict):
        return window(percent_direct(used_shape.get("percent_used")), used_shape.get("reset_at"), label)
    return None
