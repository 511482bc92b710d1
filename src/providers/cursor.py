import asyncio
import logging
import re
from typing import Any, Dict, List, Optional

from state.models import Credential, ServiceUsage
from .base import DataSource
from .browser_session import BrowserSessionAdapter
from .normalize import percent_from_used_limit, percent_or_fraction, window, window_from_used_limit

logger = logging.getLogger(__name__)

HOBBY_REQUEST_ALLOWANCE = 50
_REMAINING_RE = re.compile(r"(\d+)\s*requests?\s*remaining", re.IGNORECASE)

_MEMBERSHIP_NAMES = {
    "enterprise": "Enterprise",
    "pro": "Pro",
    "hobby": "Hobby (Free)",
    "free": "Hobby (Free)",
    "team": "Team",
}


class CursorAdapter(BrowserSessionAdapter):
    """Cursor usage from the cursor.com dashboard API.

    Authentication is the web session cookie captured after signing in at
    cursor.com, or CURSOR_SESSION_COOKIE.
    """

    service_id = "cursor"
    display_name = "Cursor"
    dashboard_url = "https://cursor.com/settings"
    status_page_url = "https://status.cursor.com"
    login_hint = 'Click "Sign in to Cursor" to connect your account'
    login_url = "https://cursor.com/settings"
    cookie_env_var = "CURSOR_SESSION_COOKIE"
    cookie_domains = ("cursor.com", "cursor.sh")
    session_cookie_names = (
        "WorkosCursorSessionToken",
        "__Secure-next-auth.session-token",
        "next-auth.session-token",
    )

    def __init__(self, *args: Any, base_url: str = "https://cursor.com", **kwargs: Any) -> None:
        self._base_url = base_url.rstrip("/")
        super().__init__(*args, **kwargs)

    def data_sources(self) -> List[DataSource]:
        return [DataSource("usage_summary", self._fetch_usage_summary)]

    async def _fetch_usage_summary(self, credential: Optional[Credential]) -> ServiceUsage:
        credential = self._require_credential(credential)
        headers = self._session_headers(credential)
        summary, user = await asyncio.gather(
            self._get_json(f"{self._base_url}/api/usage-summary", headers),
            self._fetch_user_info(headers),
        )
        return self.parse_usage_summary(summary, user)

    async def _fetch_user_info(self, headers: Dict[str, str]) -> Optional[Dict[str, Any]]:
        # email is cosmetic; never fail the fetch over it
        try:
            return await self._get_json(f"{self._base_url}/api/auth/me", headers)
        except Exception as e:
            logger.debug("Cursor user info unavailable: %s", e)
            return None

    def parse_usage_summary(self, summary: Dict[str, Any], user: Optional[Dict[str, Any]] = None) -> ServiceUsage:
        individual = summary.get("individualUsage") or {}
        plan = individual.get("plan") or {}
        billing_end = summary.get("billingCycleEnd")
        membership = summary.get("membershipType")

        if (plan.get("limit") or 0) > 0:
            percent = percent_from_used_limit(plan.get("used"), plan.get("limit"))
        elif plan.get("totalPercentUsed") is not None:
            percent = percent_or_fraction(plan.get("totalPercentUsed"))
        else:
            percent = 0.0

        if percent == 0.0 and summary.get("autoModelSelectedDisplayMessage"):
            match = _REMAINING_RE.search(str(summary["autoModelSelectedDisplayMessage"]))
            if match:
                remaining = int(match.group(1))
                percent = percent_from_used_limit(HOBBY_REQUEST_ALLOWANCE - remaining, HOBBY_REQUEST_ALLOWANCE)

        primary = window(
            percent,
            billing_end,
            "Monthly Requests" if membership == "hobby" else "Plan Usage",
        )

        secondary = None
        on_demand = individual.get("onDemand") or {}
        if (on_demand.get("limit") or 0) > 0:
            secondary = window_from_used_limit(on_demand.get("used"), on_demand.get("limit"), billing_end, "On-Demand")

        return self.usage(
            primary=primary,
            secondary=secondary,
            account_email=(user or {}).get("email"),
            account_plan=format_membership(membership),
            version="api",
        )


def format_membership(kind: Optional[str]) -> str:
    if not kind:
        return "Cursor"
    return _MEMBERSHIP_NAMES.get(kind.lower(), kind[:1].upper() + kind[1:])
