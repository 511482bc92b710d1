import asyncio
import logging
import webbrowser
from typing import Any, Dict, List, Sequence

from state.models import CookieEntry, Credential
from .base import BROWSER_USER_AGENT, ServiceAdapter
from .errors import UpstreamRejected
from .login import LoginFlow, LoginPrompt
from .resolver import EnvOverride, ResolutionStrategy, StoredSession, parse_cookie_header

logger = logging.getLogger(__name__)


class BrowserSessionAdapter(ServiceAdapter):
    """Adapter authenticated by web session cookies.

    Login opens the service's sign-in page in the user's browser; the cookies
    are handed back through ``complete_login`` (for example by a browser
    extension or by pasting the Cookie header), filtered to the service's
    domains, and persisted.
    """

    login_url: str = ""
    cookie_env_var: str = ""
    cookie_domains: Sequence[str] = ()
    session_cookie_names: Sequence[str] = ()
    supports_login = True
    open_browser = True

    def credential_strategies(self) -> List[ResolutionStrategy]:
        strategies: List[ResolutionStrategy] = []
        if self.cookie_env_var:
            strategies.append(EnvOverride(self.cookie_env_var, kind="cookie_set"))
        strategies.append(StoredSession(self._store, self.service_id))
        return strategies

    async def start_login(self) -> LoginPrompt:
        prompt = LoginPrompt(service_id=self.service_id, method="browser", url=self.login_url)
        flow = self._replace_login(LoginFlow(prompt, on_success=self._save_credential))
        if self.open_browser:
            try:
                await asyncio.to_thread(webbrowser.open, self.login_url)
            except Exception as e:
                logger.warning("Could not open browser for %s login: %s", self.service_id, e)
        logger.info("Started %s browser login at %s", self.service_id, self.login_url)
        return flow.prompt

    async def complete_login(self, payload: Dict[str, Any]) -> Credential:
        cookies = self._cookies_from_payload(payload)
        if not any(c.name in self.session_cookie_names for c in cookies):
            raise UpstreamRejected(f"No {self.display_name} session cookie found; finish signing in first")
        credential = Credential(kind="cookie_set", cookies=cookies, source="login")
        flow = self.pending_login
        if flow is not None:
            await flow.complete(credential)
        else:
            await self._save_credential(credential)
        return credential

    async def has_stored_session(self) -> bool:
        record = await self._store.load(self.service_id)
        if record is None:
            return False
        return any(c.name in self.session_cookie_names for c in record.credential.valid_cookies())

    def _cookies_from_payload(self, payload: Dict[str, Any]) -> List[CookieEntry]:
        if payload.get("cookie_header"):
            return parse_cookie_header(str(payload["cookie_header"]))
        cookies: List[CookieEntry] = []
        for raw in payload.get("cookies") or []:
            cookie = CookieEntry.model_validate(raw)
            if cookie.domain and not any(d in cookie.domain for d in self.cookie_domains):
                continue
            cookies.append(cookie)
        return cookies

    def _session_headers(self, credential: Credential) -> Dict[str, str]:
        return {
            "Accept": "application/json",
            "Cookie": credential.cookie_header(),
            "User-Agent": BROWSER_USER_AGENT,
        }
