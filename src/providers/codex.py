import logging
import re
from typing import Any, Dict, List, Optional

from state.models import Credential, Credits, ServiceUsage
from .base import DataSource, ServiceAdapter
from .errors import CredentialNotFound, LocalToolMissing, MalformedResponse
from .normalize import percent_direct, window
from .process import CommandFailed, detect_version, request_json_line, run_command

logger = logging.getLogger(__name__)

RPC_ARGV = ["codex", "-s", "read-only", "-a", "untrusted", "app-server"]
RPC_REQUEST = {"jsonrpc": "2.0", "id": 1, "method": "getUsage", "params": {}}

_SESSION_RE = re.compile(r"session:\s*(\d+)%", re.IGNORECASE)
_WEEKLY_RE = re.compile(r"weekly:\s*(\d+)%", re.IGNORECASE)
_EMAIL_RE = re.compile(r"email:\s*(\S+)", re.IGNORECASE)


class CodexAdapter(ServiceAdapter):
    """Codex usage read from the locally installed Codex CLI.

    The CLI owns the session, so there is no credential chain here. The
    app-server JSON-RPC interface is tried first, then ``codex status`` text.
    """

    service_id = "codex"
    display_name = "Codex"
    dashboard_url = "https://platform.openai.com/usage"
    status_page_url = "https://status.openai.com"
    login_hint = 'Could not fetch usage. Run "codex login" to authenticate.'

    def __init__(self, *args: Any, command_timeout: float = 15.0, **kwargs: Any) -> None:
        self._command_timeout = command_timeout
        super().__init__(*args, **kwargs)

    def data_sources(self) -> List[DataSource]:
        return [
            DataSource("rpc", self._fetch_rpc, needs_credential=False),
            DataSource("status", self._fetch_status, needs_credential=False),
        ]

    async def is_available(self) -> bool:
        return await detect_version("codex") is not None

    async def _require_cli(self) -> str:
        version = await detect_version("codex")
        if version is None:
            raise LocalToolMissing("Codex CLI not found. Install it from OpenAI.")
        return version

    async def _fetch_rpc(self, credential: Optional[Credential]) -> ServiceUsage:
        version = await self._require_cli()
        reply = await request_json_line(RPC_ARGV, RPC_REQUEST, timeout=self._command_timeout)
        if "error" in reply:
            raise MalformedResponse(f"Codex RPC error: {reply['error']}")
        return self.parse_rpc(reply.get("result", reply), version)

    async def _fetch_status(self, credential: Optional[Credential]) -> ServiceUsage:
        version = await self._require_cli()
        try:
            out = await run_command(["codex", "status"], timeout=self._command_timeout)
        except CommandFailed as e:
            logger.debug("codex status failed: %s", e)
            raise CredentialNotFound(self.login_hint) from e
        return self.parse_status(out, version)

    def parse_rpc(self, data: Dict[str, Any], version: str) -> ServiceUsage:
        if not isinstance(data, dict):
            raise MalformedResponse("Codex RPC returned an unexpected payload")
        primary = _rpc_window(data.get("primary"), "Session")
        if primary is None:
            raise MalformedResponse("Codex RPC reply has no usage window")
        account = data.get("account") or {}
        credits = None
        if isinstance(data.get("credits"), dict):
            raw = data["credits"]
            credits = Credits(balance=str(raw.get("balance") or "0"), unlimited=bool(raw.get("unlimited")))
        return self.usage(
            primary=primary,
            secondary=_rpc_window(data.get("secondary"), "Weekly"),
            account_email=account.get("email"),
            account_plan=account.get("planType"),
            version=version,
            credits=credits,
        )

    def parse_status(self, text: str, version: str) -> ServiceUsage:
        session = _SESSION_RE.search(text)
        if session is None:
            # status prints no usage until the CLI is signed in
            raise CredentialNotFound(self.login_hint)
        weekly = _WEEKLY_RE.search(text)
        email = _EMAIL_RE.search(text)
        return self.usage(
            primary=window(percent_direct(session.group(1)), None, "Session"),
            secondary=window(percent_direct(weekly.group(1)), None, "Weekly") if weekly else None,
            account_email=email.group(1) if email else None,
            version=version,
        )


def _rpc_window(raw: Any, label: str):
    if not isinstance(raw, dict):
        return None
    return window(percent_direct(raw.get("usedPercent")), raw.get("resetsAt"), label, raw.get("windowDurationMins"))
