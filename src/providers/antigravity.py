import logging
import re
import sys
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from state.models import Credential, ServiceUsage
from .base import DataSource, ServiceAdapter
from .errors import LocalToolMissing, MalformedResponse, UpstreamUnavailable, raise_for_status
from .normalize import QuotaCandidate, label_matcher, select_windows
from .process import CommandFailed, run_command

logger = logging.getLogger(__name__)

RPC_PREFIX = "/exa.language_server_pb.LanguageServerService"
NOT_DETECTED = "Antigravity/Codeium language server not detected. Launch Windsurf/VS Code and retry."

WINDOW_PREFERENCES = (
    label_matcher("claude", exclude=("thinking",)),
    label_matcher("pro", "low"),
    label_matcher("gemini", "flash"),
)

_NETSTAT_RE = re.compile(r":(\d+)\s+[\d.:\[\]*]+\s+LISTENING")
_LSOF_RE = re.compile(r":(\d+)\s+\(LISTEN\)")


@dataclass
class LanguageServer:
    pid: int
    csrf_token: str
    ports: List[int] = field(default_factory=list)


def extract_flag(flag: str, command_line: str) -> Optional[str]:
    for pattern in (rf'{re.escape(flag)}[=\s]+"([^"]+)"', rf"{re.escape(flag)}[=\s]+([^\s\"]+)"):
        match = re.search(pattern, command_line, re.IGNORECASE)
        if match:
            return match.group(1)
    return None


def parse_wmic_processes(output: str) -> List[LanguageServer]:
    servers = []
    for block in re.split(r"\r?\n\s*\r?\n", output):
        command_line, pid = "", 0
        for line in block.splitlines():
            line = line.strip()
            if line.startswith("CommandLine="):
                command_line = line[len("CommandLine="):]
            elif line.startswith("ProcessId="):
                pid = int(line[len("ProcessId="):] or 0)
        token = extract_flag("--csrf_token", command_line) if command_line else None
        if pid and token:
            servers.append(LanguageServer(pid, token))
    return servers


def parse_ps_processes(output: str) -> List[LanguageServer]:
    servers = []
    for line in output.splitlines():
        pid_text, _, command_line = line.strip().partition(" ")
        if "language_server" not in command_line or not pid_text.isdigit():
            continue
        token = extract_flag("--csrf_token", command_line)
        if token:
            servers.append(LanguageServer(int(pid_text), token))
    return servers


def parse_listening_ports(output: str, pid: int) -> List[int]:
    ports = set()
    for line in output.splitlines():
        if sys.platform == "win32" and not line.rstrip().endswith(str(pid)):
            continue
        match = _NETSTAT_RE.search(line) or _LSOF_RE.search(line)
        if match:
            ports.add(int(match.group(1)))
    return sorted(ports)


async def discover_language_server(timeout: float = 8.0) -> LanguageServer:
    """Find the running language server, its CSRF token and its listening ports."""
    try:
        if sys.platform == "win32":
            out = await run_command(
                ["wmic", "process", "where", "Name like '%language_server%'", "get", "ProcessId,CommandLine", "/format:list"],
                timeout=timeout,
            )
            servers = parse_wmic_processes(out)
        else:
            out = await run_command(["ps", "-ax", "-o", "pid=,command="], timeout=timeout)
            servers = parse_ps_processes(out)
    except CommandFailed as e:
        logger.debug("Process listing failed: %s", e)
        servers = []
    if not servers:
        raise LocalToolMissing(NOT_DETECTED)

    server = servers[0]
    try:
        if sys.platform == "win32":
            out = await run_command(["netstat", "-ano"], timeout=timeout)
        else:
            out = await run_command(["lsof", "-nP", "-iTCP", "-sTCP:LISTEN", "-a", "-p", str(server.pid)], timeout=timeout)
    except CommandFailed as e:
        raise UpstreamUnavailable(f"Failed to detect Antigravity ports: {e}", failure_class="network") from e
    server.ports = parse_listening_ports(out, server.pid)
    if not server.ports:
        raise UpstreamUnavailable("No listening ports found for Antigravity", failure_class="network")
    logger.debug("Antigravity language server pid=%d ports=%s", server.pid, server.ports)
    return server


class AntigravityAdapter(ServiceAdapter):
    """Per-model quotas from the locally running Antigravity/Codeium language server.

    The server listens on loopback with a self-signed certificate and wants
    the CSRF token from its own command line, so no stored credential is
    involved.
    """

    service_id = "antigravity"
    display_name = "Antigravity"
    dashboard_url = "https://windsurf.ai/account"
    status_page_url = "https://status.codeium.com"
    login_hint = NOT_DETECTED

    def __init__(
        self,
        *args: Any,
        discover: Optional[Callable[[], Awaitable[LanguageServer]]] = None,
        **kwargs: Any,
    ) -> None:
        self._discover = discover or discover_language_server
        super().__init__(*args, **kwargs)

    def data_sources(self) -> List[DataSource]:
        return [DataSource("language_server", self._fetch_language_server, needs_credential=False)]

    async def is_available(self) -> bool:
        try:
            await self._discover()
        except Exception as e:
            logger.debug("Antigravity not available: %s", e)
            return False
        return True

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            # loopback server with a self-signed certificate
            self._client = httpx.AsyncClient(timeout=self._timeout, verify=False)
        return self._client

    async def _fetch_language_server(self, credential: Optional[Credential]) -> ServiceUsage:
        server = await self._discover()
        port = await self._find_working_port(server)
        data = await self._post(port, server.csrf_token, f"{RPC_PREFIX}/GetUserStatus")
        return self.parse_user_status(data)

    async def _find_working_port(self, server: LanguageServer) -> int:
        for port in server.ports:
            try:
                await self._post(port, server.csrf_token, f"{RPC_PREFIX}/GetUnleashData")
            except Exception as e:
                logger.debug("Antigravity port %d rejected probe: %s", port, e)
                continue
            return port
        raise UpstreamUnavailable("No working API port found for Antigravity", failure_class="network")

    async def _post(self, port: int, csrf_token: str, path: str) -> Dict[str, Any]:
        body = {
            "metadata": {
                "ideName": "antigravity",
                "extensionName": "antigravity",
                "ideVersion": "unknown",
                "locale": "en",
            }
        }
        headers = {
            "Content-Type": "application/json",
            "Connect-Protocol-Version": "1",
            "X-Codeium-Csrf-Token": csrf_token,
        }
        client = self._get_client()
        try:
            resp = await client.post(f"https://127.0.0.1:{port}{path}", json=body, headers=headers)
        except httpx.TransportError as e:
            logger.debug("HTTPS to port %d failed, trying HTTP: %s", port, e)
            resp = await client.post(f"http://127.0.0.1:{port}{path}", json=body, headers=headers)
        raise_for_status(resp, self.display_name)
        try:
            data = resp.json()
        except ValueError as e:
            raise MalformedResponse("Antigravity returned a non-JSON body") from e
        return data if isinstance(data, dict) else {}

    def parse_user_status(self, data: Dict[str, Any]) -> ServiceUsage:
        status = data.get("userStatus")
        if not isinstance(status, dict):
            raise MalformedResponse("Missing userStatus in response")

        configs = (status.get("cascadeModelConfigData") or {}).get("clientModelConfigs") or []
        candidates = []
        for config in configs:
            quota = config.get("quotaInfo") if isinstance(config, dict) else None
            if not isinstance(quota, dict):
                continue
            candidates.append(
                QuotaCandidate(
                    label=config.get("label") or (config.get("modelOrAlias") or {}).get("model") or "model",
                    used_percent=_used_from_remaining_fraction(quota.get("remainingFraction")),
                    resets_at=quota.get("resetTime"),
                )
            )
        if not candidates:
            raise MalformedResponse("Antigravity reported no model quotas")

        primary, secondary, tertiary = select_windows(candidates, WINDOW_PREFERENCES)
        plan = (status.get("planStatus") or {}).get("planInfo") or {}
        plan_name = (
            plan.get("planDisplayName")
            or plan.get("displayName")
            or plan.get("productName")
            or plan.get("planName")
            or plan.get("planShortName")
        )
        return self.usage(
            primary=primary,
            secondary=secondary,
            tertiary=tertiary,
            account_email=status.get("email"),
            account_plan=plan_name,
            version="running",
        )


def _used_from_remaining_fraction(value: Any) -> float:
    # a quota with no reported remainder counts as exhausted
    if value is None:
        return 100.0
    try:
        remaining = max(0.0, min(100.0, float(value) * 100.0))
    except (TypeError, ValueError):
        return 100.0
    return 100.0 - remaining
