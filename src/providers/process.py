import asyncio
import json
import logging
import re
import shutil
from typing import Any, Dict, List, Optional

from .errors import LocalToolMissing, MalformedResponse, UpstreamUnavailable

logger = logging.getLogger(__name__)

_VERSION_RE = re.compile(r"(\d+\.\d+\.\d+)")


class CommandFailed(Exception):
    def __init__(self, argv: List[str], returncode: int, stderr: str = "") -> None:
        super().__init__(f"{argv[0]} exited with {returncode}: {stderr.strip()[:200]}")
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr


async def run_command(argv: List[str], timeout: float = 10.0, stdin: Optional[str] = None) -> str:
    """Run a local CLI and return its stdout.

    Raises LocalToolMissing when the executable is not on PATH,
    UpstreamUnavailable (failure class "timeout") when it overruns
    ``timeout``, and CommandFailed on a non-zero exit.
    """
    exe = shutil.which(argv[0])
    if exe is None:
        raise LocalToolMissing(f"{argv[0]} not found on PATH")
    try:
        proc = await asyncio.create_subprocess_exec(
            exe,
            *argv[1:],
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as e:
        raise LocalToolMissing(f"{argv[0]} could not be started: {e}") from e

    try:
        out, err = await asyncio.wait_for(
            proc.communicate(stdin.encode("utf-8") if stdin is not None else None), timeout=timeout
        )
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise UpstreamUnavailable(f"{argv[0]} timed out after {timeout:.0f}s", failure_class="timeout")

    if proc.returncode != 0:
        raise CommandFailed(argv, proc.returncode or -1, err.decode("utf-8", "replace"))
    return out.decode("utf-8", "replace")


async def detect_version(tool: str, timeout: float = 5.0) -> Optional[str]:
    """``<tool> --version`` parsed to x.y.z, "unknown" if unparseable, None if not installed."""
    try:
        out = await run_command([tool, "--version"], timeout=timeout)
    except (LocalToolMissing, CommandFailed, UpstreamUnavailable) as e:
        logger.debug("%s version probe failed: %s", tool, e)
        return None
    match = _VERSION_RE.search(out)
    return match.group(1) if match else "unknown"


async def request_json_line(argv: List[str], request: Dict[str, Any], timeout: float = 15.0) -> Dict[str, Any]:
    """Write one JSON request line to a long-running CLI and return the first JSON object it prints.

    The process is killed as soon as a reply arrives or ``timeout`` passes.
    """
    exe = shutil.which(argv[0])
    if exe is None:
        raise LocalToolMissing(f"{argv[0]} not found on PATH")
    proc = await asyncio.create_subprocess_exec(
        exe,
        *argv[1:],
        stdin=asyncio.subprocess.PIPE,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.DEVNULL,
    )

    stdin, stdout = proc.stdin, proc.stdout
    if stdin is None or stdout is None:
        proc.kill()
        await proc.wait()
        raise LocalToolMissing(f"{argv[0]} could not be started with pipes")

    async def read_reply() -> Dict[str, Any]:
        stdin.write((json.dumps(request) + "\n").encode("utf-8"))
        await stdin.drain()
        while True:
            line = await stdout.readline()
            if not line:
                raise MalformedResponse(f"{argv[0]} closed without a response")
            text = line.decode("utf-8", "replace").strip()
            if not text.startswith("{"):
                continue
            try:
                reply = json.loads(text)
            except ValueError:
                continue
            if isinstance(reply, dict):
                return reply

    try:
        return await asyncio.wait_for(read_reply(), timeout=timeout)
    except asyncio.TimeoutError:
        raise UpstreamUnavailable(f"{argv[0]} RPC timed out after {timeout:.0f}s", failure_class="timeout")
    finally:
        if proc.returncode is None:
            proc.kill()
        await proc.wait()
