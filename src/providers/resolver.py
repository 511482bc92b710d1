import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from state.credentials import CredentialStore
from state.models import CookieEntry, Credential, CredentialKind
from .process import CommandFailed, run_command
from .errors import LocalToolMissing

logger = logging.getLogger(__name__)


class ResolutionStrategy(ABC):
    """One step of a credential resolution chain.

    ``resolve`` returns a credential or None. A strategy that finds expired
    material it owns deletes it and returns None so the chain moves on.
    """

    name: str = "strategy"

    @abstractmethod
    async def resolve(self) -> Optional[Credential]:
        ...

    async def probe(self) -> bool:
        """Cheap, side-effect-free availability check.

        Defaults to a full resolve, which is only correct for strategies that
        never delete anything.
        """
        return await self.resolve() is not None


class EnvOverride(ResolutionStrategy):
    """Credential supplied directly through an environment variable."""

    name = "env"

    def __init__(self, env_var: str, kind: CredentialKind = "bearer_token") -> None:
        self.env_var = env_var
        self.kind = kind

    async def resolve(self) -> Optional[Credential]:
        raw = os.getenv(self.env_var, "").strip()
        if not raw:
            return None
        if self.kind == "cookie_set":
            return Credential(kind="cookie_set", cookies=parse_cookie_header(raw), source=f"env:{self.env_var}")
        return Credential(kind=self.kind, token=raw, source=f"env:{self.env_var}")


class StoredSession(ResolutionStrategy):
    """Material this agent persisted itself after a login flow."""

    name = "stored"

    def __init__(self, store: CredentialStore, service_id: str) -> None:
        self.store = store
        self.service_id = service_id

    async def resolve(self) -> Optional[Credential]:
        record = await self.store.load(self.service_id)
        if record is None:
            return None
        credential = record.credential
        if credential.is_expired():
            logger.info("Stored %s credential for %s expired; removing it", credential.kind, self.service_id)
            await self.store.delete(self.service_id)
            return None
        if credential.kind == "cookie_set":
            # keep only cookies that are still valid
            credential = credential.model_copy(update={"cookies": credential.valid_cookies()})
        return credential.model_copy(update={"source": self.name})

    async def probe(self) -> bool:
        # same check as resolve, but an expired record is left for resolve to remove
        record = await self.store.load(self.service_id)
        return record is not None and not record.credential.is_expired()


class ConfigFile(ResolutionStrategy):
    """Token read from another tool's config file, first readable path wins.

    These files belong to the other tool, so expired material is skipped but
    never deleted.
    """

    name = "config_file"

    def __init__(
        self,
        paths: Sequence[Path],
        extract: Callable[[Any], Optional[Credential]],
    ) -> None:
        self.paths = [Path(p) for p in paths]
        self.extract = extract

    async def resolve(self) -> Optional[Credential]:
        for path in self.paths:
            data = await asyncio.to_thread(_read_json, path)
            if data is None:
                continue
            try:
                credential = self.extract(data)
            except (KeyError, TypeError, ValueError) as e:
                logger.debug("Could not extract credential from %s: %s", path, e)
                continue
            if credential is None:
                continue
            if credential.is_expired():
                logger.info("Credential in %s has expired; skipping", path)
                continue
            return credential.model_copy(update={"source": f"file:{path}"})
        return None


class CommandToken(ResolutionStrategy):
    """Token printed by a local CLI that manages its own session (e.g. ``gh auth token``)."""

    name = "command"

    def __init__(self, argv: List[str], kind: CredentialKind = "oauth_token", timeout: float = 10.0) -> None:
        self.argv = argv
        self.kind = kind
        self.timeout = timeout

    async def resolve(self) -> Optional[Credential]:
        try:
            out = await run_command(self.argv, timeout=self.timeout)
        except (LocalToolMissing, CommandFailed) as e:
            logger.debug("%s unavailable: %s", " ".join(self.argv), e)
            return None
        token = out.strip()
        if not token:
            return None
        return Credential(kind=self.kind, token=token, source=f"command:{self.argv[0]}")


class CredentialResolver:
    """Ordered credential chain for one service."""

    def __init__(self, service_id: str, strategies: Sequence[ResolutionStrategy]) -> None:
        self.service_id = service_id
        self.strategies = list(strategies)

    async def resolve(self) -> Optional[Credential]:
        for strategy in self.strategies:
            try:
                credential = await strategy.resolve()
            except Exception as e:
                logger.warning("Credential strategy %s failed for %s: %s", strategy.name, self.service_id, e)
                continue
            if credential is not None:
                logger.debug("Resolved %s credential for %s via %s", credential.kind, self.service_id, strategy.name)
                return credential
        logger.debug("No credential found for %s", self.service_id)
        return None

    async def probe(self) -> bool:
        for strategy in self.strategies:
            try:
                if await strategy.probe():
                    return True
            except Exception as e:
                logger.debug("Credential probe %s failed for %s: %s", strategy.name, self.service_id, e)
        return False


def parse_cookie_header(header: str) -> List[CookieEntry]:
    cookies: List[CookieEntry] = []
    for part in header.split(";"):
        name, sep, value = part.strip().partition("=")
        if sep and name:
            cookies.append(CookieEntry(name=name.strip(), value=value.strip()))
    return cookies


def _read_json(path: Path) -> Optional[Dict[str, Any]]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except FileNotFoundError:
        return None
    except (OSError, ValueError) as e:
        logger.debug("Unreadable credential file %s: %s", path, e)
        return None


def app_data_dirs(*names: str) -> List[Path]:
    """Candidate per-user config directories for a third-party tool, per platform."""
    home = Path(os.path.expanduser("~"))
    dirs: List[Path] = []
    for name in names:
        for env in ("APPDATA", "LOCALAPPDATA"):
            base = os.getenv(env)
            if base:
                dirs.append(Path(base) / name)
        dirs.append(home / "Library" / "Application Support" / name)
        dirs.append(home / ".config" / name)
    return dirs

