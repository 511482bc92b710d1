import asyncio
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional, Union

from pydantic import ValidationError

from .models import Credential, StoredCredential

logger = logging.getLogger(__name__)


def default_data_dir() -> Path:
    return Path(os.getenv("QUOTAWATCH_DATA_DIR", os.path.join(os.path.expanduser("~"), ".config", "quotawatch")))


class CredentialStore:
    """Per-service credential persistence.

    One JSON document per service under ``<data_dir>/credentials``. Files are
    written atomically with mode 0600. Reads and writes go through a worker
    thread and are serialized per service id.
    """

    def __init__(self, data_dir: Optional[Union[str, Path]] = None) -> None:
        self._dir = Path(data_dir) if data_dir is not None else default_data_dir()
        self._dir = self._dir / "credentials"
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock(self, service_id: str) -> asyncio.Lock:
        lock = self._locks.get(service_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[service_id] = lock
        return lock

    def path_for(self, service_id: str) -> Path:
        return self._dir / f"{service_id}.json"

    async def load(self, service_id: str) -> Optional[StoredCredential]:
        async with self._lock(service_id):
            return await asyncio.to_thread(self._read, service_id)

    async def save(self, service_id: str, credential: Credential) -> StoredCredential:
        record = StoredCredential(service_id=service_id, credential=credential)
        async with self._lock(service_id):
            await asyncio.to_thread(self._write, service_id, record)
        logger.info("Saved %s credential for %s", credential.kind, service_id)
        return record

    async def delete(self, service_id: str) -> bool:
        async with self._lock(service_id):
            removed = await asyncio.to_thread(self._remove, service_id)
        if removed:
            logger.info("Deleted stored credential for %s", service_id)
        return removed

    def _read(self, service_id: str) -> Optional[StoredCredential]:
        path = self.path_for(service_id)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
            return StoredCredential.model_validate(data)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, ValidationError) as e:
            # json.JSONDecodeError is a ValueError
            logger.warning("Ignoring unreadable credential file %s: %s", path, e)
            return None

    def _write(self, service_id: str, record: StoredCredential) -> None:
        self._dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(service_id)
        fd, tmp = tempfile.mkstemp(prefix=f".{service_id}.", dir=str(self._dir))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(record.model_dump_json(indent=2))
            os.chmod(tmp, 0o600)
            os.replace(tmp, path)
        except Exception:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def _remove(self, service_id: str) -> bool:
        try:
            os.unlink(self.path_for(service_id))
            return True
        except FileNotFoundError:
            return False
