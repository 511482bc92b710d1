import asyncio
import logging
from types import MappingProxyType
from typing import Dict, Mapping, Optional

from .models import ServiceUsage

logger = logging.getLogger(__name__)


class UsageCache:
    """Latest ServiceUsage per service id.

    Writes take a lock per service id so refreshes of different services never
    contend. A write carrying an older ``updated_at`` than the stored entry is
    dropped, so a slow in-flight fetch cannot overwrite a newer result.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, ServiceUsage] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def lock_for(self, service_id: str) -> asyncio.Lock:
        lock = self._locks.get(service_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[service_id] = lock
        return lock

    async def put(self, usage: ServiceUsage) -> ServiceUsage:
        async with self.lock_for(usage.service_id):
            current = self._entries.get(usage.service_id)
            if current is not None and current.updated_at > usage.updated_at:
                logger.debug(
                    "Dropping stale usage for %s (%s older than %s)",
                    usage.service_id,
                    usage.updated_at,
                    current.updated_at,
                )
                return current
            self._entries[usage.service_id] = usage
            return usage

    def get(self, service_id: str) -> Optional[ServiceUsage]:
        return self._entries.get(service_id)

    def snapshot(self) -> Mapping[str, ServiceUsage]:
        return MappingProxyType(dict(self._entries))

    def __len__(self) -> int:
        return len(self._entries)
