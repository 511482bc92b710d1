import asyncio
import logging
from typing import Dict, List, Mapping, Optional

from providers.base import ServiceAdapter
from state.cache import UsageCache
from state.history import UsageHistory
from state.models import ServiceIdentity, ServiceUsage
from state.settings import SettingsStore
from .registry import ServiceRegistry

logger = logging.getLogger(__name__)


class Orchestrator:
    """Fans refreshes out to the registered adapters and keeps the latest result per service.

    Refreshes of one service id are serialized through a per-id lock, which
    also serializes that service's credential store writes. Different ids
    never wait on each other.
    """

    def __init__(
        self,
        registry: ServiceRegistry,
        settings: Optional[SettingsStore] = None,
        cache: Optional[UsageCache] = None,
        history: Optional[UsageHistory] = None,
    ) -> None:
        self._registry = registry
        self._settings = settings or SettingsStore()
        self._cache = cache or UsageCache()
        self._history = history
        self._locks: Dict[str, asyncio.Lock] = {}

    @property
    def registry(self) -> ServiceRegistry:
        return self._registry

    @property
    def settings(self) -> SettingsStore:
        return self._settings

    @property
    def history(self) -> Optional[UsageHistory]:
        return self._history

    def list_services(self) -> List[ServiceIdentity]:
        return self._registry.identities()

    def get_service(self, service_id: str) -> Optional[ServiceAdapter]:
        return self._registry.get(service_id)

    async def refresh_all(self) -> Mapping[str, ServiceUsage]:
        enabled = self._settings.get_enabled_services()
        logger.info("Refreshing %d services: %s", len(enabled), ", ".join(enabled))
        await asyncio.gather(*(self._refresh(service_id) for service_id in enabled))
        return self.get_latest_usage()

    async def refresh_one(self, service_id: str) -> Optional[ServiceUsage]:
        if service_id not in self._registry:
            logger.warning("Refresh requested for unknown service %s", service_id)
            return None
        return await self._refresh(service_id)

    def get_latest_usage(self) -> Mapping[str, ServiceUsage]:
        return self._cache.snapshot()

    def get_usage(self, service_id: str) -> Optional[ServiceUsage]:
        return self._cache.get(service_id)

    def _lock_for(self, service_id: str) -> asyncio.Lock:
        lock = self._locks.get(service_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[service_id] = lock
        return lock

    async def _refresh(self, service_id: str) -> ServiceUsage:
        async with self._lock_for(service_id):
            usage = await self._fetch(service_id)
            stored = await self._cache.put(usage)
        if self._history is not None and stored is usage:
            await self._history.record(usage)
        return stored

    async def _fetch(self, service_id: str) -> ServiceUsage:
        adapter = self._registry.get(service_id)
        if adapter is None:
            logger.warning("Enabled service %s is not registered", service_id)
            return ServiceUsage(service_id=service_id, display_name=service_id, error=f"Unknown service: {service_id}")

        deadline = self._settings.get_fetch_timeout()
        try:
            return await asyncio.wait_for(adapter.fetch_usage(), timeout=deadline)
        except asyncio.TimeoutError:
            logger.warning("%s fetch exceeded %.0fs deadline", service_id, deadline)
            return adapter.usage(error=f"{adapter.display_name} did not respond within {deadline:.0f}s")
        except Exception as e:
            # adapters are total; this only catches bugs
            logger.exception("Adapter %s raised during fetch: %s", service_id, e)
            return adapter.usage(error=f"Failed to fetch {adapter.display_name} usage: {e}")
