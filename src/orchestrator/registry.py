import logging
from typing import Dict, List, Optional, Type

import httpx

from providers.antigravity import AntigravityAdapter
from providers.base import ServiceAdapter, trips_breaker
from providers.claude import ClaudeAdapter
from providers.codex import CodexAdapter
from providers.copilot import CopilotAdapter
from providers.cursor import CursorAdapter
from providers.factory import FactoryAdapter
from providers.gemini import GeminiAdapter
from providers.zai import ZaiAdapter
from resilience import CircuitBreakerConfig, CircuitBreakerRegistry, RetryPolicy
from state.credentials import CredentialStore
from state.models import ServiceIdentity
from state.settings import SettingsStore

logger = logging.getLogger(__name__)

# Every service this agent knows how to poll, in display order.
SERVICE_TABLE: Dict[str, Type[ServiceAdapter]] = {
    "antigravity": AntigravityAdapter,
    "claude": ClaudeAdapter,
    "codex": CodexAdapter,
    "copilot": CopilotAdapter,
    "cursor": CursorAdapter,
    "gemini": GeminiAdapter,
    "factory": FactoryAdapter,
    "zai": ZaiAdapter,
}


class ServiceRegistry:
    """Adapters keyed by service id. Built once and never mutated after startup."""

    def __init__(self) -> None:
        self._adapters: Dict[str, ServiceAdapter] = {}

    def register(self, adapter: ServiceAdapter) -> None:
        if adapter.service_id in self._adapters:
            raise ValueError(f"Duplicate service id: {adapter.service_id}")
        self._adapters[adapter.service_id] = adapter
        logger.info("Registered service: %s", adapter.service_id)

    def get(self, service_id: str) -> Optional[ServiceAdapter]:
        return self._adapters.get(service_id)

    def adapters(self) -> List[ServiceAdapter]:
        return list(self._adapters.values())

    def identities(self) -> List[ServiceIdentity]:
        return [a.identity for a in self._adapters.values()]

    def __contains__(self, service_id: object) -> bool:
        return service_id in self._adapters

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            try:
                await adapter.aclose()
            except Exception as e:
                logger.warning("Failed to close %s adapter: %s", adapter.service_id, e)


def build_default_registry(
    store: Optional[CredentialStore] = None,
    settings: Optional[SettingsStore] = None,
    breakers: Optional[CircuitBreakerRegistry] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> ServiceRegistry:
    """Instantiate every adapter in SERVICE_TABLE.

    ``services.<id>.retry``, ``services.<id>.circuit_breaker`` and
    ``services.<id>.timeout`` in settings override the per-service defaults.
    """
    store = store or CredentialStore()
    settings = settings or SettingsStore()
    breakers = breakers or CircuitBreakerRegistry()
    registry = ServiceRegistry()
    for service_id, adapter_cls in SERVICE_TABLE.items():
        opts = settings.get_service_options(service_id)
        try:
            retry_policy = RetryPolicy.from_dict(opts.get("retry"))
            breaker_config = CircuitBreakerConfig.from_dict(opts.get("circuit_breaker"))
        except (TypeError, ValueError) as e:
            logger.warning("Invalid resilience options for %s, using defaults: %s", service_id, e)
            retry_policy, breaker_config = RetryPolicy(), CircuitBreakerConfig()
        adapter = adapter_cls(
            store=store,
            client=client,
            retry_policy=retry_policy,
            breaker=breakers.get(service_id, breaker_config, counts_as_failure=trips_breaker),
            timeout=float(opts.get("timeout") or 10.0),
        )
        registry.register(adapter)
    return registry
