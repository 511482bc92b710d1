from .registry import SERVICE_TABLE, ServiceRegistry, build_default_registry
from .core import Orchestrator

__all__ = [
    "SERVICE_TABLE",
    "ServiceRegistry",
    "build_default_registry",
    "Orchestrator",
]
