import logging
import os
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_ENABLED_SERVICES = ["antigravity"]
DEFAULT_REFRESH_INTERVAL = 5  # minutes
DEFAULT_FETCH_TIMEOUT = 60.0  # seconds


def default_settings_path() -> str:
    return os.getenv(
        "QUOTAWATCH_SETTINGS_PATH",
        os.path.join(os.path.dirname(os.path.dirname(os.path.dirname(__file__))), "config", "settings.yaml"),
    )


class SettingsStore:
    """Read-only view over the settings YAML plus environment overrides.

    The file is re-read on every call so edits made by the settings owner are
    picked up on the next refresh cycle without a restart.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self._path = path

    @property
    def path(self) -> str:
        return self._path or default_settings_path()

    def _load(self) -> Dict[str, Any]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except FileNotFoundError:
            logger.info("Settings file not found at %s; using defaults", self.path)
            return {}
        except Exception as e:
            logger.warning("Failed to load settings from %s: %s", self.path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("Settings file %s is not a mapping; using defaults", self.path)
            return {}
        return data

    def get_enabled_services(self) -> List[str]:
        env = os.getenv("QUOTAWATCH_ENABLED_SERVICES")
        if env is not None:
            return _dedupe(s.strip() for s in env.split(",") if s.strip())
        enabled = self._load().get("enabled_services")
        if not isinstance(enabled, list):
            return list(DEFAULT_ENABLED_SERVICES)
        return _dedupe(str(s) for s in enabled)

    def get_refresh_interval(self) -> float:
        raw = os.getenv("QUOTAWATCH_REFRESH_INTERVAL") or self._load().get("refresh_interval")
        return _to_float(raw, DEFAULT_REFRESH_INTERVAL)

    def get_fetch_timeout(self) -> float:
        return _to_float(self._load().get("fetch_timeout"), DEFAULT_FETCH_TIMEOUT)

    def get_service_options(self, service_id: str) -> Dict[str, Any]:
        services = self._load().get("services") or {}
        opts = services.get(service_id) if isinstance(services, dict) else None
        return opts if isinstance(opts, dict) else {}


class StaticSettings(SettingsStore):
    """In-memory settings for embedding and tests."""

    def __init__(
        self,
        enabled_services: Optional[List[str]] = None,
        refresh_interval: float = DEFAULT_REFRESH_INTERVAL,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        services: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(path=None)
        self.enabled_services = list(enabled_services or [])
        self.refresh_interval = refresh_interval
        self.fetch_timeout = fetch_timeout
        self.services = services or {}

    def _load(self) -> Dict[str, Any]:
        return {
            "enabled_services": list(self.enabled_services),
            "refresh_interval": self.refresh_interval,
            "fetch_timeout": self.fetch_timeout,
            "services": self.services,
        }

    def get_enabled_services(self) -> List[str]:
        return _dedupe(self.enabled_services)


def _dedupe(items) -> List[str]:
    seen = set()
    out: List[str] = []
    for item in items:
        if item in seen:
            continue
        seen.add(item)
        out.append(item)
    return out


def _to_float(value: Any, default: float) -> float:
    try:
        if value is None:
            return float(default)
        return float(value)
    except (TypeError, ValueError):
        return float(default)
