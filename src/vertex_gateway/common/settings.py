"""Process settings, the deployment settings store, and per-request config.

Environment variables are read exactly once, in ``GatewaySettings.from_env``.
Everything downstream receives the resulting objects explicitly.
"""
from __future__ import annotations
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Protocol

import yaml

from vertex_gateway.common.errors import ConfigError

LOGGER = logging.getLogger("vertex_gateway.settings")

DEFAULT_REGION = "us-central1"
PROJECT_ID_KEY = "vertex_project_id"
REGION_KEY = "vertex_location"


def _env_bool(value: str | None, default: bool) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _env_float(value: str | None, default: float) -> float:
    try:
        parsed = float(value) if value is not None else default
    except ValueError:
        LOGGER.warning("Ignoring non-numeric setting %r; using %s", value, default)
        return default
    return parsed if parsed > 0 else default


@dataclass(frozen=True)
class GatewaySettings:
    """Startup settings; the environment-variable fallback layer."""

    project_id: str | None = None
    region: str | None = None
    service_account_json: str | None = None
    settings_path: str | None = None
    metadata_probe: bool = True
    http_timeout: float = 120.0
    request_deadline: float = 180.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "GatewaySettings":
        env = os.environ if environ is None else environ
        return cls(
            project_id=env.get("VERTEX_PROJECT_ID") or env.get("GOOGLE_CLOUD_PROJECT") or None,
            region=env.get("VERTEX_LOCATION") or None,
            service_account_json=env.get("GOOGLE_SERVICE_ACCOUNT_JSON") or None,
            settings_path=env.get("GATEWAY_SETTINGS_PATH") or None,
            metadata_probe=_env_bool(env.get("GATEWAY_METADATA_PROBE"), True),
            http_timeout=_env_float(env.get("GATEWAY_HTTP_TIMEOUT"), 120.0),
            request_deadline=_env_float(env.get("GATEWAY_REQUEST_DEADLINE"), 180.0),
            log_level=env.get("GATEWAY_LOG_LEVEL", "INFO"),
        )


@dataclass(frozen=True)
class GatewayConfig:
    project_id: str
    region: str = DEFAULT_REGION


class SettingsStore(Protocol):
    def get(self, key: str) -> str | None: ...


class StaticSettingsStore:
    """Settings store backed by a fixed mapping."""

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._values = dict(values or {})

    def get(self, key: str) -> str | None:
        value = self._values.get(key)
        return str(value).strip() if value is not None else None


class YamlSettingsStore:
    """Settings store backed by a YAML mapping file.

    The file is re-read on every lookup so operators can edit it without a
    restart. A missing or unreadable file behaves like an empty store.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path)

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            LOGGER.warning("Failed to read settings store %s: %s", self.path, e)
            return {}
        if data is None:
            return {}
        if not isinstance(data, dict):
            LOGGER.warning("Settings store %s is not a mapping; ignoring it", self.path)
            return {}
        return data

    def get(self, key: str) -> str | None:
        value = self._load().get(key)
        return str(value).strip() if value is not None else None


def build_settings_store(settings: GatewaySettings) -> SettingsStore:
    if settings.settings_path:
        return YamlSettingsStore(settings.settings_path)
    return StaticSettingsStore()


def resolve_config(store: SettingsStore, settings: GatewaySettings) -> GatewayConfig:
    """Resolve project id and region: settings store first, then environment.

    Raises:
        ConfigError: If no project id is available from either source.
    """
    stored_project = store.get(PROJECT_ID_KEY)
    project_id = stored_project or settings.project_id
    region = store.get(REGION_KEY) or settings.region or DEFAULT_REGION

    if not project_id:
        raise ConfigError(
            "Vertex AI project ID not configured. Set vertex_project_id in the "
            "settings store or VERTEX_PROJECT_ID environment variable."
        )

    LOGGER.debug(
        "Resolved config project=%s... region=%s source=%s",
        project_id[:10],
        region,
        "settings-store" if stored_project else "environment",
    )
    return GatewayConfig(project_id=project_id, region=region)
