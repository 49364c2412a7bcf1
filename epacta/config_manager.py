from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any, Mapping

import yaml

from epacta.models import AppConfig, default_app_config


logger = logging.getLogger(__name__)

CONFIG_PATH_ENV = "EPACTA_CONFIG_PATH"
DEFAULT_CONFIG_PATH = "config.yaml"

# Environment variables win over the file on load and are never written back.
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "EPACTA_DB_PATH": ("storage", "db_path"),
    "EPACTA_LOG_LEVEL": ("logging", "level"),
    "EPACTA_SYNC_INTERVAL_SECONDS": ("sync", "interval_seconds"),
    "EPACTA_FETCH_TIMEOUT_SECONDS": ("fetch", "timeout_seconds"),
}

SECTIONS = frozenset(AppConfig().to_dict())


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_overrides(environ: Mapping[str, str]) -> dict[str, Any]:
    overrides: dict[str, Any] = {}
    for variable, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(variable, "").strip()
        if value:
            overrides.setdefault(section, {})[key] = value
    return overrides


def _write_yaml(path: Path, data: dict[str, Any]) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


class ConfigManager:
    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            logger.info("Writing default config to %s", self.config_path)
            self.save(default_app_config())

    @classmethod
    def from_env(cls) -> "ConfigManager":
        return cls(os.getenv(CONFIG_PATH_ENV, DEFAULT_CONFIG_PATH))

    def _read_file(self) -> dict[str, Any]:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            raise ValueError(f"Config file {self.config_path} must contain a mapping.")
        return data

    def load(self) -> AppConfig:
        overrides = _env_overrides(os.environ)
        return AppConfig.from_dict(_deep_merge(self._read_file(), overrides))

    def save(self, config: AppConfig) -> None:
        config_dict = config.to_dict()
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            _write_yaml(tmp_path, config_dict)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files cannot be replaced atomically.
                if exc.errno != errno.EBUSY:
                    raise
                _write_yaml(self.config_path, config_dict)
                tmp_path.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        if not isinstance(payload, dict):
            raise ValueError("Config update must be a mapping.")
        unknown = sorted(set(payload) - SECTIONS)
        if unknown:
            raise ValueError(f"Unknown config sections: {', '.join(unknown)}")
        with self._lock:
            stored = AppConfig.from_dict(self._read_file()).to_dict()
            self.save(AppConfig.from_dict(_deep_merge(stored, payload)))
        return self.load()
