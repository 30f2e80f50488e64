from __future__ import annotations

import copy
import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from unical.models import AppConfig, default_app_config

logger = logging.getLogger(__name__)

MASK = "***"
SECRET_FIELDS = (("publish", "secret_access_key"),)
PATH_FIELDS = (("store", "db_path"), ("publish", "local_root"))


def _deep_merge(base: dict[str, Any], updates: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _dump_yaml(data: dict[str, Any], path: Path) -> None:
    with path.open("w", encoding="utf-8") as handle:
        yaml.safe_dump(data, handle, sort_keys=False, allow_unicode=True, default_flow_style=False)


class ConfigManager:
    """YAML-backed :class:`AppConfig` with atomic saves and masked secrets."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            self.save(default_app_config())

    def load(self) -> AppConfig:
        with self._lock:
            with self.config_path.open("r", encoding="utf-8") as handle:
                data = yaml.safe_load(handle) or {}
        if not isinstance(data, dict):
            logger.warning("Ignoring non-mapping config in %s", self.config_path)
            data = {}
        return AppConfig.from_dict(data)

    def resolved(self) -> AppConfig:
        """Config with relative storage paths anchored at the config file's directory."""
        config = self.load()
        base = self.config_path.resolve().parent
        for section, name in PATH_FIELDS:
            holder = getattr(config, section)
            value = Path(getattr(holder, name))
            if not value.is_absolute():
                setattr(holder, name, str(base / value))
        return config

    def save(self, config: AppConfig) -> None:
        data = config.to_dict()
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.config_path.with_suffix(self.config_path.suffix + ".tmp")
            _dump_yaml(data, tmp_path)
            try:
                tmp_path.replace(self.config_path)
            except OSError as exc:
                # Bind-mounted single files cannot be replaced atomically.
                if exc.errno != errno.EBUSY:
                    raise
                _dump_yaml(data, self.config_path)
                tmp_path.unlink(missing_ok=True)

    def update(self, payload: dict[str, Any]) -> AppConfig:
        payload = copy.deepcopy(payload)
        with self._lock:
            current = self.load().to_dict()
            for section, name in SECRET_FIELDS:
                entry = payload.get(section)
                if isinstance(entry, dict) and str(entry.get(name, "")).strip() in {"", MASK}:
                    entry.pop(name, None)
            config = AppConfig.from_dict(_deep_merge(current, payload))
            self.save(config)
            return config

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        for section, name in SECRET_FIELDS:
            if config.get(section, {}).get(name):
                config[section][name] = MASK
        return config
