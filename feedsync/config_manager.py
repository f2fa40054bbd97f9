from __future__ import annotations

import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from feedsync.models import AppConfig, default_app_config


logger = logging.getLogger(__name__)


def merge_settings(current: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    """Overlay ``overrides`` on ``current`` section by section.

    Nested mappings are merged key by key; any other value replaces the
    current one. Neither argument is modified.
    """
    result = dict(current)
    for key, value in overrides.items():
        existing = result.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            result[key] = merge_settings(existing, value)
        else:
            result[key] = value
    return result


def _render(config: AppConfig) -> str:
    return yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)


class ConfigManager:
    """YAML-backed application settings.

    The file is created with defaults when missing. Writes go through a
    temporary file that replaces the original.
    """

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        if not self.config_path.exists():
            logger.info("Writing default configuration to %s", self.config_path)
            self.save(default_app_config())

    def _read_raw(self) -> dict[str, Any]:
        text = self.config_path.read_text(encoding="utf-8")
        return yaml.safe_load(text) or {}

    def _write(self, text: str) -> None:
        staging = self.config_path.with_name(self.config_path.name + ".tmp")
        staging.write_text(text, encoding="utf-8")
        try:
            staging.replace(self.config_path)
        except OSError as exc:
            # A bind-mounted config file cannot be swapped out; write it in place.
            if exc.errno != errno.EBUSY:
                raise
            logger.debug("Replacing %s is not possible, writing in place", self.config_path)
            self.config_path.write_text(text, encoding="utf-8")
            staging.unlink(missing_ok=True)

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(self._read_raw())

    def save(self, config: AppConfig) -> None:
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self._write(_render(config))

    def update(self, payload: dict[str, Any]) -> AppConfig:
        """Merge a partial settings payload into the stored file."""
        with self._lock:
            config = AppConfig.from_dict(merge_settings(self.load().to_dict(), payload))
            self.save(config)
            logger.info("Configuration updated: %s", ", ".join(sorted(payload)) or "no sections")
            return config

    def database_path(self) -> str:
        return os.getenv("FEEDSYNC_DB_PATH") or self.load().database.path
