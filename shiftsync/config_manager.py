from __future__ import annotations

import errno
import logging
import os
import threading
from pathlib import Path
from typing import Any

import yaml

from shiftsync.models import AppConfig, default_app_config

logger = logging.getLogger(__name__)

MASK = "***"


class ConfigManager:
    """YAML-backed settings file, re-read only when its mtime changes."""

    def __init__(self, config_path: str | os.PathLike[str]) -> None:
        self.config_path = Path(config_path)
        self._lock = threading.RLock()
        self._raw: dict[str, Any] | None = None
        self._raw_mtime: int | None = None
        if not self.config_path.exists():
            logger.info("Writing default config to %s", self.config_path)
            self.save(default_app_config())

    def _read_raw(self) -> dict[str, Any]:
        mtime = self.config_path.stat().st_mtime_ns
        if self._raw is None or mtime != self._raw_mtime:
            data = yaml.safe_load(self.config_path.read_text(encoding="utf-8")) or {}
            if not isinstance(data, dict):
                raise ValueError(f"Config file {self.config_path} must contain a mapping")
            self._raw, self._raw_mtime = data, mtime
        return self._raw

    def load(self) -> AppConfig:
        with self._lock:
            return AppConfig.from_dict(self._read_raw())

    def save(self, config: AppConfig) -> None:
        text = yaml.safe_dump(config.to_dict(), sort_keys=False, allow_unicode=True, default_flow_style=False)
        with self._lock:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            staging = self.config_path.with_name(self.config_path.name + ".tmp")
            staging.write_text(text, encoding="utf-8")
            try:
                staging.replace(self.config_path)
            except OSError as exc:
                # a bind-mounted single file refuses rename
                if exc.errno != errno.EBUSY:
                    raise
                logger.warning("Config %s is busy, writing it in place", self.config_path)
                self.config_path.write_text(text, encoding="utf-8")
                staging.unlink(missing_ok=True)
            self._raw = None

    def masked(self) -> dict[str, Any]:
        config = self.load().to_dict()
        auth = config.get("auth") or {}
        auth["api_tokens"] = [
            {"token": MASK, "user": user} for user in sorted((auth.get("api_tokens") or {}).values())
        ]
        return config
