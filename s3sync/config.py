"""Configuration management for s3sync.

Settings come from a YAML or JSON file (chosen by suffix) with command
line flags layered on top.  Everything is validated before the engine
starts; a bad value is a :class:`ConfigError`.
"""

from __future__ import annotations

import json
import logging
import math
import os
import re
from pathlib import Path
from typing import Any

import yaml

from s3sync.filters import compile_pattern
from s3sync.platform_utils import get_config_dir as _platform_config_dir
from s3sync.platform_utils import get_log_path as _platform_log_path

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_SECONDS = 5

DEFAULT_CONFIG: dict[str, Any] = {
    "root_path": "",
    "recursive": False,
    "pattern": "",  # Regex searched in file names; empty = all files
    "window_seconds": DEFAULT_WINDOW_SECONDS,
    "delete_after_upload": False,
    # ---- destination ----
    "bucket": "",
    "key_prefix": "",
    "profile": None,
    "region": None,
    "endpoint_url": None,
    # ---- uploads ----
    "upload_workers": 4,
    "max_attempts": 5,  # total attempts per file, including the first
    "retry_base_delay_seconds": 1.0,
    "retry_max_delay_seconds": 30.0,
    "shutdown_grace_seconds": 30.0,
    "scan_on_start": True,
    # ---- logging ----
    "log_level": "INFO",
    "log_file": "",  # blank = platform default
    "max_log_size_mb": 10,
    "log_backup_count": 3,
}

_YAML_SUFFIXES = (".yaml", ".yml")
_DEFAULT_CONFIG_NAMES = ("config.yaml", "config.yml", "config.json")


class ConfigError(ValueError):
    """Raised for configuration that must stop the engine from starting."""


def get_config_dir() -> Path:
    """Return the platform-appropriate application config directory."""
    return _platform_config_dir()


def find_default_config() -> Path | None:
    """Return the first config file present in the config directory."""
    config_dir = get_config_dir()
    for name in _DEFAULT_CONFIG_NAMES:
        candidate = config_dir / name
        if candidate.is_file():
            return candidate
    return None


def read_config_file(path: Path) -> dict[str, Any]:
    """Parse *path* as YAML or JSON, returning a mapping."""
    try:
        with open(path, encoding="utf-8") as fh:
            if path.suffix.lower() in _YAML_SUFFIXES:
                stored = yaml.safe_load(fh)
            else:
                stored = json.load(fh)
    except (OSError, json.JSONDecodeError, yaml.YAMLError) as exc:
        raise ConfigError(f"Could not read config {path}: {exc}") from exc
    if stored is None:
        return {}
    if not isinstance(stored, dict):
        raise ConfigError(f"Config {path} must contain a mapping at the top level")
    unknown = sorted(set(stored) - set(DEFAULT_CONFIG))
    if unknown:
        logger.warning("Ignoring unknown config keys in %s: %s", path, ", ".join(unknown))
    return {k: v for k, v in stored.items() if k in DEFAULT_CONFIG}


class Config:
    """Resolved settings for one sync root."""

    def __init__(
        self,
        path: Path | None = None,
        overrides: dict[str, Any] | None = None,
    ):
        """Load *path* (if any) and apply non-``None`` *overrides* on top."""
        self._path = path
        self._data: dict[str, Any] = dict(DEFAULT_CONFIG)
        if path is not None:
            self._data.update(read_config_file(path))
            logger.info("Configuration loaded from %s", path)
        for key, value in (overrides or {}).items():
            if key not in DEFAULT_CONFIG:
                raise ConfigError(f"Unknown setting: {key}")
            if value is not None:
                self._data[key] = value

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Config":
        return cls(overrides=data)

    @property
    def source(self) -> Path | None:
        """Return the file this configuration was loaded from, if any."""
        return self._path

    def as_dict(self) -> dict[str, Any]:
        return dict(self._data)

    # ---- watch ----

    @property
    def root_path(self) -> Path:
        """Return the absolute sync root."""
        raw = self._data["root_path"] or os.getcwd()
        return Path(os.path.abspath(os.path.expanduser(str(raw))))

    @property
    def recursive(self) -> bool:
        """Return whether sub-folders are watched."""
        return bool(self._data["recursive"])

    @property
    def pattern(self) -> str:
        """Return the file name regex (blank = all files)."""
        raw = self._data["pattern"]
        return "" if raw is None else str(raw)

    @property
    def window(self) -> float:
        """Return the aggregation window in seconds."""
        return float(self._data["window_seconds"])

    @property
    def delete_after_upload(self) -> bool:
        """Return whether local files are removed after upload."""
        return bool(self._data["delete_after_upload"])

    # ---- destination ----

    @property
    def bucket(self) -> str:
        return self._data["bucket"] or ""

    @property
    def key_prefix(self) -> str:
        return self._data["key_prefix"] or ""

    @property
    def profile(self) -> str | None:
        return self._data["profile"] or None

    @property
    def region(self) -> str | None:
        return self._data["region"] or None

    @property
    def endpoint_url(self) -> str | None:
        return self._data["endpoint_url"] or None

    # ---- uploads ----

    @property
    def upload_workers(self) -> int:
        """Return the maximum number of concurrent uploads."""
        return int(self._data["upload_workers"])

    @property
    def max_attempts(self) -> int:
        """Return the total upload attempts per file."""
        return int(self._data["max_attempts"])

    @property
    def retry_base_delay(self) -> float:
        return float(self._data["retry_base_delay_seconds"])

    @property
    def retry_max_delay(self) -> float:
        return float(self._data["retry_max_delay_seconds"])

    @property
    def shutdown_grace(self) -> float:
        """Return how long shutdown waits for running uploads."""
        return float(self._data["shutdown_grace_seconds"])

    @property
    def scan_on_start(self) -> bool:
        """Return whether existing files are queued when the engine starts."""
        return bool(self._data["scan_on_start"])

    # ---- logging ----

    @property
    def log_level(self) -> str:
        """Return the current logging level name."""
        return str(self._data.get("log_level") or "INFO").upper()

    @property
    def log_file(self) -> Path:
        """Return the log file path."""
        raw = self._data.get("log_file")
        return Path(os.path.expanduser(raw)) if raw else _platform_log_path()

    @property
    def max_log_size_mb(self) -> int:
        """Return the maximum log file size in MB before rotation."""
        return max(1, int(self._data["max_log_size_mb"]))

    @property
    def log_backup_count(self) -> int:
        """Return the number of rotated log backups to keep."""
        return max(0, int(self._data["log_backup_count"]))

    # ---- validation ----

    def validate(self) -> None:
        """Raise :class:`ConfigError` describing the first invalid setting."""
        try:
            root = self.root_path
            window = self.window
            workers = self.upload_workers
            attempts = self.max_attempts
            base_delay = self.retry_base_delay
            max_delay = self.retry_max_delay
            grace = self.shutdown_grace
        except (TypeError, ValueError) as exc:
            raise ConfigError(f"Invalid setting: {exc}") from exc

        if not root.is_dir():
            raise ConfigError(f"Root path is not a directory: {root}")
        if not self.bucket:
            raise ConfigError("A target bucket is required")
        if not math.isfinite(window) or window < 0:
            raise ConfigError(f"Window must be a finite number >= 0 seconds, got {window}")
        try:
            compile_pattern(self.pattern)
        except re.error as exc:
            raise ConfigError(f"Invalid pattern {self.pattern!r}: {exc}") from exc
        if workers < 1:
            raise ConfigError("upload_workers must be at least 1")
        if attempts < 1:
            raise ConfigError("max_attempts must be at least 1")
        if not all(math.isfinite(v) for v in (base_delay, max_delay, grace)):
            raise ConfigError("Retry delays and shutdown grace must be finite")
        if base_delay < 0 or max_delay < 0:
            raise ConfigError("Retry delays must be >= 0")
        if grace < 0:
            raise ConfigError("shutdown_grace_seconds must be >= 0")
