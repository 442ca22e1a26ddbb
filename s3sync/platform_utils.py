"""
Cross-platform locations for s3sync.

Centralises OS detection so the config and log modules share one
definition of where s3sync keeps its files.

  - Windows : ``%APPDATA%\\s3sync``
  - macOS   : ``~/Library/Application Support/s3sync``
  - Linux   : ``$XDG_CONFIG_HOME/s3sync`` (default ``~/.config``)
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

IS_WINDOWS: bool = sys.platform == "win32"
IS_MACOS: bool = sys.platform == "darwin"

APP_DIR_NAME = "s3sync"


def get_config_dir() -> Path:
    """Return the application config directory (not created)."""
    if IS_WINDOWS:
        base = os.environ.get("APPDATA", str(Path.home()))
    elif IS_MACOS:
        base = str(Path.home() / "Library" / "Application Support")
    else:
        base = os.environ.get("XDG_CONFIG_HOME", str(Path.home() / ".config"))
    return Path(base) / APP_DIR_NAME


def get_log_path() -> Path:
    """Return the default log file path."""
    if IS_MACOS:
        return Path.home() / "Library" / "Logs" / APP_DIR_NAME / "s3sync.log"
    return get_config_dir() / "s3sync.log"
