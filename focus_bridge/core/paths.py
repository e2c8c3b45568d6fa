"""Centralized path constants for the focus bridge."""

from __future__ import annotations

import os
import sys
import tempfile
from pathlib import Path


def _is_pyinstaller() -> bool:
    """Check if running as a PyInstaller bundle."""
    return getattr(sys, 'frozen', False) and hasattr(sys, '_MEIPASS')


def _get_base_path() -> Path:
    """Get the base path, handling normal and PyInstaller environments."""
    if _is_pyinstaller():
        return Path(sys._MEIPASS)
    return Path(__file__).resolve().parents[2]


_BASE_PATH = _get_base_path()

# Project root
PROJECT_ROOT = _BASE_PATH

# Bundled resources (native engine binary shipped next to the app)
RESOURCES_DIR = _BASE_PATH / "resources"

# Engine sources: bridge/Dockerfile and the native build output
BRIDGE_DIR_NAME = "bridge"
DOCKERFILE_RELATIVE = Path(BRIDGE_DIR_NAME) / "Dockerfile"
NATIVE_BUILD_BINARY = PROJECT_ROOT / BRIDGE_DIR_NAME / "build" / "focus_bridge"
RESOURCE_BINARY = RESOURCES_DIR / "focus_bridge"

# Configuration
CONFIG_PATH = PROJECT_ROOT / "config.txt"

# Logging
LOGS_DIR = PROJECT_ROOT / "logs"
BRIDGE_LOG_FILE = LOGS_DIR / "bridge.log"

# Host side of the frame exchange directory
DEFAULT_FRAME_DIR = Path(tempfile.gettempdir()) / "focus-wizard-frames"

# User-specific state (allows running from read-only project directories)
_USER_STATE_ENV = os.environ.get("FOCUS_BRIDGE_STATE_DIR")
USER_STATE_DIR = Path(_USER_STATE_ENV).expanduser() if _USER_STATE_ENV else (Path.home() / ".focus_bridge")
USER_LOGS_DIR = USER_STATE_DIR / "logs"


def ensure_directories() -> None:
    """Create the log directories, falling back to the user state dir."""
    try:
        LOGS_DIR.mkdir(parents=True, exist_ok=True)
    except OSError:
        USER_LOGS_DIR.mkdir(parents=True, exist_ok=True)


def writable_log_file() -> Path:
    """Return the bridge log file, or its fallback under the user state dir."""
    if os.access(LOGS_DIR, os.W_OK):
        return BRIDGE_LOG_FILE
    return USER_LOGS_DIR / BRIDGE_LOG_FILE.name


__all__ = [
    'PROJECT_ROOT',
    'RESOURCES_DIR',
    'BRIDGE_DIR_NAME',
    'DOCKERFILE_RELATIVE',
    'NATIVE_BUILD_BINARY',
    'RESOURCE_BINARY',
    'CONFIG_PATH',
    'LOGS_DIR',
    'BRIDGE_LOG_FILE',
    'DEFAULT_FRAME_DIR',
    'USER_STATE_DIR',
    'USER_LOGS_DIR',
    'ensure_directories',
    'writable_log_file',
]
