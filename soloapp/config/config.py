"""
Configuration Management - Persistent instance options with fallback defaults.

This module loads and saves the options that shape how instances of an
application find each other. Settings are stored as JSON at
~/.soloapp/config/config.json.

Configuration sources:
    1. Bundled defaults: soloapp/resources/config/config.json
    2. User config: ~/.soloapp/config/config.json (created on first run)
    3. Dev mode: --reset-config flag or SOLOAPP_DEV env var forces a reset

Settings managed:
    - scope: "user" (one primary per OS user) or "system" (one per machine)
    - secondaryNotification: Primary is notified when a secondary starts
    - excludeAppVersion: Leave the version out of the identifier
    - excludeAppPath: Leave the executable path out of the identifier
    - allowSecondary: Secondary instances keep running instead of exiting
    - timeoutMs: Connect and message timeout in milliseconds

See also:
    - path_util.py: Resolves the bundled and user config paths
    - identity_hasher.py: identifier_for() reads the inclusion flags
    - main.py: Uses Config for every SoloApp
"""

import json
import logging
import os
import os.path
import shutil
import sys
from enum import Flag, auto
from typing import Any, Dict, Optional

from soloapp.util.path_util import get_config_path, get_packaged_path

logger = logging.getLogger(__name__)

BUNDLED_CONFIG_FILE = os.path.join("resources", "config", "config.json")

DEFAULT_SCOPE = "user"
DEFAULT_TIMEOUT_MS = 1000


class Mode(Flag):
    """Option set equivalent to a Config, usable where flags are more natural."""

    USER = auto()
    SYSTEM = auto()
    SECONDARY_NOTIFICATION = auto()
    EXCLUDE_APP_VERSION = auto()
    EXCLUDE_APP_PATH = auto()


def should_use_bundled_config() -> bool:
    """True if the user config should be discarded in favour of bundled defaults."""
    return "--reset-config" in sys.argv or bool(os.environ.get("SOLOAPP_DEV"))


def _copy_bundled(config_path: str) -> None:
    shutil.copy(get_packaged_path(BUNDLED_CONFIG_FILE), config_path)


def load(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load configuration from the user's file, falling back to bundled defaults.

    Loading priority:
        1. Dev mode (--reset-config or SOLOAPP_DEV): reset to bundled defaults
        2. User config exists and is valid JSON: use it
        3. Missing or corrupt user config: copy bundled defaults and use those

    Args:
        config_path: Override for the user config location

    Returns:
        dict: Raw configuration with camelCase keys
    """
    config_path = config_path or get_config_path()

    if should_use_bundled_config():
        if os.path.exists(config_path):
            os.remove(config_path)
        _copy_bundled(config_path)
        logger.info("Reset config to bundled defaults: %s", config_path)

    try:
        with open(config_path, "r") as f:
            data = json.load(f)
    except (FileNotFoundError, json.JSONDecodeError):
        logger.info("Config %s missing or unreadable, restoring defaults", config_path)
        _copy_bundled(config_path)
        with open(config_path, "r") as f:
            data = json.load(f)

    return data if isinstance(data, dict) else {}


class Config:
    """
    Instance options with persistence.

    Attributes:
        scope (str): "user" or "system"
        secondary_notification (bool): Signal the primary for every secondary
        exclude_app_version (bool): Version not part of the identifier
        exclude_app_path (bool): Executable path not part of the identifier
        allow_secondary (bool): Secondaries keep running
        timeout_ms (int): Connect and message timeout

    Args:
        config_path: Override for the user config location
        data: Use this dict instead of reading any file (nothing is saved
            unless save() is called)
    """

    def __init__(self, config_path: Optional[str] = None, data: Optional[Dict[str, Any]] = None) -> None:
        self.config_path = config_path
        if data is None:
            data = load(config_path)

        scope = data.get("scope", DEFAULT_SCOPE)
        self.scope = scope if scope in ("user", "system") else DEFAULT_SCOPE
        self.secondary_notification = bool(data.get("secondaryNotification", False))
        self.exclude_app_version = bool(data.get("excludeAppVersion", False))
        self.exclude_app_path = bool(data.get("excludeAppPath", False))
        self.allow_secondary = bool(data.get("allowSecondary", False))
        self.timeout_ms = int(data.get("timeoutMs", DEFAULT_TIMEOUT_MS))

    @classmethod
    def from_mode(cls, mode: Mode, allow_secondary: bool = False, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> "Config":
        """Build an unsaved Config from a Mode flag set."""
        return cls(
            data={
                "scope": "user" if Mode.USER in mode else "system",
                "secondaryNotification": Mode.SECONDARY_NOTIFICATION in mode,
                "excludeAppVersion": Mode.EXCLUDE_APP_VERSION in mode,
                "excludeAppPath": Mode.EXCLUDE_APP_PATH in mode,
                "allowSecondary": allow_secondary,
                "timeoutMs": timeout_ms,
            }
        )

    @property
    def user_scoped(self) -> bool:
        return self.scope == "user"

    @property
    def mode(self) -> Mode:
        mode = Mode.USER if self.user_scoped else Mode.SYSTEM
        if self.secondary_notification:
            mode |= Mode.SECONDARY_NOTIFICATION
        if self.exclude_app_version:
            mode |= Mode.EXCLUDE_APP_VERSION
        if self.exclude_app_path:
            mode |= Mode.EXCLUDE_APP_PATH
        return mode

    def to_dict(self) -> Dict[str, Any]:
        return {
            "scope": self.scope,
            "secondaryNotification": self.secondary_notification,
            "excludeAppVersion": self.exclude_app_version,
            "excludeAppPath": self.exclude_app_path,
            "allowSecondary": self.allow_secondary,
            "timeoutMs": self.timeout_ms,
        }

    def save(self) -> None:
        """
        Persist current settings. Errors propagate to the caller.
        """
        config_path = self.config_path or get_config_path()
        logger.debug("Saving config to %s", config_path)

        with open(config_path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
