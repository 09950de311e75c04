"""
Path Utilities - Bundled resources, user config and socket endpoint paths.

Three kinds of paths are resolved here:
    1. Bundled resources shipped inside the package (default config.json)
    2. User data under ~/.soloapp/ (persisted config)
    3. Local socket endpoints, one file per identifier in the temp directory

User data layout:
    ~/.soloapp/config/config.json

Endpoint layout:
    <tempdir>/<identifier>  (e.g. /tmp/Jx3k...=)

See also:
    - config.py: Loads and saves settings using these paths
    - listener.py, connector.py: Bind and connect to endpoint_path()
"""

import os
import tempfile
from pathlib import Path

APP_DIR_NAME = ".soloapp"


def get_packaged_path(path: str) -> str:
    """
    Resolve path to a resource bundled with the soloapp package.

    Args:
        path: Path relative to the package root (e.g. "resources/config/config.json")

    Returns:
        str: Absolute path to the resource
    """
    # This file is at soloapp/util/path_util.py
    base = Path(__file__).resolve().parent.parent
    return os.path.join(base, path)


def get_config_path() -> str:
    """
    Get path to the user's configuration file, creating its directory if needed.

    Returns:
        str: Absolute path, e.g. /home/alice/.soloapp/config/config.json
    """
    home = str(Path.home())
    config_dir = os.path.join(home, APP_DIR_NAME, "config")

    if not os.path.exists(config_dir):
        os.makedirs(config_dir)

    return os.path.join(config_dir, "config.json")


def endpoint_path(identifier: str, directory: str = None) -> str:
    """
    Path of the local socket endpoint for identifier.

    Args:
        identifier: Identifier derived by identity_hasher.derive()
        directory: Directory holding the endpoint, defaults to the temp directory
    """
    return os.path.join(directory or tempfile.gettempdir(), identifier)
