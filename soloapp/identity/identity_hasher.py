"""
Identity Hasher - Derive the identifier shared by all instances of one app.

The identifier names both the shared memory segment holding the coordination
block and the local socket endpoint of the primary, so every process with the
same application identity finds the same primary.

Hash input, in order:
    1. Salt "SingleApplication"
    2. Application name, organization name, organization domain
    3. Extra tokens joined without separator (only if any)
    4. Application version (only if version inclusion is enabled)
    5. Executable path (only if path inclusion is enabled), lower-cased on
       case-insensitive platforms
    6. User name (only if the instance is scoped per user)

The SHA-256 digest is base64 encoded and "/" is replaced by "_" so the result
is a valid file and segment name.

See also:
    - config.py: Mode flags that decide which optional parts are included
    - coordination_block.py, listener.py, connector.py: Consumers of the identifier
"""

import base64
import hashlib
import os
import sys
from typing import Iterable, Optional

SALT = b"SingleApplication"

# Windows and macOS default to case-insensitive filesystems
CASE_INSENSITIVE_PATHS = sys.platform in ("win32", "cygwin", "darwin")


def derive(
    app_name: str,
    org_name: str = "",
    org_domain: str = "",
    extra_tokens: Iterable[str] = (),
    version: Optional[str] = None,
    executable_path: Optional[str] = None,
    user_name: Optional[str] = None,
    lowercase_path: bool = CASE_INSENSITIVE_PATHS,
) -> str:
    """
    Compute the identifier for an application identity.

    Optional parts are left out of the hash when they are None; pass them
    only when the corresponding inclusion flag is enabled.

    Args:
        app_name: Application name
        org_name: Organization name
        org_domain: Organization domain
        extra_tokens: Additional caller-provided data, joined in order
        version: Application version, or None to exclude it
        executable_path: Path of the running executable, or None to exclude it
        user_name: OS user for per-user scoping, or None for system-wide
        lowercase_path: Lower-case executable_path before hashing

    Returns:
        str: Base64 identifier with "/" replaced by "_" (44 characters)
    """
    digest = hashlib.sha256()
    digest.update(SALT)
    digest.update(app_name.encode("utf-8"))
    digest.update(org_name.encode("utf-8"))
    digest.update(org_domain.encode("utf-8"))

    joined = "".join(extra_tokens)
    if joined:
        digest.update(joined.encode("utf-8"))

    if version is not None:
        digest.update(version.encode("utf-8"))

    if executable_path is not None:
        if lowercase_path:
            executable_path = executable_path.lower()
        digest.update(executable_path.encode("utf-8"))

    if user_name is not None:
        digest.update(user_name.encode("utf-8"))

    return base64.b64encode(digest.digest()).decode("ascii").replace("/", "_")


def identifier_for(
    config,
    app_name: str,
    org_name: str = "",
    org_domain: str = "",
    extra_tokens: Iterable[str] = (),
    version: str = "",
    executable_path: Optional[str] = None,
    user_name: str = "",
) -> str:
    """
    Derive the identifier honoring the inclusion flags of a Config.

    executable_path defaults to the running interpreter's main script.
    """
    if executable_path is None:
        executable_path = os.path.abspath(sys.argv[0]) if sys.argv and sys.argv[0] else sys.executable

    return derive(
        app_name,
        org_name,
        org_domain,
        extra_tokens=extra_tokens,
        version=None if config.exclude_app_version else version,
        executable_path=None if config.exclude_app_path else executable_path,
        user_name=user_name if config.user_scoped else None,
    )
