"""
User Utilities - Name of the OS user running this process.

The coordination block records the primary's user and per-user scoping mixes
the user name into the identifier. Everything else asks current_os_user() and
never inspects the platform itself.

Lookup order:
    1. psutil.Process().username() (effective user, any platform)
    2. USER / USERNAME environment variables

On Windows psutil reports "DOMAIN\\user"; only the user part is kept.
"""

import os

import psutil


def current_os_user() -> str:
    """
    Return the user name of the current process, or "" if it cannot be found.
    """
    try:
        username = psutil.Process().username()
    except (psutil.Error, KeyError, OSError):
        # KeyError: uid without a passwd entry (containers)
        username = ""

    if "\\" in username:
        username = username.rsplit("\\", 1)[1]

    if not username:
        username = os.environ.get("USER") or os.environ.get("USERNAME") or ""

    return username
