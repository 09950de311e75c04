"""
Unit tests for identifier derivation.

The identifier names both the shared memory segment and the socket endpoint,
so it must be a pure function of its inputs and safe to use as a file name.
"""

import base64
import hashlib

import pytest

from soloapp.config.config import Config
from soloapp.identity.identity_hasher import derive, identifier_for

BASE = dict(app_name="Editor", org_name="Acme", org_domain="acme.example")


def _expected(*parts: str) -> str:
    digest = hashlib.sha256(b"SingleApplication" + "".join(parts).encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii").replace("/", "_")


def test_matches_salted_sha256_of_the_parts_in_order():
    assert derive(**BASE) == _expected("Editor", "Acme", "acme.example")


def test_optional_parts_follow_fixed_order():
    identifier = derive(
        **BASE,
        extra_tokens=["a", "b"],
        version="2.1",
        executable_path="/opt/editor/bin/editor",
        user_name="alice",
        lowercase_path=False,
    )
    assert identifier == _expected(
        "Editor", "Acme", "acme.example", "ab", "2.1", "/opt/editor/bin/editor", "alice"
    )


def test_deterministic():
    assert derive(**BASE, version="1.0") == derive(**BASE, version="1.0")


@pytest.mark.parametrize(
    "override",
    [
        {"app_name": "Editor2"},
        {"org_name": "Acme Corp"},
        {"org_domain": "acme.test"},
        {"extra_tokens": ["profile-b"]},
        {"version": "1.1"},
        {"executable_path": "/usr/local/bin/editor"},
        {"user_name": "bob"},
    ],
)
def test_changing_any_input_changes_identifier(override):
    reference = dict(
        BASE,
        extra_tokens=["profile-a"],
        version="1.0",
        executable_path="/usr/bin/editor",
        user_name="alice",
    )
    assert derive(**dict(reference, **override)) != derive(**reference)


def test_empty_extra_tokens_are_ignored():
    assert derive(**BASE, extra_tokens=[]) == derive(**BASE)
    assert derive(**BASE, extra_tokens=["", ""]) == derive(**BASE)


def test_path_lowercased_on_case_insensitive_platforms():
    assert derive(**BASE, executable_path="C:/Apps/Editor.exe", lowercase_path=True) == derive(
        **BASE, executable_path="c:/apps/editor.exe", lowercase_path=True
    )
    assert derive(**BASE, executable_path="/Apps/Editor", lowercase_path=False) != derive(
        **BASE, executable_path="/apps/editor", lowercase_path=False
    )


def test_identifier_is_usable_as_a_name():
    identifier = derive(**BASE)
    assert "/" not in identifier
    assert len(identifier) == 44


def test_identifier_for_honours_exclusion_flags():
    """Excluded parts must not influence the identifier at all."""
    config = Config(data={"scope": "system", "excludeAppVersion": True, "excludeAppPath": True})

    first = identifier_for(config, "Editor", version="1.0", executable_path="/a", user_name="alice")
    second = identifier_for(config, "Editor", version="2.0", executable_path="/b", user_name="bob")

    assert first == second
    assert first == derive("Editor")


def test_identifier_for_user_scope_includes_user():
    config = Config(data={"scope": "user", "excludeAppVersion": True, "excludeAppPath": True})

    alice = identifier_for(config, "Editor", user_name="alice")
    bob = identifier_for(config, "Editor", user_name="bob")

    assert alice != bob
    assert alice == derive("Editor", user_name="alice")
