"""
Shared pytest fixtures and test configuration for soloapp.

Integration fixtures hand out unique identifiers and remove every OS object
created under them (shared memory segment, semaphore, socket endpoint) so a
failed test cannot leave a phantom primary behind for the next run.
"""

import json
import os
import uuid
from pathlib import Path
from typing import Any, Dict, Generator

import posix_ipc
import pytest

from soloapp.config.config import Config
from soloapp.identity.identity_hasher import derive
from soloapp.memory.coordination_block import BlockNotFoundError, CoordinationBlock, lock_name_for
from soloapp.util.path_util import endpoint_path


# =============================================================================
# Config Data Fixtures
# =============================================================================

@pytest.fixture
def valid_config_data() -> Dict[str, Any]:
    return {
        "scope": "system",
        "secondaryNotification": True,
        "excludeAppVersion": True,
        "excludeAppPath": False,
        "allowSecondary": True,
        "timeoutMs": 2500,
    }


@pytest.fixture
def partial_config_data() -> Dict[str, Any]:
    return {
        "scope": "system",
        # everything else intentionally missing
    }


@pytest.fixture
def bundled_config_data() -> Dict[str, Any]:
    return {
        "scope": "user",
        "secondaryNotification": False,
        "excludeAppVersion": False,
        "excludeAppPath": False,
        "allowSecondary": False,
        "timeoutMs": 1000,
    }


@pytest.fixture
def secondary_friendly_config() -> Config:
    """Unsaved config letting secondaries keep running, with a short timeout."""
    return Config(
        data={
            "scope": "user",
            "secondaryNotification": False,
            "excludeAppVersion": False,
            "excludeAppPath": False,
            "allowSecondary": True,
            "timeoutMs": 2000,
        }
    )


# =============================================================================
# Path Mocking Fixtures
# =============================================================================

@pytest.fixture
def mock_config_path(tmp_path, mocker) -> Path:
    """Redirect get_config_path() to a temp file so the real config is untouched."""
    config_dir = tmp_path / ".soloapp" / "config"
    config_dir.mkdir(parents=True, exist_ok=True)
    config_file = config_dir / "config.json"

    mocker.patch("soloapp.util.path_util.get_config_path", return_value=str(config_file))
    mocker.patch("soloapp.config.config.get_config_path", return_value=str(config_file))

    return config_file


@pytest.fixture
def mock_packaged_path(tmp_path, mocker, bundled_config_data) -> Path:
    """Serve bundled resources from a temp directory."""
    resources_dir = tmp_path / "resources" / "config"
    resources_dir.mkdir(parents=True, exist_ok=True)
    (resources_dir / "config.json").write_text(json.dumps(bundled_config_data))

    def mock_path(path: str) -> str:
        return str(tmp_path / path)

    mocker.patch("soloapp.util.path_util.get_packaged_path", side_effect=mock_path)
    mocker.patch("soloapp.config.config.get_packaged_path", side_effect=mock_path)

    return tmp_path


@pytest.fixture
def no_dev_mode(mocker, monkeypatch):
    """Make sure neither --reset-config nor SOLOAPP_DEV leaks into config tests."""
    monkeypatch.delenv("SOLOAPP_DEV", raising=False)
    mocker.patch("soloapp.config.config.sys.argv", ["pytest"])


# =============================================================================
# OS Resource Fixtures
# =============================================================================

def cleanup_identifier(identifier: str) -> None:
    try:
        block = CoordinationBlock.attach(identifier)
    except BlockNotFoundError:
        pass
    else:
        block.close()
        block.unlink()

    try:
        posix_ipc.unlink_semaphore(lock_name_for(identifier))
    except posix_ipc.ExistentialError:
        pass

    try:
        os.unlink(endpoint_path(identifier))
    except FileNotFoundError:
        pass


@pytest.fixture
def identifier() -> Generator[str, None, None]:
    """A fresh identifier nobody else uses; its OS objects are removed afterwards."""
    value = derive(f"soloapp-test-{uuid.uuid4().hex}", "soloapp", "tests.local")
    yield value
    cleanup_identifier(value)


@pytest.fixture
def app_name() -> str:
    return f"soloapp-app-{uuid.uuid4().hex}"


@pytest.fixture
def make_app(app_name, secondary_friendly_config):
    """
    Factory for SoloApp instances sharing app_name.

    Every app built here is shut down after the test, newest first, and the
    OS objects of its identifier are removed.
    """
    from soloapp.main import SoloApp

    apps = []

    def factory(config: Config = None, **kwargs) -> SoloApp:
        app = SoloApp(app_name, org_name="soloapp", config=config or secondary_friendly_config, **kwargs)
        apps.append(app)
        return app

    yield factory

    identifiers = {app.identifier for app in apps if app.identifier}
    for app in reversed(apps):
        app.shutdown()
    for value in identifiers:
        cleanup_identifier(value)
