"""Shared fixtures for the Compose Guardian test suite."""

from __future__ import annotations

from pathlib import Path

import pytest

from compose_guardian.config import Settings, get_settings


@pytest.fixture(autouse=True)
def _clear_settings_cache():
    """Keep the cached settings from leaking between tests."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings with every local path inside tmp_path."""
    return Settings(
        _env_file=None,
        compose_folder_path="/srv/compose",
        host_address="10.0.0.1",
        host_user="root",
        ssh_key_path=str(tmp_path / "keys" / "container_ssh_key"),
        authorized_keys_path=str(tmp_path / "host_ssh" / "authorized_keys"),
        route_table_path=str(tmp_path / "route"),
        state_dir=str(tmp_path / "state"),
        reference_dir=str(tmp_path / "reference"),
        target_dir=str(tmp_path / "target"),
        script_timeout_seconds=5,
        fallback_update_timeout=7,
        update_command_timeout=3,
        update_pull_timeout=4,
        environment="test",
    )
