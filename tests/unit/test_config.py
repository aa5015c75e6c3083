"""Unit tests for the configuration module."""

import pytest
from pydantic import ValidationError

from compose_guardian.config import Settings, get_settings


def _make_settings(**overrides) -> Settings:
    """Create a Settings instance isolated from any .env file."""
    defaults = {"_env_file": None}
    defaults.update(overrides)
    return Settings(**defaults)


class TestDefaults:
    """Tests for default values."""

    def test_compose_folder_default(self, monkeypatch):
        monkeypatch.delenv("COMPOSE_FOLDER_PATH", raising=False)
        settings = _make_settings()
        assert settings.compose_folder_path == "/DATA/AppData/casaos/apps/yundera"

    def test_host_address_is_auto_detected_by_default(self, monkeypatch):
        monkeypatch.delenv("HOST_ADDRESS", raising=False)
        assert _make_settings().host_address is None

    def test_daily_check_time(self, monkeypatch):
        monkeypatch.delenv("CHECK_HOUR", raising=False)
        monkeypatch.delenv("CHECK_MINUTE", raising=False)
        settings = _make_settings()
        assert (settings.check_hour, settings.check_minute) == (3, 0)

    def test_file_logging_off_by_default(self, monkeypatch):
        for name in ("LOG_TO_FILE", "LOG_FILE_PATH", "STATE_DIR"):
            monkeypatch.delenv(name, raising=False)
        settings = _make_settings()
        assert settings.log_to_file is False
        assert settings.log_file_path.startswith(settings.state_dir)

    def test_update_commands_are_bounded(self, monkeypatch):
        for name in ("UPDATE_COMMAND_TIMEOUT", "UPDATE_PULL_TIMEOUT"):
            monkeypatch.delenv(name, raising=False)
        settings = _make_settings()
        assert (settings.update_command_timeout, settings.update_pull_timeout) == (60, 600)


class TestEnvironment:
    """Tests for loading values from the environment."""

    def test_compose_folder_from_env(self, monkeypatch):
        monkeypatch.setenv("COMPOSE_FOLDER_PATH", "/opt/stack")
        assert _make_settings().compose_folder_path == "/opt/stack"

    def test_env_names_are_case_insensitive(self, monkeypatch):
        monkeypatch.setenv("script_timeout_seconds", "30")
        assert _make_settings().script_timeout_seconds == 30

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


class TestValidation:
    """Tests for field constraints."""

    def test_check_hour_out_of_range(self):
        with pytest.raises(ValidationError):
            _make_settings(check_hour=24)

    def test_check_minute_out_of_range(self):
        with pytest.raises(ValidationError):
            _make_settings(check_minute=-1)


class TestDerivedPaths:
    """Tests for host paths resolved against the compose folder."""

    def test_script_paths(self):
        settings = _make_settings(compose_folder_path="/srv/compose")
        assert settings.script_list_file == "/srv/compose/scripts/self-check/scripts.list"
        assert settings.script_directory == "/srv/compose/scripts/self-check"
        assert (
            settings.script_wrapper_file
            == "/srv/compose/scripts/tools/execute_script_with_log.sh"
        )

    def test_wrapper_can_be_disabled(self):
        settings = _make_settings(script_wrapper=None)
        assert settings.script_wrapper_file is None

    def test_is_development(self):
        assert _make_settings(environment="Development").is_development is True
        assert _make_settings(environment="production").is_development is False
