"""
Tests for agent_sandbox/core/settings.py - ConnectionConfig and SettingsManager.

Tests:
- Connection defaults and SANDBOX_* overrides
- Reconnect backoff schedule
- Profile load/save with platformdirs-style storage
"""

import json

import pytest
from pydantic import ValidationError

from agent_sandbox.core.settings import (
    ConnectionConfig,
    SettingsManager,
    get_settings_manager,
    reconnect_delay,
    reset_settings_manager,
)


class TestConnectionConfig:
    """Tests for ConnectionConfig."""

    def test_defaults(self):
        """Test default tunables."""
        config = ConnectionConfig()

        assert config.connect_timeout == 10.0
        assert config.request_timeout == 30.0
        assert config.reconnect_base_delay == 1.0
        assert config.reconnect_max_delay == 30.0
        assert config.max_reconnect_attempts == 10
        assert config.auto_reconnect is True
        assert config.binary is True
        assert config.silent is False

    def test_from_env(self):
        """Test overrides from SANDBOX_* variables."""
        config = ConnectionConfig.from_env({
            "SANDBOX_REQUEST_TIMEOUT": "5",
            "SANDBOX_MAX_RECONNECT_ATTEMPTS": "2",
            "SANDBOX_SILENT": "true",
            "SANDBOX_BINARY": "",
            "UNRELATED": "x",
        })

        assert config.request_timeout == 5.0
        assert config.max_reconnect_attempts == 2
        assert config.silent is True
        assert config.binary is True

    def test_rejects_invalid_values(self):
        """Test validation of timeouts."""
        with pytest.raises(ValidationError):
            ConnectionConfig(request_timeout=0)
        with pytest.raises(ValidationError):
            ConnectionConfig(max_reconnect_attempts=-1)


class TestReconnectDelay:
    """Tests for the backoff schedule."""

    def test_schedule(self):
        """Test attempts 1..5 wait 1, 2, 4, 8, 16 seconds, then 30."""
        delays = [reconnect_delay(attempt) for attempt in range(8)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0, 30.0]

    def test_large_attempt_is_capped(self):
        assert reconnect_delay(10_000) == 30.0

    def test_custom_base_and_cap(self):
        assert reconnect_delay(2, base=0.5, cap=1.5) == 1.5
        assert reconnect_delay(1, base=0.5, cap=1.5) == 1.0

    def test_negative_attempt(self):
        with pytest.raises(ValueError):
            reconnect_delay(-1)


class TestSettingsManager:
    """Tests for SettingsManager class."""

    def test_defaults_when_missing(self, settings_manager):
        """Test that a missing file yields default settings."""
        settings = settings_manager.load_settings()

        assert settings == {"default_profile": "default", "profiles": {}}
        assert settings_manager.get_profile() is None

    def test_set_and_get_profile(self, settings_manager):
        """Test profile round trip through the config file."""
        assert settings_manager.set_profile("work", "https://sb.example.com", "tok", sandbox_id="sb1")

        profile = settings_manager.get_profile("work")
        assert profile == {"base_url": "https://sb.example.com", "token": "tok", "sandbox_id": "sb1"}
        assert settings_manager.get_config_file_path().exists()

    def test_make_default(self, settings_manager):
        """Test that make_default changes the profile used by get_profile()."""
        settings_manager.set_profile("work", "https://a", "t1")
        settings_manager.set_profile("home", "https://b", "t2", make_default=True)

        assert settings_manager.get_profile()["token"] == "t2"

    def test_corrupt_file_falls_back_to_defaults(self, settings_manager):
        """Test that invalid JSON is ignored."""
        settings_manager.config_dir.mkdir(parents=True)
        settings_manager.config_file.write_text("{not json", encoding="utf-8")

        assert settings_manager.load_settings()["profiles"] == {}

    def test_partial_file_is_merged(self, settings_manager):
        """Test that missing keys are filled from defaults."""
        settings_manager.config_dir.mkdir(parents=True)
        settings_manager.config_file.write_text(json.dumps({"profiles": {"x": {"token": "t"}}}))

        settings = settings_manager.load_settings()
        assert settings["default_profile"] == "default"
        assert settings["profiles"]["x"] == {"token": "t"}

    def test_defaults_not_mutated(self, settings_manager):
        """Test that loaded defaults are independent copies."""
        settings = settings_manager.load_settings()
        settings["profiles"]["leak"] = {}

        assert SettingsManager.DEFAULT_SETTINGS["profiles"] == {}

    def test_singleton(self):
        """Test get_settings_manager caching and reset."""
        first = get_settings_manager()
        assert get_settings_manager() is first

        reset_settings_manager()
        assert get_settings_manager() is not first
