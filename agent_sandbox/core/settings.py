r"""
Configuration for agent-sandbox.

Two layers:
- ConnectionConfig: validated tunables of the duplex session (timeouts,
  reconnect backoff, connection flags). Overridable from SANDBOX_* env vars.
- SettingsManager: named sandbox profiles (base URL + token) stored as JSON
  in the OS-standard config directory via platformdirs.

Storage Locations (via platformdirs):
- Windows: %APPDATA%\AgentSandbox\config.json
- Linux: ~/.config/agent-sandbox/config.json
- macOS: ~/Library/Application Support/agent-sandbox/config.json
"""

import copy
import json
import logging
import os
from pathlib import Path
from typing import Optional, Dict, Any, Mapping

from platformdirs import user_config_dir
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://sandbox.oblien.com"


# ============================================================================
# CONNECTION TUNABLES
# ============================================================================

class ConnectionConfig(BaseModel):
    """
    Tunables for one ConnectionManager.

    Attributes:
        connect_timeout: Seconds to wait for the "connected" handshake.
        request_timeout: Default seconds to wait for a correlated reply.
        reconnect_base_delay: Backoff base in seconds.
        reconnect_max_delay: Backoff cap in seconds.
        max_reconnect_attempts: Schedulings before reconnection is abandoned.
        auto_reconnect: Whether an unexpected close triggers reconnection.
        binary: Ask the peer for binary terminal frames.
        silent: Ask the peer not to broadcast this session's activity.
    """

    connect_timeout: float = Field(default=10.0, gt=0)
    request_timeout: float = Field(default=30.0, gt=0)
    reconnect_base_delay: float = Field(default=1.0, gt=0)
    reconnect_max_delay: float = Field(default=30.0, gt=0)
    max_reconnect_attempts: int = Field(default=10, ge=0)
    auto_reconnect: bool = True
    binary: bool = True
    silent: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ConnectionConfig":
        """
        Build a config from SANDBOX_* environment variables.

        Recognized: SANDBOX_CONNECT_TIMEOUT, SANDBOX_REQUEST_TIMEOUT,
        SANDBOX_RECONNECT_BASE_DELAY, SANDBOX_RECONNECT_MAX_DELAY,
        SANDBOX_MAX_RECONNECT_ATTEMPTS, SANDBOX_AUTO_RECONNECT,
        SANDBOX_BINARY, SANDBOX_SILENT. Unset variables keep defaults.

        Args:
            environ: Mapping to read (defaults to os.environ).

        Returns:
            Validated ConnectionConfig.
        """
        env = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for name in cls.model_fields:
            raw = env.get(f"SANDBOX_{name.upper()}")
            if raw is not None and raw.strip() != "":
                values[name] = raw.strip()
        return cls(**values)


def reconnect_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """
    Exponential backoff delay for a reconnect attempt.

    Args:
        attempt: Zero-based attempt counter (value before increment).
        base: Delay of the first attempt, in seconds.
        cap: Upper bound, in seconds.

    Returns:
        min(base * 2**attempt, cap)

    Example:
        >>> [reconnect_delay(a) for a in range(6)]
        [1.0, 2.0, 4.0, 8.0, 16.0, 30.0]
    """
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    # Exponent bound keeps the float finite for very large counters
    return float(min(base * (2 ** min(attempt, 64)), cap))


# ============================================================================
# PROFILE STORE
# ============================================================================

class SettingsManager:
    """
    Manages saved sandbox profiles in OS-standard config directory.

    Settings are stored as JSON and include:
    - profiles: name -> {"base_url", "token", "sandbox_id"}
    - default_profile: profile used when none is named
    """

    APP_NAME = "agent-sandbox"
    APP_AUTHOR = "AgentSandbox"
    CONFIG_FILE_NAME = "config.json"

    DEFAULT_SETTINGS: Dict[str, Any] = {
        "default_profile": "default",
        "profiles": {},
    }

    def __init__(self, config_dir: Optional[Path] = None):
        """
        Initialize SettingsManager.

        Args:
            config_dir: Override for the platformdirs config directory.
        """
        self.config_dir = Path(config_dir) if config_dir else Path(
            user_config_dir(self.APP_NAME, self.APP_AUTHOR)
        )
        self.config_file = self.config_dir / self.CONFIG_FILE_NAME
        logger.debug(f"Settings config directory: {self.config_dir}")

    def load_settings(self) -> Dict[str, Any]:
        """
        Load settings from config file.

        Returns:
            Dict with settings (uses defaults if file doesn't exist).
        """
        if not self.config_file.exists():
            logger.debug("Config file not found, using defaults")
            return copy.deepcopy(self.DEFAULT_SETTINGS)

        try:
            with self.config_file.open("r", encoding="utf-8") as f:
                settings = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse config file: {e}")
            logger.warning("Using default settings")
            return copy.deepcopy(self.DEFAULT_SETTINGS)
        except OSError as e:
            logger.error(f"Failed to load settings: {e}")
            return copy.deepcopy(self.DEFAULT_SETTINGS)

        return self._merge_with_defaults(settings)

    def save_settings(self, settings: Dict[str, Any]) -> bool:
        """
        Save settings to config file.

        Args:
            settings: Settings dict to save.

        Returns:
            True if save succeeded, False otherwise.
        """
        try:
            validated_settings = self._merge_with_defaults(settings)
            self.config_dir.mkdir(parents=True, exist_ok=True)

            # Write to temp file first (atomic write)
            temp_file = self.config_file.with_suffix(".tmp")
            with temp_file.open("w", encoding="utf-8") as f:
                json.dump(validated_settings, f, indent=2)
            temp_file.replace(self.config_file)

            logger.info("Settings saved successfully")
            return True
        except OSError as e:
            logger.error(f"Failed to save settings: {e}")
            return False

    def get_profile(self, name: Optional[str] = None) -> Optional[Dict[str, Any]]:
        """
        Get a saved profile.

        Args:
            name: Profile name (defaults to the default profile).

        Returns:
            Profile dict or None if not configured.
        """
        settings = self.load_settings()
        profile_name = name or settings["default_profile"]
        return settings["profiles"].get(profile_name)

    def set_profile(
        self,
        name: str,
        base_url: str,
        token: str,
        sandbox_id: Optional[str] = None,
        make_default: bool = False,
    ) -> bool:
        """
        Create or replace a profile.

        Args:
            name: Profile name.
            base_url: Sandbox base URL.
            token: Sandbox bearer token.
            sandbox_id: Optional sandbox id.
            make_default: Also mark this profile as the default.

        Returns:
            True if save succeeded.
        """
        settings = self.load_settings()
        settings["profiles"][name] = {
            "base_url": base_url,
            "token": token,
            "sandbox_id": sandbox_id,
        }
        if make_default:
            settings["default_profile"] = name
        return self.save_settings(settings)

    def _merge_with_defaults(self, settings: Dict[str, Any]) -> Dict[str, Any]:
        """
        Merge user settings with defaults to handle missing keys.

        Args:
            settings: User settings dict (potentially incomplete).

        Returns:
            Complete settings dict with defaults filled in.
        """
        merged = copy.deepcopy(self.DEFAULT_SETTINGS)
        if isinstance(settings.get("default_profile"), str):
            merged["default_profile"] = settings["default_profile"]
        if isinstance(settings.get("profiles"), dict):
            merged["profiles"].update(settings["profiles"])
        return merged

    def get_config_file_path(self) -> Path:
        """
        Get absolute path to config file for debugging.

        Returns:
            Path to config.json file.
        """
        return self.config_file


# Singleton instance for global access
_settings_manager: Optional[SettingsManager] = None


def get_settings_manager() -> SettingsManager:
    """
    Get singleton SettingsManager instance.

    Returns:
        Global SettingsManager instance.
    """
    global _settings_manager
    if _settings_manager is None:
        _settings_manager = SettingsManager()
    return _settings_manager


def reset_settings_manager() -> None:
    """
    Reset global SettingsManager instance.

    WARNING: Only use in tests.
    """
    global _settings_manager
    _settings_manager = None


__all__ = [
    "DEFAULT_BASE_URL",
    "ConnectionConfig",
    "reconnect_delay",
    "SettingsManager",
    "get_settings_manager",
    "reset_settings_manager",
]
