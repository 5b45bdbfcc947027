"""
Shade - Configuration Management

This module handles loading, merging, and managing configuration from
TOML files and environment variables. Supports default values and
runtime configuration updates.

Author: Shade contributors
Version: 1.0.0
"""

import copy
import os
import sys
from pathlib import Path
from typing import Any, Dict, Optional

# Python 3.11+ has tomllib built-in, older versions need tomli
if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .constants import (
    CONFIG_FILENAME,
    DATABASE_FILENAME,
    DEFAULT_DATA_DIR,
    DEFAULT_HOST,
    DEFAULT_SERVER_PORT,
    EXPIRY_SWEEP_INTERVAL,
    MAX_MESSAGE_SIZE,
    MESSAGE_TTL_HOURS,
)
from .errors import ConfigError, ErrorCode

ENV_PREFIX = "SHADE"

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "server": {
        "host": DEFAULT_HOST,
        "port": DEFAULT_SERVER_PORT,
    },
    "store": {
        "database": DATABASE_FILENAME,
        "ttl_hours": MESSAGE_TTL_HOURS,
        "sweep_interval": EXPIRY_SWEEP_INTERVAL,
    },
    "limits": {
        "max_message_size": MAX_MESSAGE_SIZE,
    },
    "logging": {
        "level": "INFO",
        "console_logging": True,
        "rich_tracebacks": False,
    },
}


class Config:
    """Configuration manager for Shade.

    Loads configuration from TOML files, merges with defaults,
    and applies environment variable overrides.

    Attributes:
        config_path: Path to the configuration file
        data: Configuration dictionary
    """

    def __init__(self, config_path: Optional[Path] = None):
        """Initialize configuration manager.

        Args:
            config_path: Path to configuration file (optional)
                If not provided, uses default location
        """
        if config_path is None:
            data_dir = Path(DEFAULT_DATA_DIR).expanduser()
            config_path = data_dir / CONFIG_FILENAME

        self.config_path = Path(config_path)
        self.data = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file and merge with defaults.

        Raises:
            ConfigError: If the configuration file cannot be parsed
        """
        config = copy.deepcopy(DEFAULT_CONFIG)

        if self.config_path.exists():
            try:
                with open(self.config_path, "rb") as f:
                    file_config = tomllib.load(f)
            except (OSError, tomllib.TOMLDecodeError) as e:
                raise ConfigError(
                    ErrorCode.E704_CONFIG_PARSE_ERROR,
                    f"Failed to parse configuration file: {e}",
                    {"path": str(self.config_path), "error": str(e)},
                ) from e

            config = self._merge_config(config, file_config)

        return self._apply_env_overrides(config)

    def _merge_config(self, base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively merge override config into base config."""
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration.

        Environment variables follow the pattern: SHADE_SECTION_KEY
        For example: SHADE_SERVER_PORT=3001
        """
        result = copy.deepcopy(config)

        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key in settings:
                env_var = f"{ENV_PREFIX}_{section.upper()}_{key.upper()}"
                env_value = os.environ.get(env_var)

                if env_value is None:
                    continue

                original_type = type(settings[key])
                try:
                    if original_type == bool:
                        result[section][key] = env_value.lower() in ("true", "1", "yes")
                    elif original_type == int:
                        result[section][key] = int(env_value)
                    elif original_type == float:
                        result[section][key] = float(env_value)
                    else:
                        result[section][key] = env_value
                except ValueError:
                    # Keep original value if conversion fails
                    pass

        return result

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value."""
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value."""
        if section not in self.data:
            self.data[section] = {}

        self.data[section][key] = value

    def database_path(self) -> Path:
        """Resolve the message database path relative to the config directory."""
        database = Path(str(self.get("store", "database", DATABASE_FILENAME))).expanduser()
        if database.is_absolute():
            return database
        return self.config_path.parent / database

    def save(self) -> None:
        """Save current configuration to file.

        Raises:
            ConfigError: If saving fails
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w", encoding="utf-8") as f:
                self._write_toml(f, self.data)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to save configuration: {e}",
                {"path": str(self.config_path), "error": str(e)},
            ) from e

    def _write_toml(self, file, data: Dict[str, Any]) -> None:
        """Write configuration data as TOML format."""
        for section, settings in data.items():
            if isinstance(settings, dict):
                file.write(f"[{section}]\n")
                for key, value in settings.items():
                    if isinstance(value, bool):
                        file.write(f"{key} = {str(value).lower()}\n")
                    elif isinstance(value, (int, float)):
                        file.write(f"{key} = {value}\n")
                    elif isinstance(value, str):
                        file.write(f'{key} = "{value}"\n')
                file.write("\n")

    def to_dict(self) -> Dict[str, Any]:
        """Get configuration as dictionary."""
        return copy.deepcopy(self.data)
