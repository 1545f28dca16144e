"""
Duet - Configuration Management

This module handles loading, merging, and managing configuration from
TOML files and environment variables. Supports default values and
runtime configuration updates.

Author: duet contributors
Version: 1.0.0
"""

import copy
import logging
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
    ARGON2_MEMORY_COST,
    ARGON2_PARALLELISM,
    ARGON2_TIME_COST,
    CONFIG_FILENAME,
    CONNECT_TIMEOUT,
    DEFAULT_DATA_DIR,
    DEFAULT_HOST,
    DEFAULT_PORT,
    KDF_ARGON2ID,
    KDF_PBKDF2,
    LOG_DATE_FORMAT,
    LOG_FORMAT,
    PBKDF2_ITERATIONS,
    PENDING_FRAME_LIMIT,
    SEND_TIMEOUT,
)
from .crypto import KdfParams
from .errors import ConfigError, CryptoError, ErrorCode

# Default configuration dictionary
DEFAULT_CONFIG: Dict[str, Any] = {
    "crypto": {
        "kdf": KDF_PBKDF2,
        "pbkdf2_iterations": PBKDF2_ITERATIONS,
        "argon2_time_cost": ARGON2_TIME_COST,
        "argon2_memory_cost": ARGON2_MEMORY_COST,
        "argon2_parallelism": ARGON2_PARALLELISM,
    },
    "session": {
        "send_timeout": float(SEND_TIMEOUT),
        "pending_frame_limit": PENDING_FRAME_LIMIT,
    },
    "network": {
        "host": DEFAULT_HOST,
        "port": DEFAULT_PORT,
        "connect_timeout": float(CONNECT_TIMEOUT),
    },
    "logging": {
        "level": "WARNING",
    },
}

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Config:
    """Configuration manager for Duet.

    Loads configuration from TOML files, merges with defaults,
    and applies environment variable overrides. Provides a simple
    interface for accessing and updating configuration values.

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
        self.validate()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file and merge with defaults.

        Returns:
            Merged configuration dictionary

        Raises:
            ConfigError: If configuration loading or parsing fails
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
        """Recursively merge override config into base config.

        Args:
            base: Base configuration dictionary
            override: Override configuration dictionary

        Returns:
            Merged configuration dictionary
        """
        result = base.copy()

        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration.

        Environment variables follow the pattern: DUET_SECTION_KEY
        For example: DUET_NETWORK_PORT=5001

        Args:
            config: Base configuration dictionary

        Returns:
            Configuration with environment overrides applied

        Raises:
            ConfigError: If an override cannot be converted to the expected type
        """
        result = copy.deepcopy(config)

        for section, settings in config.items():
            if not isinstance(settings, dict):
                continue

            for key in settings:
                env_var = f"DUET_{section.upper()}_{key.upper()}"
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
                except ValueError as e:
                    raise ConfigError(
                        ErrorCode.E703_INVALID_CONFIG,
                        f"Invalid value for {env_var}: {env_value!r}",
                        {"variable": env_var, "value": env_value},
                    ) from e

        return result

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigError: If a value has the wrong type or is out of range
        """
        self._check_types()

        try:
            self.kdf_params().validate()
        except CryptoError as e:
            raise ConfigError(ErrorCode.E703_INVALID_CONFIG, e.message, e.details) from e

        if self.get("session", "send_timeout") <= 0:
            raise ConfigError(ErrorCode.E703_INVALID_CONFIG, "session.send_timeout must be positive")
        if self.get("session", "pending_frame_limit") < 0:
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG, "session.pending_frame_limit must not be negative"
            )
        port = self.get("network", "port")
        if not isinstance(port, int) or not 0 <= port < 65536:
            raise ConfigError(ErrorCode.E703_INVALID_CONFIG, f"Invalid network.port: {port!r}")
        if str(self.get("logging", "level")).upper() not in LOG_LEVELS:
            raise ConfigError(
                ErrorCode.E703_INVALID_CONFIG,
                f"Invalid logging.level: {self.get('logging', 'level')!r}",
            )

    def _check_types(self) -> None:
        """Check every known value against the type of its default.

        Integers are accepted where a float is expected and stored as floats.
        """
        for section, defaults in DEFAULT_CONFIG.items():
            values = self.data.get(section)
            if not isinstance(values, dict):
                raise ConfigError(
                    ErrorCode.E703_INVALID_CONFIG,
                    f"Configuration section [{section}] must be a table",
                    {"section": section},
                )

            for key, default in defaults.items():
                value = values.get(key)
                expected = type(default)
                if expected is float and isinstance(value, int) and not isinstance(value, bool):
                    values[key] = float(value)
                    continue
                if not isinstance(value, expected) or (
                    expected is not bool and isinstance(value, bool)
                ):
                    raise ConfigError(
                        ErrorCode.E703_INVALID_CONFIG,
                        f"Invalid type for {section}.{key}: expected {expected.__name__}, "
                        f"got {type(value).__name__}",
                        {"section": section, "key": key, "value": repr(value)},
                    )

    def kdf_params(self) -> KdfParams:
        """Build key derivation parameters from the [crypto] section."""
        name = self.get("crypto", "kdf")
        if name not in (KDF_PBKDF2, KDF_ARGON2ID):
            raise ConfigError(ErrorCode.E703_INVALID_CONFIG, f"Unknown crypto.kdf: {name!r}")
        return KdfParams(
            name=name,
            iterations=self.get("crypto", "pbkdf2_iterations"),
            time_cost=self.get("crypto", "argon2_time_cost"),
            memory_cost=self.get("crypto", "argon2_memory_cost"),
            parallelism=self.get("crypto", "argon2_parallelism"),
        )

    def get(self, section: str, key: str, default: Any = None) -> Any:
        """Get a configuration value.

        Args:
            section: Configuration section name
            key: Configuration key name
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        return self.data.get(section, {}).get(key, default)

    def set(self, section: str, key: str, value: Any) -> None:
        """Set a configuration value.

        Args:
            section: Configuration section name
            key: Configuration key name
            value: Value to set
        """
        if section not in self.data:
            self.data[section] = {}

        self.data[section][key] = value

    def save(self) -> None:
        """Save current configuration to file.

        Raises:
            ConfigError: If saving fails
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_path, "w") as f:
                self._write_toml(f, self.data)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to save configuration: {e}",
                {"path": str(self.config_path), "error": str(e)},
            ) from e

    @staticmethod
    def _write_toml(file, data: Dict[str, Any]) -> None:
        """Write configuration data as TOML format.

        Args:
            file: File object to write to
            data: Configuration data to write
        """
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
        """Get configuration as dictionary.

        Returns:
            Configuration dictionary
        """
        return copy.deepcopy(self.data)

    @classmethod
    def create_example(cls, path: Path) -> None:
        """Create an example configuration file.

        Args:
            path: Path where to create the example config

        Raises:
            ConfigError: If file creation fails
        """
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w") as f:
                f.write("# Duet Configuration File\n")
                f.write("# Generated example configuration\n\n")
                cls._write_toml(f, DEFAULT_CONFIG)
        except OSError as e:
            raise ConfigError(
                ErrorCode.E702_CONFIG_SAVE_FAILED,
                f"Failed to create example configuration: {e}",
                {"path": str(path), "error": str(e)},
            ) from e


def configure_logging(config: Config) -> None:
    """Configure the root logger from the [logging] section."""
    logging.basicConfig(
        level=str(config.get("logging", "level")).upper(),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )
