"""
Configuration loader module for the event tracker backup tool.

Provides YAML-based configuration file loading with support for:
- Loading configuration from default or custom paths
- Graceful handling of missing configuration files
- Basic validation of configuration structure
- Merging with CLI argument overrides
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from eventtracker_backup.daemon import parse_interval
from eventtracker_backup.utils.paths import resolve_config_dir

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


# Known configuration keys and their expected types
VALID_KEYS: dict[str, type[Any] | tuple[type[Any], ...]] = {
    # Dropbox app options
    "app_key": str,
    "redirect_uri": str,
    "remote_dir": str,
    # Backup options
    "retention_count": int,
    "backup_interval": (str, int),
    "daily_backup_enabled": bool,
    # HTTP options
    "http_timeout": (int, float),
    "api_max_retries": int,
    # Local paths
    "db_path": str,
    "cache_dir": str,
    # Logging options
    "verbose": bool,
    "log_dir": str,
    "log_retention_count": int,
    # Daemon options
    "daemon_pid_file": str,
}


class ConfigLoader:
    """
    YAML configuration file loader.

    Handles loading and basic validation of YAML configuration files
    for the eventtracker-backup application.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        config = loader.load()

        # Load from specific file
        config = loader.load_from_file("/path/to/config.yaml")
    """

    def __init__(
        self, config_dir: Path | None = None, config_file: str = DEFAULT_CONFIG_FILE
    ):
        """
        Initialize the configuration loader.

        Args:
            config_dir: Directory containing the configuration file.
                       Defaults to ~/.eventtracker-backup/ or
                       $EVENTTRACKER_BACKUP_CONFIG_DIR
            config_file: Name of the configuration file (default: config.yaml)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    def _get_config_path(self) -> Path:
        """Get the full path to the configuration file."""
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """
        Load configuration from the default configuration file.

        Returns an empty dict if the file doesn't exist, allowing
        graceful operation with CLI defaults.

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        return self.load_from_file(self._get_config_path())

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load configuration from a specific file.

        Args:
            path: Path to the configuration file

        Returns:
            Dictionary containing configuration values, or empty dict if file
            doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        path = Path(path)

        if not path.exists():
            logger.debug(f"Configuration file not found: {path}")
            return {}

        try:
            with open(path, encoding="utf-8") as f:
                config = yaml.safe_load(f)

            if config is None:
                logger.debug(f"Configuration file is empty: {path}")
                return {}

            if not isinstance(config, dict):
                raise ConfigError(
                    f"Configuration file must contain a YAML dictionary, "
                    f"got {type(config).__name__}"
                )

            logger.debug(f"Loaded configuration from {path}")
            return config

        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse YAML configuration file: {e}") from e
        except OSError as e:
            raise ConfigError(f"Failed to read configuration file: {e}") from e

    def validate(self, config: dict[str, Any]) -> None:
        """
        Validate configuration structure and values.

        Args:
            config: Configuration dictionary to validate

        Raises:
            ConfigError: If configuration is invalid
        """
        if not isinstance(config, dict):
            raise ConfigError(
                f"Configuration must be a dictionary, got {type(config).__name__}"
            )

        for key, value in config.items():
            if key not in VALID_KEYS:
                logger.warning(f"Unknown configuration key ignored: {key}")
                continue

            expected_type = VALID_KEYS[key]
            # bool is an int subclass; reject it for numeric keys
            is_bool_for_number = isinstance(value, bool) and expected_type is not bool
            if is_bool_for_number or not isinstance(value, expected_type):
                if isinstance(expected_type, tuple):
                    type_name = " or ".join(t.__name__ for t in expected_type)
                else:
                    type_name = expected_type.__name__
                raise ConfigError(
                    f"Invalid type for '{key}': expected {type_name}, "
                    f"got {type(value).__name__}"
                )

        if "redirect_uri" in config and not config["redirect_uri"].startswith(
            ("http://", "https://")
        ):
            raise ConfigError(
                f"redirect_uri must be an http(s) URL, got '{config['redirect_uri']}'"
            )

        if "remote_dir" in config and not config["remote_dir"].startswith("/"):
            raise ConfigError(
                f"remote_dir must be an absolute Dropbox path, "
                f"got '{config['remote_dir']}'"
            )

        # retention_count of 0 keeps every backup
        non_negative_int_keys = ["retention_count", "log_retention_count"]
        for key in non_negative_int_keys:
            if key in config and config[key] < 0:
                raise ConfigError(f"{key} must be >= 0, got {config[key]}")

        if "api_max_retries" in config and config["api_max_retries"] < 1:
            raise ConfigError(
                f"api_max_retries must be >= 1, got {config['api_max_retries']}"
            )

        if "http_timeout" in config and config["http_timeout"] <= 0:
            raise ConfigError(
                f"http_timeout must be > 0, got {config['http_timeout']}"
            )

        if "backup_interval" in config:
            try:
                parse_interval(config["backup_interval"])
            except ValueError as e:
                raise ConfigError(f"Invalid backup_interval: {e}") from e

    def load_and_validate(self) -> dict[str, Any]:
        """
        Load configuration and validate it.

        Returns:
            Validated configuration dictionary

        Raises:
            ConfigError: If configuration cannot be loaded or is invalid
        """
        config = self.load()
        if config:
            self.validate(config)
        return config
