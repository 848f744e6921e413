"""
Configuration loader module for directory synchronization.

Provides YAML-based configuration file loading with support for:
- Loading configuration from default or custom paths
- Graceful handling of missing configuration files
- Validation of option types and ranges
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from dirsync.utils.paths import resolve_config_dir

# Default configuration file name
DEFAULT_CONFIG_FILE = "config.yaml"

logger = logging.getLogger(__name__)


class ConfigError(Exception):
    """Raised when configuration loading or validation fails."""

    pass


# Known configuration keys and their expected types
VALID_KEYS: dict[str, type[Any] | tuple[type[Any], ...]] = {
    # General options
    "verbose": bool,
    "database_path": str,
    # Directory provider options
    "tenant_id": str,
    "client_id": str,
    "client_secret": str,
    "client_secret_env": str,
    "graph_scope": str,
    "authority_url": str,
    "graph_base_url": str,
    "page_size": int,
    "request_timeout": (int, float),
    "max_retries": int,
    "retry_initial_delay": (int, float),
    "retry_max_delay": (int, float),
    # Reconciliation options
    "max_row_error_rate": (int, float),
    "lease_ttl_seconds": int,
    "default_frequency_hours": int,
    # Logging options
    "log_dir": str,
    "log_retention_count": int,
    "log_to_file": bool,
    # Daemon options
    "daemon_interval": (str, int),
    "daemon_pid_file": str,
}

POSITIVE_INT_KEYS = (
    "page_size",
    "lease_ttl_seconds",
    "default_frequency_hours",
)

NON_NEGATIVE_INT_KEYS = (
    "max_retries",
    "log_retention_count",
)

POSITIVE_NUMBER_KEYS = (
    "request_timeout",
    "retry_initial_delay",
    "retry_max_delay",
)

# Graph caps $top for /users at 999
MAX_PAGE_SIZE = 999


class ConfigLoader:
    """
    YAML configuration file loader.

    Handles loading and validation of YAML configuration files for dirsync.

    Attributes:
        config_dir: Directory containing the configuration file
        config_file: Name of the configuration file

    Usage:
        loader = ConfigLoader()
        config = loader.load_and_validate()

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
                       Defaults to ~/.dirsync/ or $DIRSYNC_CONFIG_DIR
            config_file: Name of the configuration file (default: config.yaml)
        """
        self.config_dir = resolve_config_dir(config_dir)
        self.config_file = config_file

    def _get_config_path(self) -> Path:
        return self.config_dir / self.config_file

    def load(self) -> dict[str, Any]:
        """
        Load configuration from the default configuration file.

        Returns:
            Dictionary containing configuration values, or empty dict if file
            doesn't exist

        Raises:
            ConfigError: If the configuration file exists but cannot be parsed
        """
        return self.load_from_file(self._get_config_path())

    def load_from_file(self, path: Path | str) -> dict[str, Any]:
        """
        Load configuration from a specific file.

        Returns an empty dict if the file doesn't exist, allowing
        operation from environment variables alone.

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

        Unknown keys are logged and ignored so newer config files keep working
        with older releases.

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
                logger.warning(f"Ignoring unknown configuration key '{key}'")
                continue

            expected_type = VALID_KEYS[key]
            # bool is a subclass of int; reject True/False for numeric options
            is_bool_for_number = isinstance(value, bool) and expected_type is not bool
            if not isinstance(value, expected_type) or is_bool_for_number:
                if isinstance(expected_type, tuple):
                    type_name = " or ".join(t.__name__ for t in expected_type)
                else:
                    type_name = expected_type.__name__
                raise ConfigError(
                    f"Invalid type for '{key}': expected {type_name}, "
                    f"got {type(value).__name__}"
                )

        for key in POSITIVE_INT_KEYS:
            if key in config and config[key] < 1:
                raise ConfigError(f"{key} must be >= 1, got {config[key]}")

        for key in NON_NEGATIVE_INT_KEYS:
            if key in config and config[key] < 0:
                raise ConfigError(f"{key} must be >= 0, got {config[key]}")

        for key in POSITIVE_NUMBER_KEYS:
            if key in config and config[key] <= 0:
                raise ConfigError(f"{key} must be > 0, got {config[key]}")

        if "page_size" in config and config["page_size"] > MAX_PAGE_SIZE:
            raise ConfigError(
                f"page_size must be <= {MAX_PAGE_SIZE}, got {config['page_size']}"
            )

        if "max_row_error_rate" in config:
            rate = config["max_row_error_rate"]
            if not (0.0 <= rate <= 1.0):
                raise ConfigError(
                    f"max_row_error_rate must be between 0.0 and 1.0, got {rate}"
                )

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
