"""Configuration loading, resolved settings and template generation."""

from dirsync.config.generator import generate_default_config, save_config_file
from dirsync.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from dirsync.config.settings import (
    DirectoryConfig,
    Settings,
    SyncSettings,
    load_settings,
)

__all__ = [
    "ConfigError",
    "ConfigLoader",
    "DEFAULT_CONFIG_FILE",
    "DirectoryConfig",
    "Settings",
    "SyncSettings",
    "generate_default_config",
    "load_settings",
    "save_config_file",
]
