"""
dirsync.utils - Utility module

Common utilities including logging configuration, path resolution and
timestamp handling.
"""

from dirsync.utils.normalization import is_punctuation_only, normalize_string
from dirsync.utils.paths import DEFAULT_CONFIG_DIR, DEFAULT_DB_FILE, resolve_config_dir
from dirsync.utils.timestamps import parse_iso, to_iso, utc_now

__all__ = [
    "normalize_string",
    "is_punctuation_only",
    "resolve_config_dir",
    "DEFAULT_CONFIG_DIR",
    "DEFAULT_DB_FILE",
    "parse_iso",
    "to_iso",
    "utc_now",
]
