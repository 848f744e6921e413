"""
Configuration file generator for directory synchronization.

Provides functionality to generate a default configuration file with
documentation for all available options.
"""

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def generate_default_config() -> str:
    """
    Generate default YAML configuration with all options documented.

    Returns:
        String containing YAML configuration with comments
    """
    return """# Directory Sync Configuration
# ============================
#
# Default options for dirsync. CLI arguments always override these values.
#
# To use this configuration:
#   1. Save as ~/.dirsync/config.yaml (or pass --config-file)
#   2. Uncomment and modify options as needed
#   3. Provide the client secret through the environment, not this file


# Directory Provider
# ------------------

# Tenant and application identifiers.
# Can also be set with DIRSYNC_TENANT_ID / DIRSYNC_CLIENT_ID
# (AZURE_TENANT_ID / AZURE_CLIENT_ID are accepted as well).
# tenant_id: 00000000-0000-0000-0000-000000000000
# client_id: 00000000-0000-0000-0000-000000000000

# Name of the environment variable holding the client secret.
# Default: DIRSYNC_CLIENT_SECRET, then AZURE_CLIENT_SECRET
# client_secret_env: DIRSYNC_CLIENT_SECRET

# OAuth scope requested with the client-credentials grant
# Default: https://graph.microsoft.com/.default
# graph_scope: https://graph.microsoft.com/.default

# Users requested per page (1-999)
# Default: 999
# page_size: 999

# Timeout in seconds applied to every HTTP request
# Default: 30
# request_timeout: 30

# Retries for throttled requests (HTTP 429/503) within a single run
# Default: 3
# max_retries: 3

# Endpoints, for sovereign clouds or test doubles
# Default: https://login.microsoftonline.com and https://graph.microsoft.com/v1.0
# authority_url: https://login.microsoftonline.com
# graph_base_url: https://graph.microsoft.com/v1.0

# Backoff between throttled retries, in seconds. Waits double from the
# initial delay up to the maximum; a Retry-After header takes precedence.
# Default: 1 and 30
# retry_initial_delay: 1
# retry_max_delay: 30


# Reconciliation
# --------------

# SQLite database holding the mirror, policies and run logs
# Default: ~/.dirsync/dirsync.db
# database_path: ~/.dirsync/dirsync.db

# Fraction of failed row writes (0.0-1.0) above which the run is recorded
# as failed and inactive-marking is skipped for that run
# Default: 0.5
# max_row_error_rate: 0.5

# Seconds before a lease held by a crashed run expires
# Default: 3600
# lease_ttl_seconds: 3600

# Frequency of the default directory_sync policy when it is first created
# Default: 6
# default_frequency_hours: 6


# Logging
# -------

# Enable verbose output with detailed logging
# Default: false
# verbose: false

# Directory for log files
# Default: ~/.dirsync/logs
# log_dir: ~/.dirsync/logs

# Number of daily log files to keep (0 disables cleanup)
# Default: 10
# log_retention_count: 10

# Write a daily log file in addition to console output
# Default: true
# log_to_file: true


# Daemon
# ------

# How often the daemon runs a scheduler tick ('30s', '15m', '1h', '1d')
# Default: 15m
# daemon_interval: 15m

# PID file used to prevent two daemons from running at once
# Default: ~/.dirsync/daemon.pid
# daemon_pid_file: ~/.dirsync/daemon.pid
"""


def save_config_file(
    config_path: Path, overwrite: bool = False
) -> tuple[bool, str | None]:
    """
    Save the default configuration template with owner-only permissions.

    Args:
        config_path: Path where the config file should be saved
        overwrite: If True, overwrite existing file. If False, fail if file exists.

    Returns:
        Tuple of (success, error message or None)
    """
    try:
        config_path = Path(config_path).expanduser().resolve()

        if config_path.exists() and not overwrite:
            return (
                False,
                f"Configuration file already exists: {config_path}\n"
                "Use --force to overwrite.",
            )

        config_path.parent.mkdir(parents=True, mode=0o700, exist_ok=True)
        config_path.write_text(generate_default_config(), encoding="utf-8")

        # The file may end up holding tenant and client identifiers
        config_path.chmod(0o600)

        logger.info(f"Created configuration file: {config_path}")
        return (True, None)

    except OSError as e:
        error_msg = f"Failed to create configuration file: {e}"
        logger.error(error_msg)
        return (False, error_msg)
