"""CLI package for dirsync."""

from dirsync.cli.formatters import (
    format_timestamp,
    show_connection_report,
    show_plan_details,
    show_policies,
    show_run_logs,
    show_tick_logs,
    show_users,
)
from dirsync.cli.main import cli, get_config_dir, get_config_file
from dirsync.utils import DEFAULT_CONFIG_DIR

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "cli",
    "format_timestamp",
    "get_config_dir",
    "get_config_file",
    "show_connection_report",
    "show_plan_details",
    "show_policies",
    "show_run_logs",
    "show_tick_logs",
    "show_users",
]
