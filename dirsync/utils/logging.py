"""
Logging configuration module for dirsync.

Provides centralized logging configuration with support for:
- Console and file logging
- Configurable log levels via environment variables
- Verbose mode for detailed output
- Colored output for better readability (when supported)
- Masking of client secrets and bearer tokens in log messages
"""

import logging
import os
import re
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

from dirsync.utils.paths import DEFAULT_CONFIG_DIR

# Default log format
DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Simplified format for console (less verbose)
CONSOLE_FORMAT = "%(levelname)s: %(message)s"

# Verbose format (includes more details)
VERBOSE_FORMAT = (
    "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
)

# Date format for log timestamps
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Environment variable names
ENV_LOG_LEVEL = "DIRSYNC_LOG_LEVEL"
ENV_DEBUG = "DIRSYNC_DEBUG"
ENV_LOG_FILE = "DIRSYNC_LOG_FILE"

# Default log directory
DEFAULT_LOG_DIR = DEFAULT_CONFIG_DIR / "logs"

# Log file name prefix, used for both creation and retention cleanup
LOG_FILE_PREFIX = "dirsync_"

MASK = "****"


class SensitiveDataFilter(logging.Filter):
    """
    Logging filter that masks secrets in log messages.

    Masks values of key=value and JSON "key": "value" pairs whose key looks
    like a credential, and the token part of Authorization headers.
    """

    SENSITIVE_KEYS = (
        "client_secret",
        "access_token",
        "refresh_token",
        "password",
        "secret",
        "token",
    )

    _KEY_PATTERN = "|".join(SENSITIVE_KEYS)
    _ASSIGNMENT_RE = re.compile(
        rf"\b({_KEY_PATTERN})(\s*=\s*)(?![\"']?\*\*\*\*)[^\s&,;}}\]\"']+",
        re.IGNORECASE,
    )
    _JSON_RE = re.compile(rf"(\"(?:{_KEY_PATTERN})\"\s*:\s*\")[^\"]*(\")", re.IGNORECASE)
    _BEARER_RE = re.compile(r"(Bearer\s+)[A-Za-z0-9\-._~+/]+=*", re.IGNORECASE)

    @classmethod
    def mask(cls, message: str) -> str:
        """Return message with sensitive values replaced by a mask."""
        message = cls._JSON_RE.sub(rf"\g<1>{MASK}\g<2>", message)
        message = cls._ASSIGNMENT_RE.sub(rf"\g<1>\g<2>{MASK}", message)
        message = cls._BEARER_RE.sub(rf"\g<1>{MASK}", message)
        return message

    def filter(self, record: logging.LogRecord) -> bool:
        """Mask the fully formatted message in place."""
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            return True

        masked = self.mask(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


class ColoredFormatter(logging.Formatter):
    """
    A logging formatter that adds ANSI color codes to log messages.

    Colors are only applied when output is to a terminal that supports them.
    """

    # ANSI color codes
    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"

    def __init__(
        self,
        fmt: Optional[str] = None,
        datefmt: Optional[str] = None,
        use_colors: bool = True,
    ):
        """
        Initialize the colored formatter.

        Args:
            fmt: Log message format string
            datefmt: Date format string
            use_colors: Whether to use colors (auto-detected if not specified)
        """
        super().__init__(fmt, datefmt)
        self.use_colors = use_colors and self._supports_color()

    def _supports_color(self) -> bool:
        """Check if the terminal supports colors."""
        if not hasattr(sys.stdout, "isatty") or not sys.stdout.isatty():
            return False

        # https://no-color.org/
        if os.environ.get("NO_COLOR"):
            return False

        term = os.environ.get("TERM", "")
        return term != "dumb"

    def format(self, record: logging.LogRecord) -> str:
        """Format the log record with optional colors."""
        # Copy so other handlers see the uncolored record
        record = logging.makeLogRecord(record.__dict__)

        if self.use_colors and record.levelname in self.COLORS:
            color = self.COLORS[record.levelname]
            record.levelname = f"{color}{record.levelname}{self.RESET}"
            record.msg = f"{color}{record.msg}{self.RESET}"

        return super().format(record)


def get_log_level_from_env() -> int:
    """
    Get the logging level from environment variables.

    Checks DIRSYNC_DEBUG and DIRSYNC_LOG_LEVEL environment variables to
    determine the appropriate log level.

    Returns:
        Logging level constant (e.g., logging.DEBUG, logging.INFO)
    """
    if os.environ.get(ENV_DEBUG, "").lower() in ("1", "true", "yes"):
        return logging.DEBUG

    level_str = os.environ.get(ENV_LOG_LEVEL, "INFO").upper()

    level_map = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "WARN": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }

    return level_map.get(level_str, logging.INFO)


def _dated_log_name() -> str:
    return f"{LOG_FILE_PREFIX}{datetime.now().strftime('%Y%m%d')}.log"


def get_log_file_path(log_dir: Optional[Path] = None) -> Optional[Path]:
    """
    Get the log file path from environment or default location.

    Args:
        log_dir: Directory for the dated log file when DIRSYNC_LOG_FILE
                 is not set. Defaults to ~/.dirsync/logs.

    Returns:
        Path to log file, or None if file logging is disabled
    """
    log_file = os.environ.get(ENV_LOG_FILE)
    if log_file is not None:
        if log_file.lower() in ("none", "disabled", ""):
            return None
        return Path(log_file)

    return (log_dir or DEFAULT_LOG_DIR) / _dated_log_name()


def setup_logging(
    level: Optional[int] = None,
    verbose: bool = False,
    log_dir: Optional[Path] = None,
    log_file: Optional[Path] = None,
    enable_file_logging: bool = True,
    use_colors: bool = True,
) -> logging.Logger:
    """
    Configure logging for the dirsync application.

    Sets up both console and file logging handlers with appropriate
    formatters and levels. Every handler carries a SensitiveDataFilter.

    Args:
        level: Logging level (e.g., logging.DEBUG). If None, determined from
               environment variables.
        verbose: If True, use verbose format with more details.
        log_dir: Directory for log files. If provided, overrides default.
        log_file: Path to log file. If None, uses log_dir or default.
        enable_file_logging: If False, disable file logging entirely.
        use_colors: If True, use colored output for console (when supported).

    Returns:
        The root logger for dirsync

    Example:
        # Basic setup
        setup_logging()

        # Verbose mode for CLI
        setup_logging(verbose=True)

        # Disable file logging (cron jobs that capture stderr)
        setup_logging(enable_file_logging=False)
    """
    if level is None:
        level = get_log_level_from_env()
    if verbose:
        level = logging.DEBUG

    logger = logging.getLogger("dirsync")
    logger.setLevel(level)
    logger.handlers.clear()

    # Prevent propagation to root logger to avoid duplicate messages
    logger.propagate = False

    sensitive_filter = SensitiveDataFilter()
    console_format = VERBOSE_FORMAT if verbose else CONSOLE_FORMAT

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)

    console_formatter: logging.Formatter
    if use_colors:
        console_formatter = ColoredFormatter(console_format, DATE_FORMAT)
    else:
        console_formatter = logging.Formatter(console_format, DATE_FORMAT)

    console_handler.setFormatter(console_formatter)
    console_handler.addFilter(sensitive_filter)
    logger.addHandler(console_handler)

    if enable_file_logging:
        file_path = log_file if log_file else get_log_file_path(log_dir)

        if file_path:
            try:
                file_path.parent.mkdir(parents=True, exist_ok=True)

                file_handler = logging.FileHandler(file_path, encoding="utf-8")
                file_handler.setLevel(logging.DEBUG)  # Always capture debug in file
                file_handler.setFormatter(logging.Formatter(VERBOSE_FORMAT, DATE_FORMAT))
                file_handler.addFilter(sensitive_filter)
                logger.addHandler(file_handler)

                logger.debug(f"Log file: {file_path}")
            except OSError as e:
                logger.warning(f"Could not create log file {file_path}: {e}")

    return logger


def cleanup_old_logs(log_dir: Optional[Path] = None, keep_count: int = 10) -> int:
    """
    Clean up old log files, keeping only the most recent ones.

    Args:
        log_dir: Directory containing log files. Defaults to ~/.dirsync/logs.
        keep_count: Number of log files to keep. Default 10.
                    Set to 0 to disable cleanup.

    Returns:
        Number of files deleted.
    """
    if keep_count <= 0:
        return 0

    logs_dir = log_dir or DEFAULT_LOG_DIR
    if not logs_dir.exists():
        return 0

    deleted_count = 0
    sync_logs = sorted(
        logs_dir.glob(f"{LOG_FILE_PREFIX}*.log"),
        key=lambda p: p.stat().st_mtime,
        reverse=True,
    )
    for old_log in sync_logs[keep_count:]:
        try:
            old_log.unlink()
            deleted_count += 1
        except OSError:
            pass  # Ignore errors deleting old logs

    return deleted_count


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger for a specific module.

    Returns a child logger of the dirsync logger hierarchy.

    Args:
        name: Name of the module (typically __name__)

    Returns:
        Logger instance for the module
    """
    if not name.startswith("dirsync"):
        name = f"dirsync.{name}"

    return logging.getLogger(name)


def set_log_level(level: int) -> None:
    """
    Change the logging level at runtime.

    Args:
        level: New logging level (e.g., logging.DEBUG)
    """
    logger = logging.getLogger("dirsync")
    logger.setLevel(level)

    for handler in logger.handlers:
        # Keep file handler at DEBUG for complete logs
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)


__all__ = [
    "setup_logging",
    "get_logger",
    "set_log_level",
    "cleanup_old_logs",
    "ColoredFormatter",
    "SensitiveDataFilter",
    "get_log_level_from_env",
    "get_log_file_path",
    "DEFAULT_LOG_DIR",
    "DEFAULT_FORMAT",
    "CONSOLE_FORMAT",
    "VERBOSE_FORMAT",
    "DATE_FORMAT",
]
