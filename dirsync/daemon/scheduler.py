"""
Foreground daemon that runs the policy scheduler on a fixed interval.

The daemon only decides when to tick. Which policies run is decided by the
tick from the stored policy schedule, so a restarted daemon never causes
extra syncs. A PID file keeps a second daemon from starting against the
same configuration.
"""

from __future__ import annotations

import logging
import os
import signal
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from dirsync.utils.paths import DEFAULT_CONFIG_DIR
from dirsync.utils.timestamps import utc_now

logger = logging.getLogger(__name__)

DEFAULT_PID_FILE = DEFAULT_CONFIG_DIR / "daemon.pid"

# Seconds between ticks
DEFAULT_INTERVAL = 900

SHUTDOWN_SIGNALS = (signal.SIGTERM, signal.SIGINT)


class DaemonError(Exception):
    """Base exception for daemon-related errors."""


class PIDFileError(DaemonError):
    """Raised when the PID file cannot be read or written."""


class DaemonAlreadyRunningError(DaemonError):
    """Raised when a live daemon already owns the PID file."""


@dataclass
class DaemonStats:
    """Tick counters since the daemon started."""

    started_at: datetime = field(default_factory=utc_now)
    tick_count: int = 0
    tick_success_count: int = 0
    tick_error_count: int = 0
    last_tick_at: datetime | None = None
    last_tick_success: bool = False
    last_error: str | None = None

    def record(self, success: bool, error: str | None = None) -> None:
        self.tick_count += 1
        self.last_tick_at = utc_now()
        self.last_tick_success = success
        if success:
            self.tick_success_count += 1
            self.last_error = None
        else:
            self.tick_error_count += 1
            if error is not None:
                self.last_error = error


class PIDFileManager:
    """
    Single-instance guard for the daemon.

    The PID file holds the PID of the running daemon. The manager also
    finds and signals that daemon for 'dirsync daemon status' and
    'dirsync daemon stop'.
    """

    def __init__(self, pid_file: Path | None = None):
        self.pid_file = pid_file or DEFAULT_PID_FILE

    def read(self) -> int | None:
        """
        Return the PID recorded in the file, or None when there is no file.

        Raises:
            PIDFileError: If the file exists but is unreadable or not a PID
        """
        try:
            content = self.pid_file.read_text().strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PIDFileError(f"Cannot read PID file {self.pid_file}: {e}") from e

        if not content.isdigit():
            raise PIDFileError(f"Invalid PID in file {self.pid_file}: {content!r}")
        return int(content)

    def running_pid(self) -> int | None:
        """Return the recorded PID if that process is alive."""
        pid = self.read()
        if pid is not None and self._is_process_running(pid):
            return pid
        return None

    def create(self) -> None:
        """
        Record this process in the PID file, replacing a stale one.

        Raises:
            DaemonAlreadyRunningError: If the recorded process is alive
            PIDFileError: If the file cannot be written
        """
        recorded = self.read()
        if recorded is not None:
            if self._is_process_running(recorded):
                raise DaemonAlreadyRunningError(
                    f"Daemon already running with PID {recorded}"
                )
            logger.warning(f"Replacing stale PID file left by process {recorded}")

        try:
            self.pid_file.parent.mkdir(parents=True, exist_ok=True)
            self.pid_file.write_text(f"{os.getpid()}\n")
        except OSError as e:
            raise PIDFileError(f"Cannot write PID file {self.pid_file}: {e}") from e
        logger.debug(f"Wrote PID file {self.pid_file}")

    def remove(self) -> None:
        """Delete the PID file if present."""
        try:
            self.pid_file.unlink(missing_ok=True)
        except OSError as e:
            raise PIDFileError(f"Cannot remove PID file {self.pid_file}: {e}") from e

    def send_stop(self) -> int | None:
        """
        Send SIGTERM to the running daemon.

        Returns:
            PID that was signalled, or None if no daemon is running
        """
        pid = self.running_pid()
        if pid is None:
            return None
        os.kill(pid, signal.SIGTERM)
        logger.info(f"Sent SIGTERM to daemon (PID {pid})")
        return pid

    @staticmethod
    def _is_process_running(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Alive, owned by another user
            return True
        return True


class DaemonScheduler:
    """
    Runs a tick callback every interval seconds until SIGTERM or SIGINT.

    Usage:
        daemon = DaemonScheduler(interval=900)
        daemon.set_tick_callback(lambda: not scheduler.tick().has_failures)
        daemon.run()
    """

    def __init__(
        self,
        interval: int = DEFAULT_INTERVAL,
        pid_file: Path | None = None,
        run_immediately: bool = True,
    ):
        """
        Args:
            interval: Seconds between ticks
            pid_file: PID file path, ~/.dirsync/daemon.pid by default
            run_immediately: Tick once at start instead of waiting first
        """
        self.interval = interval
        self.run_immediately = run_immediately
        self.stats = DaemonStats()
        self._pid_manager = PIDFileManager(pid_file)
        self._tick_callback: Callable[[], bool] | None = None
        self._running = False
        self._shutdown_requested = False
        self._previous_handlers: dict[int, Any] = {}

    @property
    def pid_file(self) -> Path:
        return self._pid_manager.pid_file

    @property
    def is_running(self) -> bool:
        return self._running

    def set_tick_callback(self, callback: Callable[[], bool]) -> None:
        """Set the tick function; it returns False when the tick had failures."""
        self._tick_callback = callback

    def stop(self) -> None:
        """Request shutdown once the current tick finishes."""
        logger.info("Stop requested")
        self._shutdown_requested = True

    def _signal_handler(self, signum: int, frame: object) -> None:
        logger.info(f"Received {signal.Signals(signum).name}, shutting down after this tick")
        self._shutdown_requested = True

    def _setup_signal_handlers(self) -> None:
        for signum in SHUTDOWN_SIGNALS:
            self._previous_handlers[signum] = signal.signal(signum, self._signal_handler)

    def _restore_signal_handlers(self) -> None:
        for signum, handler in self._previous_handlers.items():
            if handler is not None:
                signal.signal(signum, handler)
        self._previous_handlers.clear()

    def _run_tick(self) -> bool:
        """
        Call the tick callback and record the outcome in stats.

        Exceptions are logged and counted as a failed tick so the loop
        survives them.
        """
        if self._tick_callback is None:
            logger.warning("No tick callback configured")
            return False

        logger.debug(f"Tick #{self.stats.tick_count + 1}")
        try:
            success = bool(self._tick_callback())
        except Exception as e:
            logger.exception(f"Scheduler tick raised: {e}")
            self.stats.record(False, str(e))
            return False

        self.stats.record(success)
        if not success:
            logger.warning("Scheduler tick completed with failures")
        return success

    def _sleep_interruptible(self, seconds: int) -> bool:
        """
        Wait up to seconds, checking for shutdown once a second.

        Returns:
            False if shutdown was requested during the wait
        """
        deadline = time.time() + seconds
        while not self._shutdown_requested:
            remaining = deadline - time.time()
            if remaining <= 0:
                break
            time.sleep(min(1.0, remaining))
        return not self._shutdown_requested

    def run(self) -> None:
        """
        Run ticks until shutdown. Blocks.

        Raises:
            DaemonAlreadyRunningError: If another daemon holds the PID file
            PIDFileError: If the PID file cannot be written
        """
        self._pid_manager.create()
        self._setup_signal_handlers()
        self._running = True
        self._shutdown_requested = False
        self.stats = DaemonStats()
        logger.info(
            f"Daemon started (PID {os.getpid()}, every {self.interval}s, "
            f"PID file {self.pid_file})"
        )

        try:
            if self.run_immediately:
                self._run_tick()
            while self._sleep_interruptible(self.interval):
                self._run_tick()
        finally:
            self._running = False
            self._restore_signal_handlers()
            self._pid_manager.remove()
            logger.info(
                f"Daemon stopped after {self.stats.tick_count} tick(s), "
                f"{self.stats.tick_error_count} with failures"
            )
