"""
Command-line interface for dirsync.

Provides CLI commands for running and scheduling directory synchronization,
inspecting the mirror and its logs, and managing sync policies.

Usage:
    # Show help
    dirsync --help

    # Check credentials and connectivity
    dirsync check-connection

    # Run synchronization
    dirsync sync
    dirsync sync --dry-run
    dirsync sync --json

    # Run due policies once (for cron)
    dirsync tick

    # Run due policies continuously
    dirsync daemon start --interval 15m
"""

import json
import sys
from pathlib import Path
from typing import Any, Optional

import click

from dirsync import __version__
from dirsync.api.graph_api import DirectoryClient
from dirsync.cli.formatters import (
    format_timestamp,
    show_connection_report,
    show_plan_details,
    show_policies,
    show_run_logs,
    show_tick_logs,
    show_users,
    styled_status,
)
from dirsync.config.generator import save_config_file
from dirsync.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from dirsync.config.settings import Settings, load_settings
from dirsync.errors import DirSyncError
from dirsync.storage.db import MirrorDatabase
from dirsync.sync.reconciler import Reconciler, Trigger
from dirsync.sync.record import SyncStatus
from dirsync.sync.scheduler import SyncScheduler, build_handlers
from dirsync.utils import resolve_config_dir, utc_now
from dirsync.utils.logging import cleanup_old_logs, get_logger, setup_logging


def get_config_dir(config_dir: Optional[str]) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_config_file(config_file: Optional[str], config_dir: Path) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file).expanduser()
    return config_dir / DEFAULT_CONFIG_FILE


def _echo_json(data: Any) -> None:
    click.echo(json.dumps(data, indent=2, default=str))


def _settings(ctx: click.Context) -> Settings:
    return ctx.obj["settings"]


def _open_database(ctx: click.Context) -> MirrorDatabase:
    """Open and initialize the mirror database for this invocation."""
    db_path = _settings(ctx).sync.database_path
    if db_path != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    database = MirrorDatabase(db_path)
    database.initialize()
    return database


def _build_reconciler(ctx: click.Context, database: MirrorDatabase) -> Reconciler:
    settings = _settings(ctx)
    return Reconciler(
        client=DirectoryClient(settings.directory),
        database=database,
        settings=settings.sync,
    )


def _pid_file(config: dict[str, Any]) -> Optional[Path]:
    if config.get("daemon_pid_file"):
        return Path(config["daemon_pid_file"]).expanduser()
    return None


@click.group()
@click.version_option(version=__version__, prog_name="dirsync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="DIRSYNC_CONFIG_DIR",
    help="Configuration directory path (default: ~/.dirsync).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="DIRSYNC_CONFIG_FILE",
    help="Configuration file path (default: <config dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: Optional[str],
    config_file: Optional[str],
) -> None:
    """
    Directory to local mirror synchronization.

    Mirrors enabled users with a real department from the organization's
    directory into a local database, and marks users that left or became
    ineligible as inactive.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = get_config_file(config_file, resolved_config_dir)

    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config: dict[str, Any] = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        # Commands still work from environment variables alone
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    ctx.obj["config"] = config
    ctx.obj["settings"] = load_settings(config, config_dir=resolved_config_dir)

    effective_verbose = verbose or config.get("verbose", False)
    ctx.obj["verbose"] = effective_verbose

    log_dir = Path(config["log_dir"]).expanduser() if config.get("log_dir") else None
    setup_logging(
        verbose=effective_verbose,
        log_dir=log_dir,
        enable_file_logging=config.get("log_to_file", True),
    )

    log_retention = config.get("log_retention_count", 10)
    if log_retention > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=log_retention)


# =============================================================================
# Sync Command
# =============================================================================


@cli.command("sync")
@click.option(
    "--dry-run",
    is_flag=True,
    help="Show what would change without writing to the mirror.",
)
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
@click.pass_context
def sync_command(ctx: click.Context, dry_run: bool, as_json: bool) -> None:
    """
    Synchronize the directory into the local mirror.

    Fetches every directory user, keeps enabled users with a real
    department, creates or updates their mirror rows and marks other
    active rows inactive. Exits with status 1 if the run fails.

    Examples:

        # Preview changes
        dirsync sync --dry-run

        # Run and print a machine-readable result
        dirsync sync --json
    """
    logger = get_logger(__name__)

    try:
        database = _open_database(ctx)
        reconciler = _build_reconciler(ctx, database)

        if dry_run:
            plan = reconciler.analyze()
            if as_json:
                _echo_json(plan.to_dict())
            else:
                click.echo(plan.summary())
                show_plan_details(plan)
                click.echo(click.style("\nDry run: no changes were written.", fg="cyan"))
            return

        result = reconciler.run(Trigger.MANUAL)

    except DirSyncError as e:
        logger.error(f"Sync failed: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)
    except Exception as e:
        logger.exception(f"Sync failed: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    if as_json:
        _echo_json(result.to_dict())
    else:
        color = "green" if result.success else "red"
        click.echo(click.style(result.summary(), fg=color))

    if not result.success:
        sys.exit(1)


# =============================================================================
# Tick Command
# =============================================================================


@cli.command("tick")
@click.option("--json", "as_json", is_flag=True, help="Print the result as JSON.")
@click.pass_context
def tick_command(ctx: click.Context, as_json: bool) -> None:
    """
    Run every sync policy that is due, once.

    Intended to be run from cron. Exits with status 1 if the tick or any
    triggered sync failed.

    Example:

        */15 * * * * dirsync tick
    """
    logger = get_logger(__name__)

    try:
        database = _open_database(ctx)
        scheduler = SyncScheduler(
            database=database,
            handlers=build_handlers(_build_reconciler(ctx, database)),
            settings=_settings(ctx).sync,
        )
        result = scheduler.tick()
    except Exception as e:
        logger.exception(f"Scheduler tick failed: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    if as_json:
        _echo_json(result.to_dict())
    elif not result.success:
        click.echo(click.style(f"Scheduler tick failed: {result.error}", fg="red"))
    elif not result.sync_was_due:
        click.echo("No sync policies are due.")
    else:
        for outcome in result.results:
            detail = f" ({outcome.message})" if outcome.message else ""
            click.echo(
                f"{outcome.sync_type}: {styled_status(outcome.status.value)}{detail}"
            )
        click.echo(f"Tick completed in {result.execution_time_ms}ms")

    if result.has_failures:
        sys.exit(1)


# =============================================================================
# Status and History Commands
# =============================================================================


@cli.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """
    Show configuration, mirror and schedule status.

    Example:

        dirsync status
    """
    logger = get_logger(__name__)
    settings = _settings(ctx)

    try:
        click.echo("=== Directory Sync Status ===\n")
        click.echo(f"Configuration directory: {ctx.obj['config_dir']}")
        click.echo(f"Database: {settings.sync.database_path}")

        missing = settings.directory.missing_fields()
        if missing:
            click.echo(
                "Credentials: "
                + click.style(f"missing {', '.join(missing)}", fg="red")
            )
        else:
            click.echo("Credentials: " + click.style("configured", fg="green"))
        click.echo()

        database = _open_database(ctx)
        counts = database.count_mirror_users_by_status()
        click.echo("=== Mirror ===\n")
        click.echo(f"Active users: {counts['active']}")
        click.echo(f"Inactive users: {counts['inactive']}")

        last_runs = database.list_sync_run_logs(limit=1)
        if last_runs:
            last = last_runs[0]
            click.echo(
                f"Last run: {format_timestamp(last['started_at'])} "
                f"({styled_status(last['status'])}, {last['trigger']})"
            )
            if last.get("error_message"):
                click.echo(click.style(f"  {last['error_message']}", fg="red"))
        else:
            click.echo("Last run: Never")

        click.echo("\n=== Policies ===\n")
        show_policies(database.list_sync_policies())

    except Exception as e:
        logger.exception(f"Error getting status: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)


@cli.command("runs")
@click.option(
    "--limit", "-n", default=20, show_default=True, type=click.IntRange(min=1)
)
@click.option("--json", "as_json", is_flag=True, help="Print the logs as JSON.")
@click.pass_context
def runs_command(ctx: click.Context, limit: int, as_json: bool) -> None:
    """Show recent sync runs."""
    logs = _open_database(ctx).list_sync_run_logs(limit=limit)
    if as_json:
        _echo_json(logs)
    else:
        show_run_logs(logs)


@cli.command("ticks")
@click.option(
    "--limit", "-n", default=20, show_default=True, type=click.IntRange(min=1)
)
@click.option("--json", "as_json", is_flag=True, help="Print the logs as JSON.")
@click.pass_context
def ticks_command(ctx: click.Context, limit: int, as_json: bool) -> None:
    """Show recent scheduler ticks."""
    logs = _open_database(ctx).list_scheduler_logs(limit=limit)
    if as_json:
        _echo_json(logs)
    else:
        show_tick_logs(logs)


@cli.command("users")
@click.option(
    "--status",
    "status",
    type=click.Choice([s.value for s in SyncStatus]),
    default=None,
    help="Only show users with this sync status.",
)
@click.option(
    "--limit", "-n", default=50, show_default=True, type=click.IntRange(min=1)
)
@click.pass_context
def users_command(ctx: click.Context, status: Optional[str], limit: int) -> None:
    """List mirrored users."""
    show_users(_open_database(ctx).list_mirror_users(status=status, limit=limit))


# =============================================================================
# Policy Commands
# =============================================================================


@cli.group("policy")
def policy_group() -> None:
    """
    Manage sync policies.

    A policy says how often a sync type runs. The scheduler (dirsync tick
    or the daemon) runs every enabled policy whose next run time has passed.
    """


@policy_group.command("list")
@click.pass_context
def policy_list_command(ctx: click.Context) -> None:
    """List sync policies."""
    show_policies(_open_database(ctx).list_sync_policies())


@policy_group.command("set")
@click.argument("sync_type")
@click.option(
    "--enable/--disable",
    "enabled",
    default=None,
    help="Enable or disable the policy.",
)
@click.option(
    "--frequency",
    type=click.IntRange(min=1),
    default=None,
    help="Hours between runs.",
)
@click.option(
    "--due-now",
    is_flag=True,
    help="Make the policy due on the next tick.",
)
@click.pass_context
def policy_set_command(
    ctx: click.Context,
    sync_type: str,
    enabled: Optional[bool],
    frequency: Optional[int],
    due_now: bool,
) -> None:
    """
    Create or change a sync policy.

    Examples:

        # Run the directory sync every 12 hours
        dirsync policy set directory_sync --frequency 12

        # Pause it
        dirsync policy set directory_sync --disable

        # Run it on the next tick
        dirsync policy set directory_sync --due-now
    """
    logger = get_logger(__name__)
    now = utc_now()

    database = _open_database(ctx)
    policy = database.set_sync_policy(
        sync_type,
        now,
        is_enabled=enabled,
        frequency_hours=frequency,
        next_run_at=now if due_now else None,
    )
    logger.info(f"Updated sync policy '{sync_type}'")
    click.echo(click.style(f"Policy '{sync_type}' saved.", fg="green"))
    show_policies([policy])


# =============================================================================
# Diagnostics Commands
# =============================================================================


@cli.command("check-connection")
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON.")
@click.pass_context
def check_connection_command(ctx: click.Context, as_json: bool) -> None:
    """
    Check directory credentials and connectivity.

    Reports which credentials are set (lengths only, never values), whether
    a token can be obtained and whether the users endpoint answers. Exits
    with status 1 if any check fails.
    """
    client = DirectoryClient(_settings(ctx).directory)
    report = client.check_connection()

    if as_json:
        _echo_json(report.to_dict())
    else:
        show_connection_report(report)

    if not report.ok:
        sys.exit(1)


@cli.command("health")
@click.pass_context
def health_command(ctx: click.Context) -> None:
    """
    Check application health status.

    Prints 'healthy' if the mirror database can be opened. Useful for
    container health checks and monitoring.
    """
    logger = get_logger(__name__)
    try:
        _open_database(ctx).count_mirror_users_by_status()
    except Exception as e:
        logger.error(f"Health check failed: {e}")
        click.echo("unhealthy")
        sys.exit(1)
    click.echo("healthy")


# =============================================================================
# Init-Config Command
# =============================================================================


@cli.command("init-config")
@click.option(
    "--force",
    is_flag=True,
    help="Overwrite existing configuration file if it exists.",
)
@click.pass_context
def init_config_command(ctx: click.Context, force: bool) -> None:
    """
    Generate a default configuration file.

    Creates a configuration file with all available options documented
    and commented out.

    Examples:

        # Create config file (fails if already exists)
        dirsync init-config

        # Overwrite existing config file
        dirsync init-config --force
    """
    config_file = ctx.obj["config_file"]

    click.echo(f"Creating configuration file: {config_file}")

    success, error = save_config_file(config_file, overwrite=force)

    if success:
        click.echo(click.style("Configuration file created successfully!", fg="green"))
        click.echo("\nNext steps:")
        click.echo("1. Set DIRSYNC_TENANT_ID, DIRSYNC_CLIENT_ID and DIRSYNC_CLIENT_SECRET")
        click.echo("2. Run 'dirsync check-connection' to verify access")
        click.echo("3. Run 'dirsync sync --dry-run' to preview the first sync")
    else:
        click.echo(click.style(f"Error: {error}", fg="red"), err=True)
        sys.exit(1)


# =============================================================================
# Daemon Commands
# =============================================================================


@cli.group("daemon")
def daemon_group() -> None:
    """
    Manage the scheduling daemon.

    The daemon runs a scheduler tick at a fixed interval. Whether a sync
    actually runs is decided by the policies (see 'dirsync policy').

    Examples:

        # Start with a 15 minute tick interval
        dirsync daemon start --interval 15m

        # Check daemon status
        dirsync daemon status

        # Stop running daemon
        dirsync daemon stop
    """


@daemon_group.command("start")
@click.option(
    "--interval",
    "-i",
    default=None,
    help=(
        "Tick interval (e.g., '30s', '15m', '1h'). "
        "Defaults to config value or '15m'."
    ),
)
@click.option(
    "--no-initial-tick",
    is_flag=True,
    help="Wait one interval before the first tick.",
)
@click.pass_context
def daemon_start_command(
    ctx: click.Context, interval: Optional[str], no_initial_tick: bool
) -> None:
    """
    Start the scheduling daemon in the foreground.

    Handles SIGTERM/SIGINT for graceful shutdown and writes a PID file so
    only one daemon runs at a time. Run it under a process supervisor to
    keep it in the background.
    """
    logger = get_logger(__name__)
    config = ctx.obj.get("config", {})

    from dirsync.daemon import (
        DaemonAlreadyRunningError,
        DaemonError,
        DaemonScheduler,
        parse_interval,
    )

    effective_interval = interval or config.get("daemon_interval", "15m")
    try:
        interval_seconds = parse_interval(effective_interval)
    except ValueError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    click.echo(f"Starting daemon with {effective_interval} tick interval (Ctrl+C to stop)")

    try:
        database = _open_database(ctx)
        scheduler = SyncScheduler(
            database=database,
            handlers=build_handlers(_build_reconciler(ctx, database)),
            settings=_settings(ctx).sync,
        )

        daemon = DaemonScheduler(
            interval=interval_seconds,
            pid_file=_pid_file(config),
            run_immediately=not no_initial_tick,
        )
        daemon.set_tick_callback(lambda: not scheduler.tick().has_failures)
        daemon.run()

        click.echo(click.style("\nDaemon stopped gracefully.", fg="green"))

    except DaemonAlreadyRunningError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        click.echo("Use 'dirsync daemon stop' to stop the running daemon.")
        sys.exit(1)

    except DaemonError as e:
        logger.error(f"Daemon error: {e}")
        click.echo(click.style(f"Daemon error: {e}", fg="red"), err=True)
        sys.exit(1)

    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)


@daemon_group.command("stop")
@click.pass_context
def daemon_stop_command(ctx: click.Context) -> None:
    """
    Stop the running daemon.

    Sends SIGTERM; the daemon finishes its current tick before exiting.
    """
    from dirsync.daemon import DaemonError, PIDFileManager

    manager = PIDFileManager(_pid_file(ctx.obj.get("config", {})))

    try:
        pid = manager.send_stop()
    except (DaemonError, OSError) as e:
        click.echo(click.style(f"Failed to stop daemon: {e}", fg="red"), err=True)
        sys.exit(1)

    if pid is None:
        click.echo("No daemon is currently running.")
        return

    click.echo(click.style(f"Stop signal sent to daemon (PID: {pid}).", fg="green"))


@daemon_group.command("status")
@click.pass_context
def daemon_status_command(ctx: click.Context) -> None:
    """Show whether the daemon is running."""
    from dirsync.daemon import DaemonError, PIDFileManager

    manager = PIDFileManager(_pid_file(ctx.obj.get("config", {})))

    click.echo("=== Daemon Status ===\n")

    try:
        pid = manager.running_pid()
        recorded_pid = manager.read()
    except DaemonError as e:
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)

    if pid is not None:
        click.echo(f"Status: {click.style('Running', fg='green')}")
        click.echo(f"Process ID: {pid}")
    elif recorded_pid is not None:
        click.echo(f"Status: {click.style('Stopped', fg='yellow')}")
        click.echo(f"Stale PID file exists (PID: {recorded_pid})")
        click.echo("The stale PID file will be cleaned up on next daemon start.")
    else:
        click.echo(f"Status: {click.style('Stopped', fg='yellow')}")

    if ctx.obj.get("verbose"):
        click.echo(f"\nPID file: {manager.pid_file}")
