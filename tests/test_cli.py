"""
Tests for the CLI module.

Tests the command-line interface using Click's testing utilities. The
directory client is mocked; the mirror database is a real file in a
temporary configuration directory.
"""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from dirsync.api.graph_api import ConnectionReport
from dirsync.cli import DEFAULT_CONFIG_DIR, cli, get_config_dir, get_config_file
from dirsync.daemon import DaemonAlreadyRunningError
from dirsync.errors import AuthenticationError, ConfigurationError, TransportError
from dirsync.storage.db import MirrorDatabase
from dirsync.utils import utc_now
from tests.conftest import make_record

CREDENTIALS_ENV = {
    "DIRSYNC_TENANT_ID": "tenant-123",
    "DIRSYNC_CLIENT_ID": "client-456",
    "DIRSYNC_CLIENT_SECRET": "s3cr3t-value",
}

NO_CREDENTIALS_ENV = {
    name: None
    for name in (
        "DIRSYNC_TENANT_ID",
        "DIRSYNC_CLIENT_ID",
        "DIRSYNC_CLIENT_SECRET",
        "AZURE_TENANT_ID",
        "AZURE_CLIENT_ID",
        "AZURE_CLIENT_SECRET",
    )
}


@pytest.fixture(autouse=True)
def quiet_logging():
    """Keep tests from configuring handlers or pruning real log files."""
    with patch("dirsync.cli.main.setup_logging"), patch(
        "dirsync.cli.main.cleanup_old_logs"
    ):
        yield


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def mock_client_class():
    """Patch the DirectoryClient used by the CLI and return the class mock."""
    with patch("dirsync.cli.main.DirectoryClient") as mock_class:
        mock_class.return_value.fetch_users.return_value = []
        yield mock_class


def invoke(runner, tmp_path, args, env=None):
    """Invoke the CLI with the configuration directory set to tmp_path."""
    return runner.invoke(
        cli, ["-c", str(tmp_path), *args], env=env or CREDENTIALS_ENV
    )


def open_db(tmp_path):
    database = MirrorDatabase(str(tmp_path / "dirsync.db"))
    database.initialize()
    return database


class TestHelperFunctions:
    """Tests for CLI helper functions."""

    def test_default_config_dir_is_in_home(self):
        """Test that DEFAULT_CONFIG_DIR is in user's home directory."""
        assert Path.home() / ".dirsync" == DEFAULT_CONFIG_DIR

    def test_get_config_dir_with_custom_path(self, tmp_path):
        """Test get_config_dir returns custom path when provided."""
        assert get_config_dir(str(tmp_path)) == tmp_path.resolve()

    def test_get_config_dir_with_none_returns_default(self):
        """Test get_config_dir returns DEFAULT_CONFIG_DIR when None."""
        env = {k: v for k, v in os.environ.items() if k != "DIRSYNC_CONFIG_DIR"}
        with patch.dict(os.environ, env, clear=True):
            assert get_config_dir(None) == DEFAULT_CONFIG_DIR.resolve()

    def test_get_config_file(self, tmp_path):
        """Test the config file defaults to config.yaml in the config dir."""
        assert get_config_file(None, tmp_path) == tmp_path / "config.yaml"
        assert get_config_file("/etc/dirsync.yaml", tmp_path) == Path(
            "/etc/dirsync.yaml"
        )


class TestCliGroup:
    """Tests for the main CLI group."""

    def test_cli_help(self, runner):
        """Test that CLI shows help."""
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        assert "Directory to local mirror synchronization" in result.output
        for command in ("sync", "tick", "status", "policy", "daemon"):
            assert command in result.output

    def test_cli_version(self, runner):
        """Test that CLI shows version."""
        result = runner.invoke(cli, ["--version"])

        assert result.exit_code == 0
        assert "dirsync" in result.output
        assert "0.1.0" in result.output

    def test_cli_verbose_flag(self, runner, tmp_path):
        """Test that --verbose is passed to logging setup."""
        with patch("dirsync.cli.main.setup_logging") as mock_setup_logging:
            result = runner.invoke(cli, ["-v", "-c", str(tmp_path), "health"])

        assert result.exit_code == 0
        assert mock_setup_logging.call_args.kwargs["verbose"] is True

    def test_config_file_options_are_used(self, runner, tmp_path):
        """Test that log_to_file from the config file reaches logging setup."""
        (tmp_path / "config.yaml").write_text("log_to_file: false\n")

        with patch("dirsync.cli.main.setup_logging") as mock_setup_logging:
            result = runner.invoke(cli, ["-c", str(tmp_path), "health"])

        assert result.exit_code == 0
        assert mock_setup_logging.call_args.kwargs["enable_file_logging"] is False

    def test_invalid_config_warns_and_continues(self, runner, tmp_path):
        """Test that a bad config file does not stop the command."""
        (tmp_path / "config.yaml").write_text("page_size: many\n")

        result = runner.invoke(cli, ["-c", str(tmp_path), "health"])

        assert result.exit_code == 0
        assert "Warning: Configuration error" in result.stderr
        assert result.stdout.strip() == "healthy"


class TestSyncCommand:
    """Tests for the sync command."""

    def test_sync_help(self, runner):
        """Test that sync shows help."""
        result = runner.invoke(cli, ["sync", "--help"])

        assert result.exit_code == 0
        assert "--dry-run" in result.output

    def test_sync_success(self, runner, tmp_path, mock_client_class):
        """Test a successful run prints a summary and fills the mirror."""
        mock_client_class.return_value.fetch_users.return_value = [
            make_record("a"),
            make_record("b"),
            make_record("c", department="N/A"),
        ]

        result = invoke(runner, tmp_path, ["sync"])

        assert result.exit_code == 0
        assert "completed" in result.stdout
        assert "Created:           2" in result.stdout
        assert "Ineligible:        1" in result.stdout
        counts = open_db(tmp_path).count_mirror_users_by_status()
        assert counts["active"] == 2

    def test_sync_json(self, runner, tmp_path, mock_client_class):
        """Test --json prints the run result as JSON."""
        mock_client_class.return_value.fetch_users.return_value = [make_record("a")]

        result = invoke(runner, tmp_path, ["sync", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["success"] is True
        assert data["trigger"] == "manual"
        assert data["summary"]["created"] == 1
        assert data["message"] == "Directory sync completed successfully"

    def test_sync_failure_exits_1(self, runner, tmp_path, mock_client_class):
        """Test a failed run is reported and recorded."""
        mock_client_class.return_value.fetch_users.side_effect = TransportError(
            "connection reset"
        )

        result = invoke(runner, tmp_path, ["sync", "--json"])

        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["success"] is False
        assert data["error_type"] == "TransportError"
        assert open_db(tmp_path).list_sync_run_logs()[0]["status"] == "failed"

    def test_sync_missing_credentials(self, runner, tmp_path, mock_client_class):
        """Test that validation errors fail the run."""
        mock_client_class.return_value.validate_config.side_effect = (
            ConfigurationError("Missing directory credentials: tenant_id")
        )

        result = invoke(runner, tmp_path, ["sync"])

        assert result.exit_code == 1
        assert "Missing directory credentials" in result.stdout

    def test_dry_run_writes_nothing(self, runner, tmp_path, mock_client_class):
        """Test --dry-run shows the plan without changing the mirror."""
        mock_client_class.return_value.fetch_users.return_value = [
            make_record("a", display_name="Ada Lovelace", email="ada@example.com")
        ]

        result = invoke(runner, tmp_path, ["sync", "--dry-run"])

        assert result.exit_code == 0
        assert "Would create:      1" in result.stdout
        assert "Ada Lovelace <ada@example.com>" in result.stdout
        assert "Dry run: no changes were written." in result.stdout
        database = open_db(tmp_path)
        assert database.count_mirror_users_by_status()["active"] == 0
        assert database.list_sync_run_logs() == []

    def test_dry_run_json(self, runner, tmp_path, mock_client_class):
        """Test --dry-run --json prints the plan as JSON."""
        mock_client_class.return_value.fetch_users.return_value = [
            make_record("a"),
            make_record("b", enabled=False),
        ]

        result = invoke(runner, tmp_path, ["sync", "--dry-run", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["to_create"] == ["a"]
        assert data["ineligible"] == ["b"]

    def test_dry_run_fetch_error_exits_1(self, runner, tmp_path, mock_client_class):
        """Test that a failed fetch during a dry run is an error."""
        mock_client_class.return_value.fetch_users.side_effect = AuthenticationError(
            "Token request rejected", status_code=401
        )

        result = invoke(runner, tmp_path, ["sync", "--dry-run"])

        assert result.exit_code == 1
        assert "Error: Token request rejected" in result.stderr


class TestTickCommand:
    """Tests for the tick command."""

    def test_first_tick_seeds_policy(self, runner, tmp_path, mock_client_class):
        """Test that the first tick only seeds the default policy."""
        result = invoke(runner, tmp_path, ["tick"])

        assert result.exit_code == 0
        assert "No sync policies are due." in result.stdout
        mock_client_class.return_value.fetch_users.assert_not_called()
        assert open_db(tmp_path).get_sync_policy("directory_sync") is not None

    def test_due_policy_runs(self, runner, tmp_path, mock_client_class):
        """Test that a due policy triggers a scheduled run."""
        now = utc_now()
        open_db(tmp_path).set_sync_policy("directory_sync", now, next_run_at=now)
        mock_client_class.return_value.fetch_users.return_value = [make_record("a")]

        result = invoke(runner, tmp_path, ["tick", "--json"])

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["success"] is True
        assert data["results"][0]["sync_type"] == "directory_sync"
        assert data["results"][0]["status"] == "success"
        assert open_db(tmp_path).list_sync_run_logs()[0]["trigger"] == "scheduled"

    def test_failed_policy_exits_1(self, runner, tmp_path, mock_client_class):
        """Test that a failed scheduled sync makes the tick exit 1."""
        now = utc_now()
        open_db(tmp_path).set_sync_policy("directory_sync", now, next_run_at=now)
        mock_client_class.return_value.fetch_users.side_effect = TransportError(
            "timed out"
        )

        result = invoke(runner, tmp_path, ["tick"])

        assert result.exit_code == 1
        assert "directory_sync" in result.stdout
        assert "timed out" in result.stdout


class TestStatusCommand:
    """Tests for the status command."""

    def test_status_with_credentials(self, runner, tmp_path, mock_client_class):
        """Test status output for a configured, never-run installation."""
        result = invoke(runner, tmp_path, ["status"])

        assert result.exit_code == 0
        assert "=== Directory Sync Status ===" in result.stdout
        assert "Credentials: configured" in result.stdout
        assert "Active users: 0" in result.stdout
        assert "Last run: Never" in result.stdout
        assert "No sync policies configured." in result.stdout

    def test_status_missing_credentials(self, runner, tmp_path):
        """Test that missing credentials are named."""
        result = invoke(runner, tmp_path, ["status"], env=NO_CREDENTIALS_ENV)

        assert result.exit_code == 0
        assert "missing tenant_id, client_id, client_secret" in result.stdout

    def test_status_after_sync(self, runner, tmp_path, mock_client_class):
        """Test that the last run and mirror counts are shown."""
        mock_client_class.return_value.fetch_users.return_value = [make_record("a")]
        invoke(runner, tmp_path, ["sync"])

        result = invoke(runner, tmp_path, ["status"])

        assert "Active users: 1" in result.stdout
        assert "completed" in result.stdout
        assert "manual" in result.stdout


class TestHistoryCommands:
    """Tests for the runs, ticks and users commands."""

    def test_runs_empty(self, runner, tmp_path):
        """Test runs with no history."""
        result = invoke(runner, tmp_path, ["runs"])

        assert result.exit_code == 0
        assert "No sync runs recorded." in result.stdout

    def test_runs_json(self, runner, tmp_path, mock_client_class):
        """Test runs --json after one sync."""
        invoke(runner, tmp_path, ["sync"])

        result = invoke(runner, tmp_path, ["runs", "--json", "-n", "5"])

        assert result.exit_code == 0
        logs = json.loads(result.stdout)
        assert len(logs) == 1
        assert logs[0]["status"] == "completed"

    def test_ticks(self, runner, tmp_path, mock_client_class):
        """Test ticks after one idle tick."""
        invoke(runner, tmp_path, ["tick"])

        result = invoke(runner, tmp_path, ["ticks"])

        assert result.exit_code == 0
        assert "due=no" in result.stdout

    def test_users_filtered_by_status(self, runner, tmp_path, mock_client_class):
        """Test listing mirrored users by status."""
        mock_client_class.return_value.fetch_users.return_value = [
            make_record("a", display_name="Ada Lovelace", email="ada@example.com")
        ]
        invoke(runner, tmp_path, ["sync"])

        active = invoke(runner, tmp_path, ["users", "--status", "active"])
        inactive = invoke(runner, tmp_path, ["users", "--status", "inactive"])

        assert "Ada Lovelace  <ada@example.com>" in active.stdout
        assert "No users found." in inactive.stdout

    def test_users_rejects_unknown_status(self, runner, tmp_path):
        """Test that --status only accepts known values."""
        result = invoke(runner, tmp_path, ["users", "--status", "deleted"])

        assert result.exit_code == 2


class TestPolicyCommands:
    """Tests for the policy commands."""

    def test_policy_set_and_list(self, runner, tmp_path):
        """Test creating a policy and listing it."""
        result = invoke(
            runner, tmp_path, ["policy", "set", "directory_sync", "--frequency", "12"]
        )

        assert result.exit_code == 0
        assert "Policy 'directory_sync' saved." in result.stdout

        listed = invoke(runner, tmp_path, ["policy", "list"])
        assert "directory_sync" in listed.stdout
        assert "every 12h" in listed.stdout
        assert "enabled" in listed.stdout

    def test_policy_disable(self, runner, tmp_path):
        """Test disabling an existing policy keeps its frequency."""
        invoke(runner, tmp_path, ["policy", "set", "directory_sync", "--frequency", "3"])

        invoke(runner, tmp_path, ["policy", "set", "directory_sync", "--disable"])

        policy = open_db(tmp_path).get_sync_policy("directory_sync")
        assert policy["is_enabled"] is False
        assert policy["frequency_hours"] == 3

    def test_policy_due_now(self, runner, tmp_path):
        """Test --due-now makes the policy due at once."""
        before = utc_now()

        invoke(runner, tmp_path, ["policy", "set", "directory_sync", "--due-now"])

        policy = open_db(tmp_path).get_sync_policy("directory_sync")
        assert policy["next_run_at"] >= before
        assert policy["next_run_at"] <= utc_now()

    def test_new_policy_is_not_run_by_the_next_tick(
        self, runner, tmp_path, mock_client_class
    ):
        """Test that a policy created without --due-now waits one period."""
        invoke(runner, tmp_path, ["policy", "set", "directory_sync", "--frequency", "4"])

        result = invoke(runner, tmp_path, ["tick"])

        assert result.exit_code == 0
        assert "No sync policies are due." in result.stdout
        mock_client_class.return_value.fetch_users.assert_not_called()

    def test_policy_rejects_zero_frequency(self, runner, tmp_path):
        """Test that the frequency must be at least one hour."""
        result = invoke(
            runner, tmp_path, ["policy", "set", "directory_sync", "--frequency", "0"]
        )

        assert result.exit_code == 2


class TestDiagnosticsCommands:
    """Tests for check-connection and health."""

    def test_check_connection_ok(self, runner, tmp_path, mock_client_class):
        """Test a successful diagnostic."""
        mock_client_class.return_value.check_connection.return_value = ConnectionReport(
            config={"tenant_id": {"present": True, "length": 10}},
            token_ok=True,
            graph_ok=True,
            sample_user_count=1,
        )

        result = invoke(runner, tmp_path, ["check-connection"])

        assert result.exit_code == 0
        assert "tenant_id: set (10 chars)" in result.stdout
        assert "1 user(s) returned by the users request" in result.stdout

    def test_check_connection_token_failure(self, runner, tmp_path, mock_client_class):
        """Test that a failed token request exits 1 and skips the users request."""
        mock_client_class.return_value.check_connection.return_value = ConnectionReport(
            token_ok=False, token_status=401, token_error="invalid_client"
        )

        result = invoke(runner, tmp_path, ["check-connection", "--json"])

        assert result.exit_code == 1
        data = json.loads(result.stdout)
        assert data["ok"] is False
        assert data["token_status"] == 401

    def test_health(self, runner, tmp_path):
        """Test health on a fresh configuration directory."""
        result = invoke(runner, tmp_path, ["health"])

        assert result.exit_code == 0
        assert result.stdout.strip() == "healthy"

    def test_health_unhealthy(self, runner, tmp_path):
        """Test health when the database cannot be opened."""
        with patch(
            "dirsync.cli.main.MirrorDatabase", side_effect=OSError("disk full")
        ):
            result = invoke(runner, tmp_path, ["health"])

        assert result.exit_code == 1
        assert "unhealthy" in result.stdout


class TestInitConfigCommand:
    """Tests for the init-config command."""

    def test_init_config_creates_file(self, runner, tmp_path):
        """Test that init-config writes the template."""
        result = invoke(runner, tmp_path, ["init-config"])

        assert result.exit_code == 0
        assert "Configuration file created successfully!" in result.stdout
        assert (tmp_path / "config.yaml").exists()

    def test_init_config_refuses_overwrite(self, runner, tmp_path):
        """Test that an existing file is kept without --force."""
        (tmp_path / "config.yaml").write_text("verbose: true\n")

        result = invoke(runner, tmp_path, ["init-config"])

        assert result.exit_code == 1
        assert "already exists" in result.stderr
        assert (tmp_path / "config.yaml").read_text() == "verbose: true\n"

    def test_init_config_force(self, runner, tmp_path):
        """Test that --force replaces the file."""
        (tmp_path / "config.yaml").write_text("verbose: true\n")

        result = invoke(runner, tmp_path, ["init-config", "--force"])

        assert result.exit_code == 0
        assert "verbose: true\n" != (tmp_path / "config.yaml").read_text()


class TestDaemonCommands:
    """Tests for the daemon commands."""

    @pytest.fixture
    def pid_file(self, tmp_path):
        pid_file = tmp_path / "daemon.pid"
        (tmp_path / "config.yaml").write_text(f"daemon_pid_file: {pid_file}\n")
        return pid_file

    def test_daemon_status_stopped(self, runner, tmp_path, pid_file):
        """Test status without a PID file."""
        result = invoke(runner, tmp_path, ["daemon", "status"])

        assert result.exit_code == 0
        assert "=== Daemon Status ===" in result.stdout
        assert "Stopped" in result.stdout

    def test_daemon_status_running(self, runner, tmp_path, pid_file):
        """Test status with a live PID."""
        pid_file.write_text(str(os.getpid()))

        result = invoke(runner, tmp_path, ["daemon", "status"])

        assert "Running" in result.stdout
        assert f"Process ID: {os.getpid()}" in result.stdout

    def test_daemon_status_stale(self, runner, tmp_path, pid_file):
        """Test status with a PID file left by a dead process."""
        pid_file.write_text("99999999")

        result = invoke(runner, tmp_path, ["daemon", "status"])

        assert "Stale PID file exists (PID: 99999999)" in result.stdout

    def test_daemon_stop_without_daemon(self, runner, tmp_path, pid_file):
        """Test stop when nothing is running."""
        result = invoke(runner, tmp_path, ["daemon", "stop"])

        assert result.exit_code == 0
        assert "No daemon is currently running." in result.stdout

    def test_daemon_stop_sends_signal(self, runner, tmp_path, pid_file):
        """Test stop signals the recorded daemon."""
        with patch(
            "dirsync.daemon.PIDFileManager.send_stop", return_value=4242
        ) as mock_send_stop:
            result = invoke(runner, tmp_path, ["daemon", "stop"])

        assert result.exit_code == 0
        assert "Stop signal sent to daemon (PID: 4242)." in result.stdout
        mock_send_stop.assert_called_once_with()

    def test_daemon_start_invalid_interval(self, runner, tmp_path, pid_file):
        """Test that a malformed interval is rejected."""
        result = invoke(runner, tmp_path, ["daemon", "start", "--interval", "soon"])

        assert result.exit_code == 1
        assert "Invalid interval format" in result.stderr

    def test_daemon_start_runs_scheduler(
        self, runner, tmp_path, pid_file, mock_client_class
    ):
        """Test that start wires the tick callback and runs the daemon."""
        with patch("dirsync.daemon.DaemonScheduler") as mock_daemon_class:
            daemon = mock_daemon_class.return_value
            result = invoke(
                runner,
                tmp_path,
                ["daemon", "start", "--interval", "30s", "--no-initial-tick"],
            )

        assert result.exit_code == 0
        mock_daemon_class.assert_called_once_with(
            interval=30, pid_file=pid_file, run_immediately=False
        )
        daemon.run.assert_called_once_with()

        tick_callback = daemon.set_tick_callback.call_args.args[0]
        assert tick_callback() is True
        assert open_db(tmp_path).list_scheduler_logs()

    def test_daemon_start_already_running(self, runner, tmp_path, pid_file):
        """Test that a second daemon is refused."""
        with patch("dirsync.daemon.DaemonScheduler") as mock_daemon_class:
            mock_daemon_class.return_value.run.side_effect = DaemonAlreadyRunningError(
                "Daemon already running with PID 4242"
            )
            result = invoke(runner, tmp_path, ["daemon", "start"])

        assert result.exit_code == 1
        assert "already running" in result.stderr
        assert "dirsync daemon stop" in result.stdout


@pytest.mark.parametrize("command", ["runs", "ticks", "users", "policy"])
def test_subcommand_help(runner, command):
    """Test that every command group shows help."""
    result = runner.invoke(cli, [command, "--help"])

    assert result.exit_code == 0
    assert "Usage" in result.output


def test_client_is_built_from_settings(runner, tmp_path, mock_client_class):
    """Test that the client receives the resolved directory config."""
    invoke(runner, tmp_path, ["sync"])

    config = mock_client_class.call_args.args[0]
    assert config.tenant_id == "tenant-123"
    assert config.client_secret == "s3cr3t-value"
