"""
SQLite database module for the directory mirror.

Provides persistent storage for mirrored directory users, sync policies,
run logs, scheduler tick logs and advisory leases.
"""

import json
import sqlite3
from collections.abc import Generator, Iterable, Mapping
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Optional

from dirsync.utils.timestamps import parse_iso, to_iso

# SQL Schema for the mirror and its bookkeeping tables
SCHEMA = """
CREATE TABLE IF NOT EXISTS directory_users (
    id INTEGER PRIMARY KEY,
    external_id TEXT NOT NULL,
    display_name TEXT NOT NULL DEFAULT '',
    email TEXT NOT NULL DEFAULT '',
    user_principal_name TEXT NOT NULL DEFAULT '',
    job_title TEXT,
    org_unit TEXT,
    account_enabled INTEGER NOT NULL DEFAULT 0,
    external_created_at TEXT,
    last_synced TEXT,
    sync_status TEXT NOT NULL DEFAULT 'active'
        CHECK (sync_status IN ('active', 'inactive')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(external_id)
);

CREATE INDEX IF NOT EXISTS idx_directory_users_status ON directory_users(sync_status);
CREATE INDEX IF NOT EXISTS idx_directory_users_email ON directory_users(email);

CREATE TABLE IF NOT EXISTS sync_policies (
    id INTEGER PRIMARY KEY,
    sync_type TEXT NOT NULL,
    is_enabled INTEGER NOT NULL DEFAULT 1,
    frequency_hours INTEGER NOT NULL DEFAULT 6 CHECK (frequency_hours >= 1),
    last_run_at TEXT,
    next_run_at TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    UNIQUE(sync_type)
);

CREATE TABLE IF NOT EXISTS sync_run_logs (
    id INTEGER PRIMARY KEY,
    run_id TEXT NOT NULL,
    trigger TEXT NOT NULL,
    started_at TEXT NOT NULL,
    completed_at TEXT,
    status TEXT NOT NULL DEFAULT 'running'
        CHECK (status IN ('running', 'completed', 'failed')),
    users_processed INTEGER NOT NULL DEFAULT 0,
    users_created INTEGER NOT NULL DEFAULT 0,
    users_updated INTEGER NOT NULL DEFAULT 0,
    users_deactivated INTEGER NOT NULL DEFAULT 0,
    users_ineligible INTEGER NOT NULL DEFAULT 0,
    row_errors INTEGER NOT NULL DEFAULT 0,
    error_type TEXT,
    error_message TEXT,
    UNIQUE(run_id)
);

CREATE INDEX IF NOT EXISTS idx_sync_run_logs_started ON sync_run_logs(started_at);

CREATE TABLE IF NOT EXISTS scheduler_logs (
    id INTEGER PRIMARY KEY,
    run_at TEXT NOT NULL,
    sync_was_due INTEGER NOT NULL DEFAULT 0,
    sync_triggered INTEGER NOT NULL DEFAULT 0,
    sync_result TEXT,
    error_message TEXT,
    execution_time_ms INTEGER NOT NULL DEFAULT 0
);

CREATE INDEX IF NOT EXISTS idx_scheduler_logs_run_at ON scheduler_logs(run_at);

CREATE TABLE IF NOT EXISTS sync_leases (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);
"""

# Columns written from a directory record
MIRROR_FIELDS = (
    "display_name",
    "email",
    "user_principal_name",
    "job_title",
    "org_unit",
    "account_enabled",
    "external_created_at",
)

_TIMESTAMP_COLUMNS = frozenset(
    {
        "external_created_at",
        "last_synced",
        "created_at",
        "updated_at",
        "last_run_at",
        "next_run_at",
        "started_at",
        "completed_at",
        "run_at",
        "acquired_at",
        "expires_at",
    }
)

_BOOLEAN_COLUMNS = frozenset(
    {"account_enabled", "is_enabled", "sync_was_due", "sync_triggered"}
)


def _row_to_dict(row: sqlite3.Row) -> dict[str, Any]:
    """Convert a row to a dict, parsing timestamp and boolean columns."""
    result = dict(row)
    for key, value in result.items():
        if key in _TIMESTAMP_COLUMNS:
            result[key] = parse_iso(value)
        elif key in _BOOLEAN_COLUMNS and value is not None:
            result[key] = bool(value)
    if "sync_result" in result:
        raw = result["sync_result"]
        result["sync_result"] = json.loads(raw) if raw else None
    return result


class MirrorDatabase:
    """
    SQLite database manager for the directory mirror.

    Provides methods for:
    - Creating, updating and deactivating mirrored users
    - Reading and advancing sync policies
    - Recording sync runs and scheduler ticks
    - Acquiring and releasing advisory leases

    Every public method runs in its own transaction. Methods raise
    sqlite3.Error on database failures; callers decide whether a failure is
    fatal.

    Usage:
        db = MirrorDatabase('/path/to/dirsync.db')
        db.initialize()

        # Or use in-memory for testing:
        db = MirrorDatabase(':memory:')
        db.initialize()
    """

    def __init__(self, db_path: str):
        """
        Initialize the database manager.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = db_path
        self._shared_connection: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """
        Get a database connection.

        For in-memory databases, returns a shared connection to ensure
        schema persists across operations. For file databases, creates
        a new connection each time.

        Returns:
            sqlite3.Connection: Database connection
        """
        if self.db_path == ":memory:":
            # For in-memory, use shared connection so schema persists
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(":memory:")
                self._shared_connection.row_factory = sqlite3.Row
            return self._shared_connection
        else:
            # Waits for a concurrent writer instead of failing immediately
            conn = sqlite3.connect(self.db_path, timeout=30.0)
            conn.row_factory = sqlite3.Row
            return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for database connections.

        Commits on success and rolls back on any exception.

        Yields:
            sqlite3.Connection: Database connection

        Usage:
            with db.connection() as conn:
                conn.execute("SELECT * FROM directory_users")
        """
        conn = self._get_connection()
        is_shared = self.db_path == ":memory:"
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            # Only close if not using shared connection
            if not is_shared:
                conn.close()

    def initialize(self) -> None:
        """
        Initialize the database schema.

        Creates all tables if they don't exist.
        """
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    def close(self) -> None:
        """Close the shared in-memory connection, if any."""
        if self._shared_connection is not None:
            self._shared_connection.close()
            self._shared_connection = None

    # =========================================================================
    # Mirror Operations
    # =========================================================================

    def get_mirror_user(self, external_id: str) -> Optional[dict[str, Any]]:
        """
        Get a mirrored user by directory id.

        Args:
            external_id: The directory's stable user id

        Returns:
            Dictionary with all mirror columns, or None if not found
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM directory_users WHERE external_id = ?", (external_id,)
            )
            row = cursor.fetchone()
            if row:
                return _row_to_dict(row)
            return None

    def get_mirror_statuses(self) -> dict[str, str]:
        """
        Get the sync status of every mirrored user.

        Returns:
            Mapping of external_id to sync_status
        """
        with self.connection() as conn:
            cursor = conn.execute("SELECT external_id, sync_status FROM directory_users")
            return {row["external_id"]: row["sync_status"] for row in cursor.fetchall()}

    def upsert_mirror_user(
        self,
        external_id: str,
        fields: Mapping[str, Any],
        synced_at: datetime,
    ) -> bool:
        """
        Insert or overwrite a mirrored user and mark it active.

        Existing rows are overwritten unconditionally with the given field
        values; the directory is authoritative.

        Args:
            external_id: The directory's stable user id
            fields: Values for the MIRROR_FIELDS columns
            synced_at: Timestamp stored in last_synced and updated_at

        Returns:
            True if a new row was created, False if an existing row was updated
        """
        values = [fields.get(name) for name in MIRROR_FIELDS]
        values[MIRROR_FIELDS.index("account_enabled")] = int(
            bool(fields.get("account_enabled"))
        )
        values[MIRROR_FIELDS.index("external_created_at")] = to_iso(
            fields.get("external_created_at")
        )
        synced = to_iso(synced_at)

        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT id FROM directory_users WHERE external_id = ?", (external_id,)
            )
            existing = cursor.fetchone()

            if existing:
                assignments = ", ".join(f"{name} = ?" for name in MIRROR_FIELDS)
                conn.execute(
                    f"UPDATE directory_users SET {assignments}, "  # nosec B608
                    "sync_status = 'active', last_synced = ?, updated_at = ? "
                    "WHERE external_id = ?",
                    (*values, synced, synced, external_id),
                )
                return False

            columns = ", ".join(MIRROR_FIELDS)
            placeholders = ", ".join("?" for _ in MIRROR_FIELDS)
            conn.execute(
                f"INSERT INTO directory_users (external_id, {columns}, "  # nosec B608
                "sync_status, last_synced, created_at, updated_at) "
                f"VALUES (?, {placeholders}, 'active', ?, ?, ?)",
                (external_id, *values, synced, synced, synced),
            )
            return True

    def deactivate_missing(self, present_ids: Iterable[str], now: datetime) -> int:
        """
        Mark active users whose id is not in present_ids as inactive.

        Runs as a single bulk update. An empty id set is treated as "no
        information" and changes nothing.

        Args:
            present_ids: External ids of the current eligible directory users
            now: Timestamp stored in last_synced and updated_at

        Returns:
            Number of users marked inactive
        """
        ids = set(present_ids)
        if not ids:
            return 0

        with self.connection() as conn:
            conn.execute(
                "CREATE TEMP TABLE IF NOT EXISTS present_ids "
                "(external_id TEXT PRIMARY KEY)"
            )
            conn.execute("DELETE FROM present_ids")
            conn.executemany(
                "INSERT INTO present_ids (external_id) VALUES (?)",
                ((external_id,) for external_id in ids),
            )
            cursor = conn.execute(
                """
                UPDATE directory_users
                SET sync_status = 'inactive', last_synced = ?, updated_at = ?
                WHERE sync_status = 'active'
                  AND external_id NOT IN (SELECT external_id FROM present_ids)
                """,
                (to_iso(now), to_iso(now)),
            )
            deactivated = cursor.rowcount
            conn.execute("DELETE FROM present_ids")
            return deactivated

    def list_mirror_users(
        self, status: Optional[str] = None, limit: Optional[int] = None
    ) -> list[dict[str, Any]]:
        """
        List mirrored users ordered by display name.

        Args:
            status: Only return users with this sync_status ('active'/'inactive')
            limit: Maximum number of rows to return

        Returns:
            List of mirror user dictionaries
        """
        sql = "SELECT * FROM directory_users"
        params: list[Any] = []
        if status is not None:
            sql += " WHERE sync_status = ?"
            params.append(status)
        sql += " ORDER BY display_name COLLATE NOCASE, external_id"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self.connection() as conn:
            cursor = conn.execute(sql, params)
            return [_row_to_dict(row) for row in cursor.fetchall()]

    def count_mirror_users_by_status(self) -> dict[str, int]:
        """
        Count mirrored users per sync status.

        Returns:
            Dictionary with 'active' and 'inactive' counts
        """
        counts = {"active": 0, "inactive": 0}
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT sync_status, COUNT(*) AS n FROM directory_users "
                "GROUP BY sync_status"
            )
            for row in cursor.fetchall():
                counts[row["sync_status"]] = row["n"]
        return counts

    # =========================================================================
    # Sync Policy Operations
    # =========================================================================

    def ensure_sync_policy(
        self,
        sync_type: str,
        frequency_hours: int,
        next_run_at: Optional[datetime],
        now: datetime,
    ) -> bool:
        """
        Create a policy if none exists for sync_type.

        Existing policies are left untouched.

        Returns:
            True if the policy was created
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT OR IGNORE INTO sync_policies (
                    sync_type, is_enabled, frequency_hours, next_run_at,
                    created_at, updated_at
                ) VALUES (?, 1, ?, ?, ?, ?)
                """,
                (sync_type, frequency_hours, to_iso(next_run_at), to_iso(now), to_iso(now)),
            )
            return cursor.rowcount == 1

    def get_sync_policy(self, sync_type: str) -> Optional[dict[str, Any]]:
        """
        Get a sync policy by type.

        Returns:
            Policy dictionary, or None if not found
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM sync_policies WHERE sync_type = ?", (sync_type,)
            )
            row = cursor.fetchone()
            if row:
                return _row_to_dict(row)
            return None

    def list_sync_policies(self, enabled_only: bool = False) -> list[dict[str, Any]]:
        """
        List sync policies ordered by type.

        Args:
            enabled_only: If True, only return enabled policies

        Returns:
            List of policy dictionaries
        """
        sql = "SELECT * FROM sync_policies"
        if enabled_only:
            sql += " WHERE is_enabled = 1"
        sql += " ORDER BY sync_type"

        with self.connection() as conn:
            cursor = conn.execute(sql)
            return [_row_to_dict(row) for row in cursor.fetchall()]

    def advance_sync_policy(
        self, sync_type: str, last_run_at: datetime, next_run_at: datetime
    ) -> bool:
        """
        Record that a policy ran and schedule its next run.

        Returns:
            True if the policy exists and was updated
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_policies
                SET last_run_at = ?, next_run_at = ?, updated_at = ?
                WHERE sync_type = ?
                """,
                (to_iso(last_run_at), to_iso(next_run_at), to_iso(last_run_at), sync_type),
            )
            return cursor.rowcount == 1

    def set_sync_policy(
        self,
        sync_type: str,
        now: datetime,
        is_enabled: Optional[bool] = None,
        frequency_hours: Optional[int] = None,
        next_run_at: Optional[datetime] = None,
    ) -> dict[str, Any]:
        """
        Create or modify a sync policy.

        Only the given attributes are changed on an existing policy. A new
        policy defaults to enabled, every 6 hours, with its first run one
        period after now unless next_run_at is given.

        Args:
            sync_type: Policy type
            now: Timestamp stored in updated_at
            is_enabled: New enabled flag
            frequency_hours: New frequency in hours (>= 1)
            next_run_at: New next run time

        Returns:
            The policy after the change
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT id FROM sync_policies WHERE sync_type = ?", (sync_type,)
            )
            if cursor.fetchone() is None:
                frequency = 6 if frequency_hours is None else frequency_hours
                if next_run_at is None:
                    next_run_at = now + timedelta(hours=frequency)
                conn.execute(
                    """
                    INSERT INTO sync_policies (
                        sync_type, is_enabled, frequency_hours, next_run_at,
                        created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        sync_type,
                        1 if is_enabled is None else int(is_enabled),
                        frequency,
                        to_iso(next_run_at),
                        to_iso(now),
                        to_iso(now),
                    ),
                )
            else:
                updates: list[str] = []
                params: list[Any] = []

                if is_enabled is not None:
                    updates.append("is_enabled = ?")
                    params.append(int(is_enabled))
                if frequency_hours is not None:
                    updates.append("frequency_hours = ?")
                    params.append(frequency_hours)
                if next_run_at is not None:
                    updates.append("next_run_at = ?")
                    params.append(to_iso(next_run_at))

                updates.append("updated_at = ?")
                params.append(to_iso(now))
                params.append(sync_type)

                conn.execute(
                    f"UPDATE sync_policies SET {', '.join(updates)} "  # nosec B608
                    "WHERE sync_type = ?",
                    params,
                )

            cursor = conn.execute(
                "SELECT * FROM sync_policies WHERE sync_type = ?", (sync_type,)
            )
            return _row_to_dict(cursor.fetchone())

    # =========================================================================
    # Sync Run Log Operations
    # =========================================================================

    def create_sync_run_log(
        self, run_id: str, trigger: str, started_at: datetime
    ) -> int:
        """
        Create a run log in the 'running' state.

        Returns:
            The log row id
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO sync_run_logs (run_id, trigger, started_at, status)
                VALUES (?, ?, ?, 'running')
                """,
                (run_id, trigger, to_iso(started_at)),
            )
            return int(cursor.lastrowid)

    def complete_sync_run_log(
        self,
        log_id: int,
        status: str,
        completed_at: datetime,
        users_processed: int = 0,
        users_created: int = 0,
        users_updated: int = 0,
        users_deactivated: int = 0,
        users_ineligible: int = 0,
        row_errors: int = 0,
        error_type: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Move a running log to its terminal status.

        A log leaves 'running' exactly once; later calls change nothing.

        Args:
            log_id: The log row id
            status: 'completed' or 'failed'

        Returns:
            True if the log was updated
        """
        if status not in ("completed", "failed"):
            raise ValueError(f"Invalid terminal status: {status}")

        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE sync_run_logs
                SET status = ?,
                    completed_at = ?,
                    users_processed = ?,
                    users_created = ?,
                    users_updated = ?,
                    users_deactivated = ?,
                    users_ineligible = ?,
                    row_errors = ?,
                    error_type = ?,
                    error_message = ?
                WHERE id = ? AND status = 'running'
                """,
                (
                    status,
                    to_iso(completed_at),
                    users_processed,
                    users_created,
                    users_updated,
                    users_deactivated,
                    users_ineligible,
                    row_errors,
                    error_type,
                    error_message,
                    log_id,
                ),
            )
            return cursor.rowcount == 1

    def get_sync_run_log(self, log_id: int) -> Optional[dict[str, Any]]:
        """Get a run log by row id."""
        with self.connection() as conn:
            cursor = conn.execute("SELECT * FROM sync_run_logs WHERE id = ?", (log_id,))
            row = cursor.fetchone()
            if row:
                return _row_to_dict(row)
            return None

    def list_sync_run_logs(self, limit: int = 20) -> list[dict[str, Any]]:
        """
        List run logs, most recent first.

        Args:
            limit: Maximum number of logs to return
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM sync_run_logs ORDER BY started_at DESC, id DESC LIMIT ?",
                (limit,),
            )
            return [_row_to_dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # Scheduler Log Operations
    # =========================================================================

    def create_scheduler_log(self, run_at: datetime) -> int:
        """
        Create a placeholder log for a scheduler tick.

        Returns:
            The log row id
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                INSERT INTO scheduler_logs (
                    run_at, sync_was_due, sync_triggered, execution_time_ms
                ) VALUES (?, 0, 0, 0)
                """,
                (to_iso(run_at),),
            )
            return int(cursor.lastrowid)

    def update_scheduler_log(
        self,
        log_id: int,
        sync_was_due: bool,
        sync_triggered: bool,
        sync_result: Optional[list[dict[str, Any]]],
        execution_time_ms: int,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Fill in a scheduler log at the end of a tick.

        Args:
            log_id: The log row id
            sync_was_due: Whether any policy was due
            sync_triggered: Whether any handler was invoked
            sync_result: Per-policy outcomes, stored as JSON
            execution_time_ms: Tick duration in milliseconds
            error_message: Tick-level error, if the tick failed

        Returns:
            True if the log exists and was updated
        """
        with self.connection() as conn:
            cursor = conn.execute(
                """
                UPDATE scheduler_logs
                SET sync_was_due = ?,
                    sync_triggered = ?,
                    sync_result = ?,
                    error_message = ?,
                    execution_time_ms = ?
                WHERE id = ?
                """,
                (
                    int(sync_was_due),
                    int(sync_triggered),
                    json.dumps(sync_result) if sync_result is not None else None,
                    error_message,
                    execution_time_ms,
                    log_id,
                ),
            )
            return cursor.rowcount == 1

    def get_scheduler_log(self, log_id: int) -> Optional[dict[str, Any]]:
        """Get a scheduler log by row id."""
        with self.connection() as conn:
            cursor = conn.execute("SELECT * FROM scheduler_logs WHERE id = ?", (log_id,))
            row = cursor.fetchone()
            if row:
                return _row_to_dict(row)
            return None

    def list_scheduler_logs(self, limit: int = 20) -> list[dict[str, Any]]:
        """List scheduler logs, most recent first."""
        with self.connection() as conn:
            cursor = conn.execute(
                "SELECT * FROM scheduler_logs ORDER BY run_at DESC, id DESC LIMIT ?",
                (limit,),
            )
            return [_row_to_dict(row) for row in cursor.fetchall()]

    # =========================================================================
    # Lease Operations
    # =========================================================================

    def acquire_lease(
        self, name: str, owner: str, ttl_seconds: int, now: datetime
    ) -> bool:
        """
        Try to take an advisory lease.

        The lease is granted when it is free, expired, or already held by the
        same owner. The conditional upsert makes check-and-take atomic.

        Args:
            name: Lease name, e.g. 'mirror:directory_users'
            owner: Unique id of the caller
            ttl_seconds: Lease lifetime
            now: Current time

        Returns:
            True if the caller now holds the lease
        """
        expires_at = now + timedelta(seconds=ttl_seconds)
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_leases (name, owner, acquired_at, expires_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    owner = excluded.owner,
                    acquired_at = excluded.acquired_at,
                    expires_at = excluded.expires_at
                WHERE sync_leases.expires_at <= excluded.acquired_at
                   OR sync_leases.owner = excluded.owner
                """,
                (name, owner, to_iso(now), to_iso(expires_at)),
            )
            cursor = conn.execute(
                "SELECT owner FROM sync_leases WHERE name = ?", (name,)
            )
            row = cursor.fetchone()
            return row is not None and row["owner"] == owner

    def release_lease(self, name: str, owner: str) -> bool:
        """
        Release a lease held by owner.

        Returns:
            True if the lease was held by owner and is now released
        """
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM sync_leases WHERE name = ? AND owner = ?", (name, owner)
            )
            return cursor.rowcount == 1

    def get_lease(self, name: str) -> Optional[dict[str, Any]]:
        """Get the current holder of a lease, if any."""
        with self.connection() as conn:
            cursor = conn.execute("SELECT * FROM sync_leases WHERE name = ?", (name,))
            row = cursor.fetchone()
            if row:
                return _row_to_dict(row)
            return None
