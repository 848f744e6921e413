"""
Reconciler for one-way directory to mirror synchronization.

Fetches the full user list from the directory, keeps the eligible users,
and brings the local mirror in line with them: new users are created,
known users are overwritten (the directory always wins), and active users
that are no longer eligible or present are marked inactive. Every run is
recorded in a sync run log, which leaves the 'running' state exactly once.
"""

import logging
import sqlite3
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union

from dirsync.api.graph_api import DirectoryClient
from dirsync.config.settings import SyncSettings
from dirsync.errors import (
    ConcurrentRunError,
    DataIntegrityError,
    DirSyncError,
    RowWriteError,
)
from dirsync.storage.db import MirrorDatabase
from dirsync.sync.record import DirectoryRecord, SyncStatus
from dirsync.sync.validation import is_eligible, partition
from dirsync.utils.timestamps import utc_now

# Lease held for the whole of a run that may write to the mirror
MIRROR_LEASE = "mirror:directory_users"

logger = logging.getLogger(__name__)


class ReconcileState(Enum):
    """Phases of a reconciliation run."""

    FETCHING = "fetching"
    VALIDATING = "validating"
    DIFFING = "diffing"
    WRITING = "writing"
    LOG_COMPLETE = "log_complete"
    FAILED = "failed"


class Trigger(Enum):
    """What started a run. Informational only; stored in the run log."""

    SCHEDULED = "scheduled"
    MANUAL = "manual"


@dataclass
class ReconcileStats:
    """
    Counts from a reconciliation run.

    Attributes:
        processed: Eligible users written to the mirror
        created: Mirror rows inserted
        updated: Mirror rows overwritten
        deactivated: Mirror rows marked inactive
        ineligible: Fetched users that failed the eligibility rules
        errors: Row writes that failed
    """

    processed: int = 0
    created: int = 0
    updated: int = 0
    deactivated: int = 0
    ineligible: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "deactivated": self.deactivated,
            "ineligible": self.ineligible,
            "errors": self.errors,
        }


@dataclass
class ReconcileResult:
    """
    Outcome of Reconciler.run().

    The same outcome is persisted in the sync run log before the result is
    returned.
    """

    success: bool
    run_id: str
    trigger: Trigger
    state: ReconcileState
    stats: ReconcileStats = field(default_factory=ReconcileStats)
    error: Optional[str] = None
    error_type: Optional[str] = None

    @property
    def http_status(self) -> int:
        """Status an HTTP wrapper should answer with."""
        return 200 if self.success else 500

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "success": self.success,
            "run_id": self.run_id,
            "trigger": self.trigger.value,
            "state": self.state.value,
            "summary": self.stats.to_dict(),
        }
        if self.success:
            result["message"] = "Directory sync completed successfully"
        else:
            result["error"] = self.error
            result["error_type"] = self.error_type
        return result

    def summary(self) -> str:
        """Generate a human-readable summary of the run."""
        status = "completed" if self.success else "failed"
        lines = [
            f"Sync run {self.run_id} ({self.trigger.value}) {status}",
            f"  Users processed:   {self.stats.processed}",
            f"  Created:           {self.stats.created}",
            f"  Updated:           {self.stats.updated}",
            f"  Marked inactive:   {self.stats.deactivated}",
            f"  Ineligible:        {self.stats.ineligible}",
            f"  Row errors:        {self.stats.errors}",
        ]
        if not self.success:
            lines.append(f"  Error ({self.error_type}): {self.error}")
        return "\n".join(lines)


@dataclass
class ReconcilePlan:
    """
    Changes a run would make, computed without writing anything.

    Attributes:
        fetched: Directory users fetched
        to_create: Eligible records with no mirror row
        to_update: Eligible records with an existing mirror row
        to_deactivate: External ids of active rows that would be marked inactive
        ineligible: Records that failed the eligibility rules
    """

    fetched: int = 0
    to_create: list[DirectoryRecord] = field(default_factory=list)
    to_update: list[DirectoryRecord] = field(default_factory=list)
    to_deactivate: list[str] = field(default_factory=list)
    ineligible: list[DirectoryRecord] = field(default_factory=list)

    def has_changes(self) -> bool:
        """Check if applying the plan would change the mirror."""
        return bool(self.to_create or self.to_update or self.to_deactivate)

    def to_dict(self) -> dict[str, Any]:
        return {
            "fetched": self.fetched,
            "to_create": [r.external_id for r in self.to_create],
            "to_update": [r.external_id for r in self.to_update],
            "to_deactivate": list(self.to_deactivate),
            "ineligible": [r.external_id for r in self.ineligible],
        }

    def summary(self) -> str:
        """Generate a human-readable summary of the plan."""
        return "\n".join(
            [
                "Dry run summary:",
                f"  Users fetched:     {self.fetched}",
                f"  Would create:      {len(self.to_create)}",
                f"  Would update:      {len(self.to_update)}",
                f"  Would deactivate:  {len(self.to_deactivate)}",
                f"  Ineligible:        {len(self.ineligible)}",
            ]
        )


def index_by_external_id(
    records: Iterable[DirectoryRecord],
) -> dict[str, DirectoryRecord]:
    """Key records by external id. A later duplicate replaces an earlier one."""
    indexed: dict[str, DirectoryRecord] = {}
    for record in records:
        if record.external_id in indexed:
            logger.warning(
                f"Duplicate directory id {record.external_id}; keeping the later record"
            )
        indexed[record.external_id] = record
    return indexed


class Reconciler:
    """
    One-way reconciler from the directory into the mirror table.

    Usage:
        reconciler = Reconciler(
            client=DirectoryClient(settings.directory),
            database=MirrorDatabase(settings.sync.database_path),
            settings=settings.sync,
        )

        # Preview
        plan = reconciler.analyze()
        print(plan.summary())

        # Apply
        result = reconciler.run(Trigger.MANUAL)
        print(result.summary())
    """

    def __init__(
        self,
        client: DirectoryClient,
        database: MirrorDatabase,
        settings: Optional[SyncSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the reconciler.

        Args:
            client: Directory client used to fetch users
            database: Mirror database (initialized)
            settings: Reconciliation settings (defaults used when None)
            clock: Returns the current time; injectable for tests
        """
        self.client = client
        self.database = database
        self.settings = settings or SyncSettings()
        self._clock = clock
        self.state: Optional[ReconcileState] = None

    def _fetch_and_partition(
        self,
    ) -> tuple[list[DirectoryRecord], dict[str, DirectoryRecord], list[DirectoryRecord]]:
        self.state = ReconcileState.FETCHING
        records = self.client.fetch_users()

        self.state = ReconcileState.VALIDATING
        eligible, ineligible = partition(records)
        current = index_by_external_id(eligible)

        logger.info(
            f"{len(records)} users fetched: {len(current)} eligible, "
            f"{len(ineligible)} ineligible"
        )
        return records, current, ineligible

    def _write(
        self,
        current: dict[str, DirectoryRecord],
        stats: ReconcileStats,
        now: datetime,
    ) -> None:
        """
        Create or overwrite a mirror row for every eligible record.

        Raises:
            DataIntegrityError: If a record fails the final eligibility check
        """
        self.state = ReconcileState.WRITING
        for external_id, record in current.items():
            if not is_eligible(record):
                raise DataIntegrityError(
                    f"User {external_id} failed the final eligibility check",
                    external_id=external_id,
                )

            try:
                created = self.database.upsert_mirror_user(
                    external_id, record.to_mirror_fields(), now
                )
            except sqlite3.Error as e:
                error = RowWriteError(
                    f"Failed to write user {external_id}: {e}", external_id=external_id
                )
                logger.error(str(error))
                stats.errors += 1
                continue

            stats.processed += 1
            if created:
                stats.created += 1
            else:
                stats.updated += 1

    def _check_row_errors(self, stats: ReconcileStats, total: int) -> None:
        if total and stats.errors / total > self.settings.max_row_error_rate:
            raise RowWriteError(
                f"{stats.errors} of {total} user writes failed, above the "
                f"{self.settings.max_row_error_rate:.0%} threshold; "
                "skipping inactive marking"
            )

    def run(self, trigger: Union[Trigger, str] = Trigger.MANUAL) -> ReconcileResult:
        """
        Perform a full reconciliation run.

        Never raises for sync failures; the outcome is recorded in the run
        log and returned.

        Args:
            trigger: What started the run

        Returns:
            ReconcileResult describing the terminal outcome
        """
        trigger = Trigger(trigger)
        run_id = str(uuid.uuid4())
        stats = ReconcileStats()
        self.state = ReconcileState.FETCHING

        log_id = self.database.create_sync_run_log(run_id, trigger.value, self._clock())
        logger.info(f"Starting directory sync {run_id} (trigger={trigger.value})")

        lease_held = False
        try:
            self.client.validate_config()

            lease_held = self.database.acquire_lease(
                MIRROR_LEASE, run_id, self.settings.lease_ttl_seconds, self._clock()
            )
            if not lease_held:
                raise ConcurrentRunError(
                    "Another sync run is writing to the mirror; try again later"
                )

            records, current, ineligible = self._fetch_and_partition()
            stats.ineligible = len(ineligible)

            self.state = ReconcileState.DIFFING
            now = self._clock()
            self._write(current, stats, now)
            self._check_row_errors(stats, len(current))

            if current:
                stats.deactivated = self.database.deactivate_missing(current.keys(), now)
            else:
                logger.warning(
                    "No eligible users returned by the directory; "
                    "skipping inactive marking"
                )

            self.database.complete_sync_run_log(
                log_id,
                "completed",
                self._clock(),
                users_processed=stats.processed,
                users_created=stats.created,
                users_updated=stats.updated,
                users_deactivated=stats.deactivated,
                users_ineligible=stats.ineligible,
                row_errors=stats.errors,
            )
            self.state = ReconcileState.LOG_COMPLETE
            logger.info(
                f"Directory sync {run_id} completed: {stats.created} created, "
                f"{stats.updated} updated, {stats.deactivated} marked inactive, "
                f"{stats.ineligible} ineligible, {stats.errors} row errors"
            )
            return ReconcileResult(
                success=True,
                run_id=run_id,
                trigger=trigger,
                state=self.state,
                stats=stats,
            )

        except Exception as e:
            phase = self.state.value if self.state else "startup"
            if isinstance(e, DirSyncError):
                logger.error(f"Directory sync {run_id} failed while {phase}: {e}")
            else:
                logger.exception(
                    f"Directory sync {run_id} failed unexpectedly while {phase}: {e}"
                )

            self.state = ReconcileState.FAILED
            self.database.complete_sync_run_log(
                log_id,
                "failed",
                self._clock(),
                users_processed=stats.processed,
                users_created=stats.created,
                users_updated=stats.updated,
                users_deactivated=stats.deactivated,
                users_ineligible=stats.ineligible,
                row_errors=stats.errors,
                error_type=type(e).__name__,
                error_message=str(e),
            )
            return ReconcileResult(
                success=False,
                run_id=run_id,
                trigger=trigger,
                state=self.state,
                stats=stats,
                error=str(e),
                error_type=type(e).__name__,
            )

        finally:
            if lease_held:
                self.database.release_lease(MIRROR_LEASE, run_id)

    def analyze(self) -> ReconcilePlan:
        """
        Compute the changes a run would make, without writing or logging.

        Returns:
            ReconcilePlan

        Raises:
            ConfigurationError: If credentials are missing
            DirectoryError: If the fetch fails
        """
        self.client.validate_config()
        records, current, ineligible = self._fetch_and_partition()

        self.state = ReconcileState.DIFFING
        statuses = self.database.get_mirror_statuses()

        plan = ReconcilePlan(fetched=len(records), ineligible=ineligible)
        for external_id, record in current.items():
            if external_id in statuses:
                plan.to_update.append(record)
            else:
                plan.to_create.append(record)

        if current:
            plan.to_deactivate = sorted(
                external_id
                for external_id, status in statuses.items()
                if status == SyncStatus.ACTIVE.value and external_id not in current
            )

        return plan
