"""
Policy scheduler for periodic directory synchronization.

One tick reads the enabled sync policies, runs the handler for every policy
that is due, and records the tick in the scheduler log. A policy's next run
time is advanced *before* its handler is invoked, so a slow or failing run
is never started twice by overlapping ticks; a failed run is simply retried
on its next scheduled slot.
"""

import logging
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Optional

from dirsync.config.settings import SyncSettings
from dirsync.storage.db import MirrorDatabase
from dirsync.sync.reconciler import ReconcileResult, Reconciler, Trigger
from dirsync.utils.timestamps import utc_now

# Policy seeded on first use
DEFAULT_SYNC_TYPE = "directory_sync"

# Sync type name used by earlier deployments for the same job
LEGACY_SYNC_TYPE = "azure_ad_sync"

POLICY_LEASE_PREFIX = "policy:"

logger = logging.getLogger(__name__)

# A handler runs one sync and returns an object with `success` and `to_dict()`
SyncHandler = Callable[[], Any]


class OutcomeStatus(Enum):
    """What happened to a due policy during a tick."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class PolicyOutcome:
    """
    Result of processing one due policy.

    Attributes:
        sync_type: The policy's type
        status: success, failed or skipped
        message: Short explanation for failed and skipped outcomes
        result: The handler result as a dictionary, if the handler returned
    """

    sync_type: str
    status: OutcomeStatus
    message: Optional[str] = None
    result: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "sync_type": self.sync_type,
            "status": self.status.value,
            "success": self.status is OutcomeStatus.SUCCESS,
        }
        if self.message:
            data["error" if self.status is OutcomeStatus.FAILED else "message"] = (
                self.message
            )
        if self.result is not None:
            data["result"] = self.result
        return data


@dataclass
class TickResult:
    """
    Outcome of SyncScheduler.tick().

    `success` describes the tick itself; individual sync failures are
    reported in `results` and do not fail the tick.
    """

    success: bool
    sync_was_due: bool = False
    sync_triggered: bool = False
    results: list[PolicyOutcome] = field(default_factory=list)
    execution_time_ms: int = 0
    error: Optional[str] = None

    @property
    def http_status(self) -> int:
        """Status an HTTP wrapper should answer with."""
        return 200 if self.success else 500

    @property
    def has_failures(self) -> bool:
        """True if the tick failed or any invoked sync failed."""
        return not self.success or any(
            r.status is OutcomeStatus.FAILED for r in self.results
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "sync_was_due": self.sync_was_due,
            "sync_triggered": self.sync_triggered,
            "results": [r.to_dict() for r in self.results],
            "execution_time_ms": self.execution_time_ms,
        }
        if self.success:
            data["message"] = "Sync scheduler completed"
        else:
            data["error"] = self.error
        return data


def is_due(policy: Mapping[str, Any], now: datetime) -> bool:
    """
    Check whether a policy should run at time now.

    A policy with no next run time is never due; it has to be scheduled
    first.
    """
    if not policy.get("is_enabled"):
        return False
    next_run_at = policy.get("next_run_at")
    return next_run_at is not None and next_run_at <= now


class SyncScheduler:
    """
    Decides which sync policies are due and runs them.

    Usage:
        scheduler = SyncScheduler(
            database=db,
            handlers={"directory_sync": lambda: reconciler.run(Trigger.SCHEDULED)},
            settings=settings.sync,
        )
        result = scheduler.tick()
    """

    def __init__(
        self,
        database: MirrorDatabase,
        handlers: Mapping[str, SyncHandler],
        settings: Optional[SyncSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        """
        Initialize the scheduler.

        Args:
            database: Mirror database (initialized)
            handlers: Handler to run for each known sync type
            settings: Scheduling settings (defaults used when None)
            clock: Returns the current time; injectable for tests
        """
        self.database = database
        self.handlers = dict(handlers)
        self.settings = settings or SyncSettings()
        self._clock = clock

    def ensure_default_policy(self, now: Optional[datetime] = None) -> bool:
        """
        Create the default directory_sync policy if it does not exist.

        The first run is scheduled one period from now.

        Returns:
            True if the policy was created
        """
        now = now or self._clock()
        frequency = self.settings.default_frequency_hours
        created = self.database.ensure_sync_policy(
            DEFAULT_SYNC_TYPE,
            frequency,
            now + timedelta(hours=frequency),
            now,
        )
        if created:
            logger.info(
                f"Created default '{DEFAULT_SYNC_TYPE}' policy (every {frequency}h)"
            )
        return created

    def _run_policy(
        self, policy: Mapping[str, Any], tick_id: str, now: datetime
    ) -> tuple[PolicyOutcome, bool]:
        """
        Advance and run one due policy.

        Returns:
            Tuple of (outcome, whether the handler was invoked)
        """
        sync_type = policy["sync_type"]
        handler = self.handlers.get(sync_type)
        if handler is None:
            logger.warning(f"Unknown sync type '{sync_type}', skipping")
            return (
                PolicyOutcome(
                    sync_type, OutcomeStatus.SKIPPED, f"Unknown sync type: {sync_type}"
                ),
                False,
            )

        lease_name = f"{POLICY_LEASE_PREFIX}{sync_type}"
        if not self.database.acquire_lease(
            lease_name, tick_id, self.settings.lease_ttl_seconds, now
        ):
            logger.info(f"Policy '{sync_type}' is being processed elsewhere, skipping")
            return (
                PolicyOutcome(
                    sync_type,
                    OutcomeStatus.SKIPPED,
                    "Policy is locked by another scheduler",
                ),
                False,
            )

        try:
            # Another scheduler may have run it between our read and the lease
            policy = self.database.get_sync_policy(sync_type)
            if policy is None or not is_due(policy, now):
                return (
                    PolicyOutcome(
                        sync_type,
                        OutcomeStatus.SKIPPED,
                        "Policy was already run by another scheduler",
                    ),
                    False,
                )

            next_run_at = now + timedelta(hours=policy["frequency_hours"])
            self.database.advance_sync_policy(sync_type, now, next_run_at)
            logger.info(
                f"Running '{sync_type}' (next run {next_run_at.isoformat()})"
            )

            try:
                result = handler()
            except Exception as e:
                logger.exception(f"Handler for '{sync_type}' raised: {e}")
                return PolicyOutcome(sync_type, OutcomeStatus.FAILED, str(e)), True

            result_dict = result.to_dict() if hasattr(result, "to_dict") else None
            if getattr(result, "success", False):
                return (
                    PolicyOutcome(sync_type, OutcomeStatus.SUCCESS, result=result_dict),
                    True,
                )
            error = getattr(result, "error", None) or "Sync reported failure"
            logger.warning(f"Sync '{sync_type}' failed: {error}")
            return (
                PolicyOutcome(
                    sync_type, OutcomeStatus.FAILED, error, result=result_dict
                ),
                True,
            )
        finally:
            self.database.release_lease(lease_name, tick_id)

    def tick(self) -> TickResult:
        """
        Run one scheduler tick.

        Never raises for tick failures; the outcome is recorded in the
        scheduler log and returned.

        Returns:
            TickResult
        """
        started = time.monotonic()
        now = self._clock()
        tick_id = str(uuid.uuid4())
        log_id: Optional[int] = None

        outcomes: list[PolicyOutcome] = []
        sync_was_due = False
        sync_triggered = False

        try:
            log_id = self.database.create_scheduler_log(now)
            logger.debug(f"Scheduler tick {tick_id} started (log {log_id})")
            self.ensure_default_policy(now)
            policies = self.database.list_sync_policies(enabled_only=True)
            due = [p for p in policies if is_due(p, now)]
            sync_was_due = bool(due)
            logger.info(
                f"{len(policies)} enabled polic{'y' if len(policies) == 1 else 'ies'}, "
                f"{len(due)} due"
            )

            for policy in due:
                outcome, invoked = self._run_policy(policy, tick_id, now)
                outcomes.append(outcome)
                sync_triggered = sync_triggered or invoked

            elapsed_ms = int((time.monotonic() - started) * 1000)
            self.database.update_scheduler_log(
                log_id,
                sync_was_due=sync_was_due,
                sync_triggered=sync_triggered,
                sync_result=[o.to_dict() for o in outcomes] or None,
                execution_time_ms=elapsed_ms,
            )
            logger.info(
                f"Scheduler tick finished in {elapsed_ms}ms: {len(outcomes)} "
                f"polic{'y' if len(outcomes) == 1 else 'ies'} processed"
            )
            return TickResult(
                success=True,
                sync_was_due=sync_was_due,
                sync_triggered=sync_triggered,
                results=outcomes,
                execution_time_ms=elapsed_ms,
            )

        except Exception as e:
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.exception(f"Scheduler tick failed: {e}")
            if log_id is not None:
                try:
                    self.database.update_scheduler_log(
                        log_id,
                        sync_was_due=sync_was_due,
                        sync_triggered=sync_triggered,
                        sync_result=[o.to_dict() for o in outcomes] or None,
                        execution_time_ms=elapsed_ms,
                        error_message=str(e),
                    )
                except Exception as log_error:
                    logger.error(f"Failed to record tick failure: {log_error}")
            return TickResult(
                success=False,
                sync_was_due=sync_was_due,
                sync_triggered=sync_triggered,
                results=outcomes,
                execution_time_ms=elapsed_ms,
                error=str(e),
            )


def build_handlers(reconciler: Reconciler) -> dict[str, SyncHandler]:
    """
    Map the known sync types to scheduled runs of reconciler.

    The legacy type name maps to the same job so policies created by
    earlier deployments keep working.
    """

    def run_scheduled() -> ReconcileResult:
        return reconciler.run(Trigger.SCHEDULED)

    return {DEFAULT_SYNC_TYPE: run_scheduled, LEGACY_SYNC_TYPE: run_scheduled}
