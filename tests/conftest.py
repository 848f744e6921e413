"""
Shared fixtures for dirsync tests.
"""

from datetime import datetime, timedelta, timezone

import pytest

from dirsync.config.settings import DirectoryConfig, SyncSettings
from dirsync.storage.db import MirrorDatabase
from dirsync.sync.record import DirectoryRecord

NOW = datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = NOW):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_record(
    external_id: str,
    department: str | None = "Engineering",
    enabled: bool | None = True,
    **overrides,
) -> DirectoryRecord:
    """Build an eligible directory record unless told otherwise."""
    values = {
        "external_id": external_id,
        "display_name": f"User {external_id}",
        "email": f"{external_id}@example.com",
        "user_principal_name": f"{external_id}@example.com",
        "job_title": "Engineer",
        "org_unit": department,
        "account_enabled": enabled,
        "created_at": datetime(2024, 1, 15, tzinfo=timezone.utc),
    }
    values.update(overrides)
    return DirectoryRecord(**values)


def make_user_payload(external_id: str, **overrides) -> dict:
    """Build a users endpoint payload for one user."""
    payload = {
        "id": external_id,
        "displayName": f"User {external_id}",
        "mail": f"{external_id}@example.com",
        "userPrincipalName": f"{external_id}@example.com",
        "jobTitle": "Engineer",
        "department": "Engineering",
        "accountEnabled": True,
        "createdDateTime": "2024-01-15T00:00:00Z",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def clock():
    """A fixed clock starting at NOW."""
    return FakeClock()


@pytest.fixture
def db():
    """An initialized in-memory mirror database."""
    database = MirrorDatabase(":memory:")
    database.initialize()
    yield database
    database.close()


@pytest.fixture
def directory_config():
    """Directory settings with all credentials present."""
    return DirectoryConfig(
        tenant_id="tenant-123",
        client_id="client-456",
        client_secret="s3cr3t-value",
        max_retries=3,
        retry_initial_delay=1.0,
        retry_max_delay=8.0,
    )


@pytest.fixture
def sync_settings():
    """Reconciliation settings backed by memory."""
    return SyncSettings(database_path=":memory:")
