"""
Directory user data models.

Provides:
- DirectoryRecord: one user as returned by the directory provider
- MirrorUser: one row of the local mirror table
- SyncStatus: lifecycle state of a mirrored user
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from dirsync.errors import ProtocolError
from dirsync.utils.timestamps import parse_iso


class SyncStatus(Enum):
    """Lifecycle state of a mirrored user."""

    ACTIVE = "active"
    INACTIVE = "inactive"


@dataclass
class DirectoryRecord:
    """
    A user as reported by the directory provider.

    Attributes:
        external_id: The directory's stable user id
        display_name: Display name ("" when absent)
        email: Mail address, falling back to the principal name
        user_principal_name: Sign-in name ("" when absent)
        job_title: Job title, if set
        org_unit: Department, if set
        account_enabled: Whether the account is enabled (None when unknown)
        created_at: When the user was created in the directory

    Usage:
        record = DirectoryRecord.from_api_response(user_payload)
        fields = record.to_mirror_fields()
    """

    external_id: str
    display_name: str = ""
    email: str = ""
    user_principal_name: str = ""
    job_title: Optional[str] = None
    org_unit: Optional[str] = None
    account_enabled: Optional[bool] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_api_response(cls, user: dict[str, Any]) -> "DirectoryRecord":
        """
        Create a record from a directory user payload.

        Args:
            user: Dictionary from the users endpoint

        Returns:
            DirectoryRecord populated from the payload

        Raises:
            ProtocolError: If the payload is not an object or has no id

        Example payload::

            {
                'id': '6e7b768e-07e2-4810-8459-485f84f8f204',
                'displayName': 'Adele Vance',
                'mail': 'AdeleV@contoso.com',
                'userPrincipalName': 'AdeleV@contoso.com',
                'jobTitle': 'Retail Manager',
                'department': 'Retail',
                'accountEnabled': True,
                'createdDateTime': '2021-03-04T12:00:00Z'
            }
        """
        if not isinstance(user, dict):
            raise ProtocolError(
                f"Directory user must be an object, got {type(user).__name__}"
            )

        external_id = user.get("id")
        if not isinstance(external_id, str) or not external_id:
            raise ProtocolError("Directory user payload has no id")

        principal = user.get("userPrincipalName") or ""
        email = user.get("mail") or principal

        enabled = user.get("accountEnabled")
        if not isinstance(enabled, bool):
            enabled = None

        return cls(
            external_id=external_id,
            display_name=user.get("displayName") or "",
            email=email,
            user_principal_name=principal,
            job_title=user.get("jobTitle"),
            org_unit=user.get("department"),
            account_enabled=enabled,
            created_at=parse_iso(user.get("createdDateTime")),
        )

    def to_mirror_fields(self) -> dict[str, Any]:
        """Return the values written to the mirror for this record."""
        return {
            "display_name": self.display_name,
            "email": self.email,
            "user_principal_name": self.user_principal_name,
            "job_title": self.job_title,
            "org_unit": self.org_unit,
            "account_enabled": bool(self.account_enabled),
            "external_created_at": self.created_at,
        }


@dataclass
class MirrorUser:
    """
    A user in the local mirror.

    Mirror rows are never deleted; users that leave the directory or become
    ineligible are marked INACTIVE.
    """

    external_id: str
    display_name: str
    email: str
    user_principal_name: str
    job_title: Optional[str]
    org_unit: Optional[str]
    account_enabled: bool
    external_created_at: Optional[datetime]
    last_synced: Optional[datetime]
    sync_status: SyncStatus
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> "MirrorUser":
        """Create a MirrorUser from a MirrorDatabase row dictionary."""
        return cls(
            external_id=row["external_id"],
            display_name=row.get("display_name") or "",
            email=row.get("email") or "",
            user_principal_name=row.get("user_principal_name") or "",
            job_title=row.get("job_title"),
            org_unit=row.get("org_unit"),
            account_enabled=bool(row.get("account_enabled")),
            external_created_at=row.get("external_created_at"),
            last_synced=row.get("last_synced"),
            sync_status=SyncStatus(row["sync_status"]),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @property
    def is_active(self) -> bool:
        return self.sync_status is SyncStatus.ACTIVE
