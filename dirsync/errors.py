"""
Error taxonomy for directory synchronization.

Errors fall into three groups:
- Fetch phase (ConfigurationError, AuthenticationError, TransportError,
  ProtocolError): fatal for the run, raised before any mirror mutation
- Write phase (DataIntegrityError): fatal, aborts the remaining writes
- Row level (RowWriteError): recovered locally, counted and logged
"""

from __future__ import annotations


class DirSyncError(Exception):
    """Base exception for all dirsync errors."""

    pass


class ConfigurationError(DirSyncError):
    """Raised when a required credential or setting is missing or invalid."""

    pass


class DirectoryError(DirSyncError):
    """
    Base exception for failures talking to the directory provider.

    Attributes:
        status_code: HTTP status returned by the provider, if any
        body: Response body returned by the provider, if any
    """

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class AuthenticationError(DirectoryError):
    """Raised when the provider rejects the client credentials or token."""

    pass


class TransportError(DirectoryError):
    """Raised on network failures and timeouts reaching the provider."""

    pass


class ProtocolError(DirectoryError):
    """Raised when the provider answers with an unexpected status or shape."""

    pass


class DataIntegrityError(DirSyncError):
    """Raised when a record about to be written fails the final eligibility check."""

    def __init__(self, message: str, external_id: str | None = None):
        super().__init__(message)
        self.external_id = external_id


class RowWriteError(DirSyncError):
    """Raised when a single mirror row cannot be created or updated."""

    def __init__(self, message: str, external_id: str | None = None):
        super().__init__(message)
        self.external_id = external_id


class ConcurrentRunError(DirSyncError):
    """Raised when another process holds the lease for the same resource."""

    pass


__all__ = [
    "DirSyncError",
    "ConfigurationError",
    "DirectoryError",
    "AuthenticationError",
    "TransportError",
    "ProtocolError",
    "DataIntegrityError",
    "RowWriteError",
    "ConcurrentRunError",
]
