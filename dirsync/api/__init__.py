"""Directory API client."""

from dirsync.api.graph_api import USER_SELECT_FIELDS, ConnectionReport, DirectoryClient

__all__ = ["USER_SELECT_FIELDS", "ConnectionReport", "DirectoryClient"]
