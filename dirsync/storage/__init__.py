"""SQLite persistence for the mirror, policies, logs and leases."""

from dirsync.storage.db import MIRROR_FIELDS, MirrorDatabase

__all__ = ["MIRROR_FIELDS", "MirrorDatabase"]
