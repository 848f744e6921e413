"""
dirsync - Directory to local mirror synchronization

Reconciles an external identity provider's user directory into a local
mirror table and schedules reconciliation runs from configured policies.
"""

__version__ = "0.1.0"
