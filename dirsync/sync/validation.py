"""
Eligibility rules for mirroring directory users.

A directory user is mirrored only when its account is enabled and its
organizational unit (department) holds a real value. Administrators fill the
department field with all kinds of sentinels ("N/A", "TBD", "-", ...), so
values are normalized and checked against PLACEHOLDER_ORG_UNITS and against
a punctuation-only rule.

All functions here are pure.
"""

from collections.abc import Iterable

from dirsync.sync.record import DirectoryRecord
from dirsync.utils.normalization import is_punctuation_only, normalize_string

# Canonical placeholder values, stored in normalized form (NFKC, single
# spaces, trimmed, casefolded). Punctuation-only values such as "-", "--",
# "...", "?" or "/" are rejected by rule and need no entry here.
PLACEHOLDER_ORG_UNITS: frozenset[str] = frozenset(
    {
        # Not applicable / not available
        "n/a",
        "n.a.",
        "n.a",
        "na",
        "n a",
        "not applicable",
        "not available",
        # Not yet decided
        "tbd",
        "tba",
        "tbc",
        "to be determined",
        "to be assigned",
        "to be confirmed",
        "pending",
        # Unknown
        "unknown",
        "unk",
        "?unknown?",
        "not set",
        "not specified",
        "unspecified",
        "unassigned",
        "no department",
        # Empty-value literals
        "none",
        "null",
        "nil",
        "empty",
        "blank",
        "undefined",
        "false",
        "0",
        # Filler
        "x",
        "xx",
        "xxx",
        "test",
        "testing",
        "dummy",
        "sample",
        "placeholder",
        "default",
        "other",
        "misc",
        "various",
    }
)


def is_valid_org_unit(value: object) -> bool:
    """
    Check whether an organizational unit holds a real value.

    Args:
        value: Raw department value from the directory

    Returns:
        False for None, non-strings, empty or whitespace-only strings,
        punctuation-only strings and placeholders (compared after
        normalization); True otherwise
    """
    if not isinstance(value, str):
        return False

    normalized = normalize_string(value)
    if not normalized:
        return False
    if normalized in PLACEHOLDER_ORG_UNITS:
        return False
    if is_punctuation_only(normalized):
        return False
    return True


def is_eligible(record: DirectoryRecord) -> bool:
    """Return True if the record should be mirrored as an active user."""
    return record.account_enabled is True and is_valid_org_unit(record.org_unit)


def partition(
    records: Iterable[DirectoryRecord],
) -> tuple[list[DirectoryRecord], list[DirectoryRecord]]:
    """
    Split records into eligible and ineligible lists.

    Input order is preserved within each list.

    Args:
        records: Directory records in fetch order

    Returns:
        Tuple of (eligible, ineligible)
    """
    eligible: list[DirectoryRecord] = []
    ineligible: list[DirectoryRecord] = []
    for record in records:
        if is_eligible(record):
            eligible.append(record)
        else:
            ineligible.append(record)
    return eligible, ineligible
