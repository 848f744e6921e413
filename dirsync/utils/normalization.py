"""
String normalization utilities for directory attribute comparison.

Directory attributes are free text typed by administrators, so values like
" N/A ", "n/a" and "Ｎ／Ａ" must compare equal before they are checked
against placeholder lists.
"""

from __future__ import annotations

import re
import unicodedata


def normalize_string(value: str | None, casefold: bool = True) -> str:
    """
    Normalize an attribute value for comparison.

    Applies Unicode NFKC normalization (folding full-width and compatibility
    characters), collapses internal whitespace runs to a single space, trims
    the ends and optionally casefolds.

    Args:
        value: String to normalize. None is treated as empty.
        casefold: If True, casefold the result for case-insensitive comparison.

    Returns:
        Normalized string, empty if value is None or whitespace only
    """
    if not value:
        return ""

    normalized = unicodedata.normalize("NFKC", value)
    normalized = re.sub(r"\s+", " ", normalized).strip()

    if casefold:
        normalized = normalized.casefold()

    return normalized


def is_punctuation_only(value: str) -> bool:
    """
    Check whether a string consists solely of punctuation and symbols.

    Spaces are ignored, so "- -" counts as punctuation only. An empty string
    is not punctuation only.

    Args:
        value: String to check

    Returns:
        True if every non-space character is in a Unicode punctuation or
        symbol category
    """
    chars = [c for c in value if not c.isspace()]
    if not chars:
        return False
    return all(unicodedata.category(c)[0] in ("P", "S") for c in chars)
