from __future__ import annotations

import re
from collections.abc import Mapping

UNKNOWN_CATEGORY = "unknown"
MANUAL_UNINTERESTED = "Manual Uninterested"

_AMPERSAND_RE = re.compile(r"\s*&\s*")
_AND_WORD_RE = re.compile(r"\band\b")
_WHITESPACE_RE = re.compile(r"\s+")


def is_unknown_category(value: str | None) -> bool:
    if value is None:
        return True
    stripped = value.strip()
    return not stripped or stripped.lower() == UNKNOWN_CATEGORY


def category_key(label: str) -> str:
    """Comparison key grouping labels that differ only by case, spacing or ``&``/``and``."""
    lowered = label.lower()
    lowered = _AND_WORD_RE.sub("&", lowered)
    lowered = _AMPERSAND_RE.sub(" & ", lowered)
    return _WHITESPACE_RE.sub(" ", lowered).strip()


def pick_display_label(counts: Mapping[str, int]) -> str:
    """Most frequent literal wins; ties go to the smallest literal (case-sensitive)."""
    if not counts:
        raise ValueError("cannot pick a display label from an empty group")
    return min(counts.items(), key=lambda item: (-item[1], item[0]))[0]


def normalize_title(title: str) -> str:
    return _WHITESPACE_RE.sub(" ", title).strip()


def title_key(title: str | None) -> str:
    # Mirrors lower(btrim(regexp_replace(title, '\s+', ' ', 'g'))) on the database side.
    if not title:
        return ""
    return normalize_title(title).lower()
