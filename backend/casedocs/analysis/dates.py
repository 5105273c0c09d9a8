"""
Date token detection and normalisation to YYYY-MM-DD.

Patterns are checked in priority order — ISO, MM/DD/YYYY,
"Month DD, YYYY", "Month YYYY" — and the first one that yields a real
calendar date wins.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date

_MONTHS: dict[str, int] = {
    "january": 1, "february": 2, "march": 3, "april": 4, "may": 5, "june": 6,
    "july": 7, "august": 8, "september": 9, "october": 10, "november": 11,
    "december": 12,
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "jun": 6, "jul": 7, "aug": 8,
    "sep": 9, "sept": 9, "oct": 10, "nov": 11, "dec": 12,
}

# Longest names first so "sept" wins over "sep", "june" over "jun".
_MONTH_ALT = "|".join(sorted(_MONTHS, key=len, reverse=True))

_ISO_RE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_US_RE  = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
_MONTH_DAY_YEAR_RE = re.compile(
    rf"\b({_MONTH_ALT})\.?\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+(\d{{4}})\b",
    re.IGNORECASE,
)
_MONTH_YEAR_RE = re.compile(rf"\b({_MONTH_ALT})\.?,?\s+(\d{{4}})\b", re.IGNORECASE)

_YEAR_ONLY_RE  = re.compile(r"^(\d{4})$")
_YEAR_MONTH_RE = re.compile(r"^(\d{4})[-/.](\d{1,2})$")
_FULL_RE       = re.compile(r"^(\d{4})[-/.](\d{1,2})[-/.](\d{1,2})(?:[T\s].*)?$")


@dataclass(frozen=True)
class DateMatch:
    iso:   str
    start: int
    end:   int


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _candidates(text: str):
    for m in _ISO_RE.finditer(text):
        yield m, int(m.group(1)), int(m.group(2)), int(m.group(3))
    for m in _US_RE.finditer(text):
        yield m, int(m.group(3)), int(m.group(1)), int(m.group(2))
    for m in _MONTH_DAY_YEAR_RE.finditer(text):
        yield m, int(m.group(3)), _MONTHS[m.group(1).lower()], int(m.group(2))
    for m in _MONTH_YEAR_RE.finditer(text):
        yield m, int(m.group(2)), _MONTHS[m.group(1).lower()], 1


def find_date(text: str) -> DateMatch | None:
    """Return the first valid date token in `text`, by pattern priority."""
    for match, year, month, day in _candidates(text):
        parsed = _safe_date(year, month, day)
        if parsed is not None:
            return DateMatch(parsed.isoformat(), match.start(), match.end())
    return None


def normalize_date(value: object, today: date) -> str:
    """
    Coerce a model-supplied date to YYYY-MM-DD.

    Year-only and year-month values resolve to the first day of the period;
    anything unparseable becomes `today` instead of failing the analysis.
    """
    raw = str(value or "").strip()

    for pattern in (_FULL_RE, _YEAR_MONTH_RE, _YEAR_ONLY_RE):
        m = pattern.match(raw)
        if m is None:
            continue
        parts = [int(g) for g in m.groups()[:3] if g is not None]
        parts += [1] * (3 - len(parts))
        parsed = _safe_date(*parts)
        return parsed.isoformat() if parsed else today.isoformat()

    found = find_date(raw)
    return found.iso if found else today.isoformat()
