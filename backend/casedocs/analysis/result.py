"""
Analysis result types shared by the AI and heuristic paths.

Both paths produce the same AnalysisResult shape, so the persistence layer
and the analysis cache never need to know which one ran.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

IMPORTANCE_LEVELS = ("high", "medium", "low")
EVENT_TYPES = (
    "communication",
    "filing",
    "incident",
    "meeting",
    "hearing",
    "deadline",
    "discovery",
    "general",
)

DEFAULT_IMPORTANCE = "medium"
DEFAULT_EVENT_TYPE = "general"

MAX_KEY_FACTS       = 10
MAX_FINDINGS        = 5
MAX_ACTION_ITEMS    = 5
MAX_TIMELINE_EVENTS = 25
MAX_SUMMARY_CHARS   = 2000


@dataclass(frozen=True)
class TimelineEventCandidate:
    date:        str          # YYYY-MM-DD
    title:       str
    description: str
    importance:  str = DEFAULT_IMPORTANCE
    event_type:  str = DEFAULT_EVENT_TYPE


@dataclass
class AnalysisResult:
    summary:            str = ""
    key_facts:          list[str] = field(default_factory=list)
    favorable_findings: list[str] = field(default_factory=list)
    adverse_findings:   list[str] = field(default_factory=list)
    action_items:       list[str] = field(default_factory=list)
    timeline_events:    list[TimelineEventCandidate] = field(default_factory=list)
    provider:           str = "none"   # "ai:<name>" | "heuristic" | "none"

    @property
    def is_empty(self) -> bool:
        """True when the result carries no usable analysis at all."""
        return not (
            self.summary.strip()
            or self.key_facts
            or self.favorable_findings
            or self.adverse_findings
            or self.action_items
            or self.timeline_events
        )

    @property
    def analyzed(self) -> bool:
        return self.provider != "none"


def dedupe(items: Iterable[str], limit: int) -> list[str]:
    """Strip, drop blanks and case-insensitive duplicates, keep order, cap."""
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        text = " ".join(str(item).split())
        key = text.casefold()
        if not text or key in seen:
            continue
        seen.add(key)
        out.append(text)
        if len(out) >= limit:
            break
    return out
