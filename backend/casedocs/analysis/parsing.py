"""
LLM response parsing: raw model text → AnalysisResult | ParseError.

Model output is never trusted to have the requested shape. The parse step
is explicit and total: it returns a ParseError value instead of raising, and
every field that survives is validated and clamped.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import date
from typing import Any, Union

from casedocs.analysis.dates import normalize_date
from casedocs.analysis.result import (
    DEFAULT_EVENT_TYPE,
    DEFAULT_IMPORTANCE,
    EVENT_TYPES,
    IMPORTANCE_LEVELS,
    MAX_ACTION_ITEMS,
    MAX_FINDINGS,
    MAX_KEY_FACTS,
    MAX_SUMMARY_CHARS,
    MAX_TIMELINE_EVENTS,
    AnalysisResult,
    TimelineEventCandidate,
    dedupe,
)

MAX_TITLE_CHARS       = 120
MAX_DESCRIPTION_CHARS = 1000


@dataclass(frozen=True)
class ParseError:
    reason: str
    excerpt: str = ""


ParseOutcome = Union[AnalysisResult, ParseError]


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

def first_balanced_object(content: str) -> str | None:
    """Return the first balanced {...} substring, honouring JSON strings."""
    start = content.find("{")
    if start < 0:
        return None

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(content)):
        ch = content[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return content[start:i + 1]
    return None


def extract_json_object(content: str) -> dict[str, Any] | None:
    text = content.strip()
    try:
        data = json.loads(text)
    except ValueError:
        candidate = first_balanced_object(text)
        if candidate is None:
            return None
        try:
            data = json.loads(candidate)
        except ValueError:
            return None
    return data if isinstance(data, dict) else None


# ---------------------------------------------------------------------------
# Field coercion
# ---------------------------------------------------------------------------

def _field(data: dict[str, Any], *names: str) -> Any:
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    return None


def _string_list(value: Any, limit: int) -> list[str]:
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    items = [v for v in value if isinstance(v, (str, int, float)) and not isinstance(v, bool)]
    return dedupe((str(v) for v in items), limit)


def _choice(value: Any, allowed: tuple[str, ...], default: str) -> str:
    text = str(value or "").strip().lower()
    return text if text in allowed else default


def _timeline(value: Any, today: date) -> list[TimelineEventCandidate]:
    if not isinstance(value, list):
        return []

    events: list[TimelineEventCandidate] = []
    for raw in value:
        if not isinstance(raw, dict):
            continue
        title = " ".join(str(_field(raw, "title") or "").split())[:MAX_TITLE_CHARS]
        description = str(_field(raw, "description") or "").strip()[:MAX_DESCRIPTION_CHARS]
        if not title and not description:
            continue
        events.append(TimelineEventCandidate(
            date=normalize_date(_field(raw, "event_date", "eventDate", "date"), today),
            title=title or "Untitled event",
            description=description,
            importance=_choice(_field(raw, "importance"), IMPORTANCE_LEVELS, DEFAULT_IMPORTANCE),
            event_type=_choice(_field(raw, "event_type", "eventType", "type"), EVENT_TYPES, DEFAULT_EVENT_TYPE),
        ))
        if len(events) >= MAX_TIMELINE_EVENTS:
            break
    return events


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def parse_analysis_response(content: str, provider: str, today: date) -> ParseOutcome:
    """
    Parse a model response into a clamped AnalysisResult.

    Returns ParseError when no JSON object can be recovered or when the
    recovered object carries no analysis at all.
    """
    if not content or not content.strip():
        return ParseError("empty response")

    data = extract_json_object(content)
    if data is None:
        return ParseError("no JSON object in response", content[:200])

    summary = _field(data, "summary")
    result = AnalysisResult(
        summary=str(summary).strip()[:MAX_SUMMARY_CHARS] if isinstance(summary, str) else "",
        key_facts=_string_list(_field(data, "key_facts", "keyFacts"), MAX_KEY_FACTS),
        favorable_findings=_string_list(
            _field(data, "favorable_findings", "favorableFindings"), MAX_FINDINGS,
        ),
        adverse_findings=_string_list(
            _field(data, "adverse_findings", "adverseFindings"), MAX_FINDINGS,
        ),
        action_items=_string_list(_field(data, "action_items", "actionItems"), MAX_ACTION_ITEMS),
        timeline_events=_timeline(_field(data, "timeline_events", "timelineEvents"), today),
        provider=f"ai:{provider}",
    )

    if result.is_empty:
        return ParseError("structurally empty analysis", content[:200])
    return result
