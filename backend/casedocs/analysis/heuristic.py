"""
Heuristic Analyzer  —  Deterministic, No-Network Analysis Floor
════════════════════════════════════════════════════════════════

Used when no AI provider is configured, every provider failed, or the
providers returned nothing usable. The output shape is identical to the AI
path (AnalysisResult) with provider="heuristic".

Pipeline
────────
  text
   │
   ├─ split_sentences()      scan for . ! ? followed by whitespace / EOS
   │
   ├─ timeline candidates    sentences containing a date token
   │                         (ISO → MM/DD/YYYY → Month DD, YYYY → Month YYYY)
   │                         title = first 8 non-date words, capitalised
   │                         description = sentence[:280]
   │                         importance / event_type from keyword tables
   │
   ├─ key facts              dates, $ amounts, numbers ≥ 2 digits, legal terms
   ├─ favorable / adverse    curated outcome keyword sets
   ├─ action items           obligation cues (must, shall, due, ...)
   └─ summary                first one or two distinct sentences

Every list is de-duplicated case-insensitively and capped. Nothing here
reads a clock or a random source, so the same text always yields the same
result.
"""

from __future__ import annotations

import logging
import re
import string

from casedocs.analysis.dates import find_date
from casedocs.analysis.result import (
    MAX_ACTION_ITEMS,
    MAX_FINDINGS,
    MAX_KEY_FACTS,
    MAX_TIMELINE_EVENTS,
    AnalysisResult,
    TimelineEventCandidate,
    dedupe,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Tunables
# ---------------------------------------------------------------------------

TITLE_WORDS            = 8
DESCRIPTION_MAX_CHARS  = 280
SUMMARY_SENTENCES      = 2
SUMMARY_MAX_CHARS      = 500
MIN_SENTENCE_CHARS     = 3

_SENTENCE_TERMINATORS = ".!?"
_WORD_STRIP           = string.punctuation + "“”‘’"
_DATEISH_WORD_RE      = re.compile(r"^\d{1,4}(?:[/-]\d{1,4}){0,2}(?:st|nd|rd|th)?$", re.I)


def _keywords(*words: str) -> re.Pattern[str]:
    """Word-prefix matcher: 'injur' matches injury / injured / injuries."""
    return re.compile(r"\b(?:" + "|".join(words) + r")", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Keyword tables
# ---------------------------------------------------------------------------

_HIGH_IMPORTANCE = _keywords(
    "trial", "hearing", "deadline", "verdict", "judgment", "judgement",
    "sentenc", "injunction", "arrest", "settlement", "terminat", "fired",
)
_MEDIUM_IMPORTANCE = _keywords(
    "filed", "motion", "complaint", "deposition", "served", "notice",
    "meeting", "agreement", "contract", "subpoena", "letter", "email",
)

# Checked in order; the first match wins.
_EVENT_TYPE_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("filing",        _keywords("filed", "filing", "motion", "complaint", "petition", "pleading", "brief", "answer")),
    ("hearing",       _keywords("hearing", "trial", "court date", "arraign", "oral argument", "conference with the court")),
    ("deadline",      _keywords("deadline", "due by", "due on", "no later than", "must be submitted")),
    ("discovery",     _keywords("deposition", "deposed", "subpoena", "interrogator", "request for production", "discovery")),
    ("communication", _keywords("email", "e-mail", "letter", "called", "phone", "text message", "wrote", "sent", "notif")),
    ("meeting",       _keywords("met ", "meeting", "meet with", "conference")),
    ("incident",      _keywords("accident", "incident", "injur", "collision", "crash", "assault", "arrest", "fired", "terminat")),
)

_FACT_INDICATOR = re.compile(
    r"\$\s?\d"
    r"|\b\d{2,}\b"
    r"|\b(?:plaintiff|defendant|witness|testif|alleg|contract|agreement|damages|"
    r"evidence|exhibit|statute|court|judge|jury|police|report|signed|paid|owed|"
    r"invoice|policy|claim)",
    re.IGNORECASE,
)

_FAVORABLE = _keywords(
    "admit", "conced", "corroborat", "consistent with", "no evidence",
    "dismiss", "granted", "in favor of", "in our favor", "support",
    "acknowledg", "credible", "favorable", "alibi", "exonerat", "complied",
)
_ADVERSE = _keywords(
    "contradict", "inconsistent", "liable", "liability", "violat", "breach",
    "failed to", "negligen", "guilty", "sanction", "adverse", "damaging",
    "refused", "denied", "prior conviction", "impeach", "unfavorable",
)
_ACTION_CUES = _keywords(
    "must", "shall", "required to", "due ", "respond", "follow up",
    "follow-up", "request", "need to", "needs to", "should", "schedule",
)


# ---------------------------------------------------------------------------
# Sentence splitting
# ---------------------------------------------------------------------------

def split_sentences(text: str) -> list[str]:
    """
    Split on . ! ? when followed by whitespace or end-of-string.

    Whitespace inside each sentence is collapsed; fragments shorter than
    MIN_SENTENCE_CHARS are dropped.
    """
    sentences: list[str] = []
    start = 0
    length = len(text)

    def _emit(fragment: str) -> None:
        cleaned = " ".join(fragment.split())
        if len(cleaned) >= MIN_SENTENCE_CHARS:
            sentences.append(cleaned)

    for i, ch in enumerate(text):
        if ch in _SENTENCE_TERMINATORS and (i + 1 == length or text[i + 1].isspace()):
            _emit(text[start:i + 1])
            start = i + 1

    _emit(text[start:])
    return sentences


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------

class HeuristicAnalyzer:
    """Regex/keyword analysis with no external dependency."""

    name = "heuristic"

    def analyze(self, text: str) -> AnalysisResult:
        sentences = split_sentences(text)

        result = AnalysisResult(
            summary=self._summary(sentences),
            key_facts=dedupe((s for s in sentences if self._is_fact(s)), MAX_KEY_FACTS),
            favorable_findings=dedupe((s for s in sentences if _FAVORABLE.search(s)), MAX_FINDINGS),
            adverse_findings=dedupe((s for s in sentences if _ADVERSE.search(s)), MAX_FINDINGS),
            action_items=dedupe((s for s in sentences if _ACTION_CUES.search(s)), MAX_ACTION_ITEMS),
            timeline_events=self._timeline(sentences),
            provider=self.name,
        )

        logger.debug(
            "Heuristic | sentences=%d facts=%d events=%d",
            len(sentences), len(result.key_facts), len(result.timeline_events),
        )
        return result

    # ------------------------------------------------------------------

    @staticmethod
    def _summary(sentences: list[str]) -> str:
        picked = dedupe(sentences, SUMMARY_SENTENCES)
        return " ".join(picked)[:SUMMARY_MAX_CHARS]

    @staticmethod
    def _is_fact(sentence: str) -> bool:
        return bool(_FACT_INDICATOR.search(sentence)) or find_date(sentence) is not None

    def _timeline(self, sentences: list[str]) -> list[TimelineEventCandidate]:
        events: list[TimelineEventCandidate] = []
        seen: set[tuple[str, str]] = set()

        for sentence in sentences:
            match = find_date(sentence)
            if match is None:
                continue

            title = self._title(sentence[:match.start] + " " + sentence[match.end:], match.iso)
            key = (match.iso, title.casefold())
            if key in seen:
                continue
            seen.add(key)

            events.append(TimelineEventCandidate(
                date=match.iso,
                title=title,
                description=sentence[:DESCRIPTION_MAX_CHARS],
                importance=infer_importance(sentence),
                event_type=infer_event_type(sentence),
            ))
            if len(events) >= MAX_TIMELINE_EVENTS:
                break

        return events

    @staticmethod
    def _title(remainder: str, iso: str) -> str:
        words = []
        for raw in remainder.split():
            word = raw.strip(_WORD_STRIP)
            if word and not _DATEISH_WORD_RE.match(word):
                words.append(word)
            if len(words) == TITLE_WORDS:
                break
        if not words:
            return f"Event on {iso}"
        title = " ".join(words)
        return title[0].upper() + title[1:]


def infer_importance(sentence: str) -> str:
    if _HIGH_IMPORTANCE.search(sentence):
        return "high"
    if _MEDIUM_IMPORTANCE.search(sentence):
        return "medium"
    return "low"


def infer_event_type(sentence: str) -> str:
    for event_type, pattern in _EVENT_TYPE_RULES:
        if pattern.search(sentence):
            return event_type
    return "general"
