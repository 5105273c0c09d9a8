"""
Prompt templates for litigation document analysis.

The analysis prompt asks for one fixed JSON schema; parsing.py validates
whatever actually comes back.
"""

from __future__ import annotations

from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

ANALYSIS_SYSTEM_PROMPT = (
    "You are an expert legal document analyst specializing in litigation "
    "support. Analyze documents with precision and identify strategic "
    "insights for case preparation. Respond ONLY with valid JSON."
)

ANALYSIS_INSTRUCTIONS = """Analyze this legal document and return a JSON object.

REQUIREMENTS:
1. summary: 2-4 sentence executive summary of the document and its significance
2. key_facts: 5-10 specific factual findings (dates, events, statements, numbers)
3. favorable_findings: 3-5 findings that could support the case
4. adverse_findings: 3-5 findings that could hurt the case
5. action_items: 3-5 specific follow-up actions
6. timeline_events: chronological events in the document, each with
   - "event_date": YYYY-MM-DD (if approximate, use the first of the month/year)
   - "title": short title (5-10 words)
   - "description": 1-2 sentences
   - "importance": "high" | "medium" | "low"
   - "event_type": "communication" | "filing" | "incident" | "meeting" |
                   "hearing" | "deadline" | "discovery" | "general"

Respond with exactly this shape:
{
  "summary": "string",
  "key_facts": ["..."],
  "favorable_findings": ["..."],
  "adverse_findings": ["..."],
  "action_items": ["..."],
  "timeline_events": [
    {"event_date": "2023-01-01", "title": "...", "description": "...", "importance": "high", "event_type": "filing"}
  ]
}

Document text:
"""

OCR_PROMPT_IMAGE = (
    "You are a professional legal document OCR system. Extract ALL text from "
    "this image with maximum accuracy: every word, number, date, stamp, case "
    "number, Bates number and annotation. Preserve headings, paragraphs, lists "
    "and tables (use | separators). Mark unclear text with [UNCLEAR: best guess]. "
    "Output plain text only, no markdown."
)

OCR_PROMPT_PDF = (
    "You are a professional legal document OCR system. Extract ALL text from "
    "every page of this PDF with maximum accuracy: every word, number, date, "
    "stamp, case number, Bates number and annotation. Preserve headings, "
    "paragraphs, lists and tables (use | separators). Start each page with a "
    "line '=== PAGE N ==='. Output plain text only, no markdown."
)


def build_analysis_messages(text: str, max_chars: int = 20_000) -> list[BaseMessage]:
    return [
        SystemMessage(content=ANALYSIS_SYSTEM_PROMPT),
        HumanMessage(content=ANALYSIS_INSTRUCTIONS + text[:max_chars]),
    ]
