"""
Document Analysis Package
══════════════════════════

Turns extracted document text into structured litigation analysis:
summary, key facts, favorable/adverse findings, action items and
candidate timeline events.

Modules
───────
  result.py     AnalysisResult / TimelineEventCandidate + list clamping
  dates.py      Date token detection and YYYY-MM-DD normalisation
  heuristic.py  Deterministic regex/keyword analyzer (no network)
  parsing.py    LLM response → AnalysisResult | ParseError
  chain.py      Ordered AI providers with heuristic fallback
"""

from casedocs.analysis.chain import AnalysisChain
from casedocs.analysis.heuristic import HeuristicAnalyzer
from casedocs.analysis.result import AnalysisResult, TimelineEventCandidate

__all__ = [
    "AnalysisChain",
    "AnalysisResult",
    "HeuristicAnalyzer",
    "TimelineEventCandidate",
]
