"""
AI Analysis Chain with Heuristic Fallback

  analyze(text)
      │
      ├─ first_success(providers):
      │     complete(messages) ─▶ parse_analysis_response()
      │        ├─ AnalysisResult        → return  (provider="ai:<name>")
      │        └─ ParseError            → ProviderError(empty_result), next
      │
      └─ ChainExhaustedError / no providers
            └─▶ HeuristicAnalyzer.analyze(text)   (provider="heuristic")

AI analysis is an enhancement, never a hard dependency: analyze() does not
raise for provider or parsing failures.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Callable, Sequence

from casedocs.analysis.heuristic import HeuristicAnalyzer
from casedocs.analysis.parsing import ParseError, parse_analysis_response
from casedocs.analysis.result import AnalysisResult
from casedocs.core.errors import ChainExhaustedError, ProviderError, ProviderErrorKind
from casedocs.core.fallback import first_success
from casedocs.llm.prompts import build_analysis_messages
from casedocs.llm.providers import AnalysisProvider
from casedocs.processing.chunking import ChunkingOptions, chunk_text, merge_chunks

logger = logging.getLogger(__name__)

MIN_ANALYSIS_CHARS = 50   # text must be longer than this to be analyzed


class AnalysisChain:
    def __init__(
        self,
        providers: Sequence[AnalysisProvider] = (),
        *,
        heuristic: HeuristicAnalyzer | None = None,
        timeout: float | None = 60.0,
        max_input_chars: int = 20_000,
        today: Callable[[], date] = date.today,
    ) -> None:
        self._providers       = list(providers)
        self._heuristic       = heuristic or HeuristicAnalyzer()
        self._timeout         = timeout
        self._max_input_chars = max_input_chars
        self._today           = today

    @property
    def provider_names(self) -> list[str]:
        return [p.name for p in self._providers]

    async def analyze(self, text: str) -> AnalysisResult:
        if not self._providers:
            logger.info("Analysis | no AI provider configured, using heuristic")
            return self._heuristic.analyze(text)

        messages = build_analysis_messages(
            fit_to_budget(text, self._max_input_chars), self._max_input_chars,
        )

        async def _attempt(provider: AnalysisProvider) -> AnalysisResult:
            content = await provider.complete(messages)
            outcome = parse_analysis_response(content, provider.name, self._today())
            if isinstance(outcome, ParseError):
                raise ProviderError(provider.name, ProviderErrorKind.EMPTY_RESULT, outcome.reason)
            return outcome

        try:
            _, result = await first_success(
                "analysis", self._providers, _attempt, timeout=self._timeout,
            )
        except ChainExhaustedError as exc:
            logger.warning("Analysis | falling back to heuristic: %s", exc)
            return self._heuristic.analyze(text)

        return result


def should_analyze(text: str) -> bool:
    return len(text) > MIN_ANALYSIS_CHARS


def fit_to_budget(text: str, max_chars: int) -> str:
    """Leading part of `text` within max_chars, ending on a sentence break where one is near."""
    if len(text) <= max_chars:
        return text
    opts = ChunkingOptions(max_chunk_size=max_chars, min_chunk_size=max_chars // 2, overlap_size=0)
    return merge_chunks(chunk_text(text, opts), max_chars)
