"""
Text Extraction Chain
═════════════════════

Routes a source file to the right extraction path and runs the OCR
provider fallback chain for images and PDFs.

Routing:
  image/* , .jpg/.png/...  ─┐
  application/pdf , .pdf   ─┴─▶ OCR chain (first_success over providers)
  .docx                     ───▶ python-docx paragraphs + tables
  text/* , .txt/.md/.csv    ───▶ decoded directly (UTF-8, lenient)
  anything else             ───▶ "[File type X - OCR not available for this format]"

OCR chain contract:
  - Providers that don't support the blob type are skipped.
  - Each attempt is bounded by a per-provider timeout.
  - A result whose normalised text is shorter than min_text_length counts
    as empty_result and the next provider is tried.
  - The first good result short-circuits the chain.
  - Exhaustion raises ChainExhaustedError listing every provider's reason.

Normalisation is applied page by page so page break offsets in the final
text stay exact for the page-aware chunker.
"""

from __future__ import annotations

import asyncio
import io
import logging
import re
import unicodedata
from dataclasses import dataclass, field
from typing import Any, Sequence

from casedocs.core.errors import ProviderError, ProviderErrorKind, TerminalPipelineError
from casedocs.core.fallback import first_success
from casedocs.processing.ocr import OcrProvider
from casedocs.storage.files import FileBlob

logger = logging.getLogger(__name__)

MIN_OCR_TEXT_LENGTH = 30
PAGE_SEPARATOR      = "\n\n"

PROVIDER_DIRECT_READ = "direct-read"
PROVIDER_DOCX        = "docx"
PROVIDER_UNSUPPORTED = "unsupported"


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------

_CHAR_MAP = str.maketrans({
    "‘": "'", "’": "'", "‚": "'", "‛": "'", "′": "'",
    "“": '"', "”": '"', "„": '"', "‟": '"', "″": '"',
    "–": "-", "—": "-", "―": "-", "−": "-", "‐": "-", "‑": "-",
    " ": " ", " ": " ", " ": " ", "　": " ",
    "…": "...",
    "​": None, "‌": None, "‍": None, "﻿": None, "­": None,
})

_HSPACE_RE        = re.compile(r"[ \t\f\v]+")
_TRAILING_WS_RE   = re.compile(r" +\n")
_EXCESS_NEWLINES  = re.compile(r"\n{3,}")


def normalize_text(text: str) -> str:
    """
    Unify line endings, normalise unicode punctuation, collapse whitespace.
    """
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = unicodedata.normalize("NFC", text).translate(_CHAR_MAP)
    text = _HSPACE_RE.sub(" ", text)
    text = _TRAILING_WS_RE.sub("\n", text)
    text = _EXCESS_NEWLINES.sub("\n\n", text)
    return text.strip()


# ---------------------------------------------------------------------------
# Result dataclass
# ---------------------------------------------------------------------------

@dataclass
class ExtractionResult:
    """
    text          : normalised pages joined with PAGE_SEPARATOR
    provider      : provider name, "direct-read", "docx" or "unsupported"
    pages         : normalised per-page texts
    tables        : structured tables (Azure layout), possibly empty
    is_ocr_target : True for image/PDF input (30-char minimum applies)
    """
    text:          str
    provider:      str
    pages:         list[str] = field(default_factory=list)
    tables:        list[dict[str, Any]] = field(default_factory=list)
    content_type:  str = ""
    is_ocr_target: bool = False

    @property
    def page_count(self) -> int:
        return len(self.pages) or 1

    @property
    def page_breaks(self) -> list[int]:
        """Offsets in `text` where pages 2..n start."""
        breaks: list[int] = []
        offset = 0
        for page in self.pages[:-1]:
            offset += len(page) + len(PAGE_SEPARATOR)
            breaks.append(offset)
        return breaks

    @property
    def is_placeholder(self) -> bool:
        return self.provider == PROVIDER_UNSUPPORTED

    @classmethod
    def from_pages(cls, pages: Sequence[str], provider: str, blob: FileBlob, **kwargs: Any) -> "ExtractionResult":
        normalized = [normalize_text(p) for p in pages]
        return cls(
            text=PAGE_SEPARATOR.join(normalized),
            provider=provider,
            pages=normalized,
            content_type=blob.content_type,
            is_ocr_target=blob.is_ocr_target,
            **kwargs,
        )


def unsupported_placeholder(blob: FileBlob) -> str:
    return f"[File type {blob.type_label} - OCR not available for this format]"


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------

class ExtractionChain:
    """
    Single entry point for turning a FileBlob into an ExtractionResult.

    Stateless apart from its provider list — safe to share across jobs.
    """

    def __init__(
        self,
        providers: Sequence[OcrProvider],
        *,
        min_text_length: int = MIN_OCR_TEXT_LENGTH,
        timeout: float | None = 150.0,
    ) -> None:
        self._providers       = list(providers)
        self._min_text_length = min_text_length
        self._timeout         = timeout

    @property
    def provider_names(self) -> list[str]:
        return [p.name for p in self._providers]

    async def extract(self, blob: FileBlob) -> ExtractionResult:
        if blob.is_ocr_target:
            return await self._run_ocr(blob)
        if blob.is_docx:
            return await self._read_docx(blob)
        if blob.is_text:
            text = blob.data.decode("utf-8", errors="replace")
            return ExtractionResult.from_pages([text], PROVIDER_DIRECT_READ, blob)

        logger.info("Extraction | type=%s unsupported, storing placeholder", blob.type_label)
        return ExtractionResult(
            text=unsupported_placeholder(blob),
            provider=PROVIDER_UNSUPPORTED,
            content_type=blob.content_type,
        )

    async def _run_ocr(self, blob: FileBlob) -> ExtractionResult:
        candidates = [p for p in self._providers if p.supports(blob)]

        async def _attempt(provider: OcrProvider) -> ExtractionResult:
            output = await provider.extract(blob)
            result = ExtractionResult.from_pages(
                output.pages, provider.name, blob, tables=output.tables,
            )
            if len(result.text) < self._min_text_length:
                raise ProviderError(
                    provider.name, ProviderErrorKind.EMPTY_RESULT,
                    f"only {len(result.text)} chars (minimum {self._min_text_length})",
                )
            return result

        _, result = await first_success("ocr", candidates, _attempt, timeout=self._timeout)
        logger.info(
            "Extraction | provider=%s pages=%d chars=%d tables=%d",
            result.provider, result.page_count, len(result.text), len(result.tables),
        )
        return result

    async def _read_docx(self, blob: FileBlob) -> ExtractionResult:
        loop = asyncio.get_running_loop()
        text = await loop.run_in_executor(None, _docx_text, blob.data)
        return ExtractionResult.from_pages([text], PROVIDER_DOCX, blob)


def _docx_text(data: bytes) -> str:
    """Blocking DOCX read — runs in thread executor."""
    from zipfile import BadZipFile

    import docx
    from docx.opc.exceptions import PackageNotFoundError

    try:
        document = docx.Document(io.BytesIO(data))
    except (BadZipFile, PackageNotFoundError, KeyError, ValueError) as exc:
        raise TerminalPipelineError(f"Corrupt DOCX file: {exc}") from exc

    parts = [p.text for p in document.paragraphs if p.text.strip()]
    for table in document.tables:
        for row in table.rows:
            parts.append(" | ".join(cell.text.strip() for cell in row.cells))
    return "\n".join(parts)
