"""
OCR Providers  —  Ordered, Interchangeable Text Extractors
═══════════════════════════════════════════════════════════

Every provider implements OcrProvider and is tried in this order by the
extraction chain (processing/extractor.py):

  Provider 0: pdf-text-layer (pypdf)                       PDFs only
    - Native text layer, in-process, zero API cost
    - Returns too little text on scanned PDFs → empty_result → next provider

  Provider 1: azure-document-intelligence (prebuilt-layout)
    - Structured-document OCR with table extraction
    - Async API: POST analyze → poll Operation-Location (1 s × 120 ≈ 2 min)

  Provider 2: gemini-vision
    - General vision model; inline base64 image/PDF + extraction prompt

  Provider 3: ocr-space
    - Third-party OCR web API, Engine 2

Error mapping (all providers)
─────────────────────────────
  401 / 403   → auth          429 → rate_limit        5xx → server
  other 4xx   → rejected      poll budget exhausted   → timeout
  parse / analysis failure reported by the service    → rejected

Providers return raw page texts; normalisation, the minimum-length check and
the fallthrough policy live in the chain, not here.
"""

from __future__ import annotations

import asyncio
import base64
import io
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx

from casedocs.core.errors import ProviderError, ProviderErrorKind, classify_http_status
from casedocs.llm.gemini import GeminiClient
from casedocs.llm.prompts import OCR_PROMPT_IMAGE, OCR_PROMPT_PDF
from casedocs.storage.files import FileBlob

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

# Average chars per page below which a PDF text layer is treated as absent
MIN_CHARS_PER_PAGE_THRESHOLD = 50

AZURE_DEFAULT_API_VERSION = "2024-11-30"
OCR_SPACE_URL             = "https://api.ocr.space/parse/image"

_PAGE_MARKER_RE = re.compile(r"^\s*=+\s*PAGE\s+\d+\s*=+\s*$", re.IGNORECASE | re.MULTILINE)


# ---------------------------------------------------------------------------
# Data types
# ---------------------------------------------------------------------------

@dataclass
class OcrOutput:
    """Raw provider output: one string per page plus any structured tables."""
    pages:  list[str]
    tables: list[dict[str, Any]] = field(default_factory=list)

    @property
    def total_chars(self) -> int:
        return sum(len(p.strip()) for p in self.pages)


class OcrProvider(ABC):
    """Interface every OCR provider implements."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Provider identifier recorded as the document's ocr_provider."""

    def supports(self, blob: FileBlob) -> bool:
        return blob.is_ocr_target

    @abstractmethod
    async def extract(self, blob: FileBlob) -> OcrOutput:
        """Extract page texts; raise ProviderError on any failure."""


def _raise_for_status(provider: str, resp: httpx.Response) -> None:
    if resp.status_code >= 400:
        raise ProviderError(
            provider,
            classify_http_status(resp.status_code),
            f"HTTP {resp.status_code}: {_error_message(resp)}",
        )


def _error_message(resp: httpx.Response) -> str:
    try:
        body = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if body.get("message"):
            return str(body["message"])
    return resp.text[:200]


def _json(provider: str, resp: httpx.Response) -> dict[str, Any]:
    try:
        data = resp.json()
    except ValueError as exc:
        raise ProviderError(provider, ProviderErrorKind.SERVER, "malformed JSON body") from exc
    if not isinstance(data, dict):
        raise ProviderError(provider, ProviderErrorKind.SERVER, "unexpected response shape")
    return data


def split_page_markers(text: str) -> list[str]:
    """Split model output on '=== PAGE N ===' lines; no markers → one page."""
    parts = _PAGE_MARKER_RE.split(text)
    pages = [p.strip() for p in parts if p.strip()]
    return pages or [text]


# ---------------------------------------------------------------------------
# Provider 0: native PDF text layer
# ---------------------------------------------------------------------------

class PdfTextLayerProvider(OcrProvider):
    """
    Reads the embedded text layer with pypdf.

    Not OCR at all, but it shares the provider contract so a born-digital
    PDF never pays for a cloud OCR call. Scanned PDFs have no (or a tiny)
    text layer and fall through with empty_result.
    """

    name = "pdf-text-layer"

    def supports(self, blob: FileBlob) -> bool:
        return blob.is_pdf

    async def extract(self, blob: FileBlob) -> OcrOutput:
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()
        output = await loop.run_in_executor(None, self._extract_sync, blob.data)

        page_count = max(len(output.pages), 1)
        avg = output.total_chars / page_count
        logger.info(
            "pypdf | pages=%d total_chars=%d avg_chars_per_page=%.0f elapsed_ms=%.0f",
            len(output.pages), output.total_chars, avg, (time.monotonic() - t0) * 1000,
        )
        if avg < MIN_CHARS_PER_PAGE_THRESHOLD:
            raise ProviderError(
                self.name, ProviderErrorKind.EMPTY_RESULT,
                f"text layer too thin ({avg:.0f} chars/page), likely scanned",
            )
        return output

    def _extract_sync(self, pdf_bytes: bytes) -> OcrOutput:
        from pypdf import PdfReader
        from pypdf.errors import PdfReadError

        try:
            reader = PdfReader(io.BytesIO(pdf_bytes))
            pages = [(page.extract_text() or "") for page in reader.pages]
        except (PdfReadError, ValueError, KeyError) as exc:
            raise ProviderError(self.name, ProviderErrorKind.REJECTED, f"unreadable PDF: {exc}") from exc
        return OcrOutput(pages=pages)


# ---------------------------------------------------------------------------
# Provider 1: Azure Document Intelligence
# ---------------------------------------------------------------------------

class AzureDocumentIntelligenceProvider(OcrProvider):
    name = "azure-document-intelligence"

    def __init__(
        self,
        endpoint: str,
        api_key: str,
        *,
        model: str = "prebuilt-layout",
        api_version: str = AZURE_DEFAULT_API_VERSION,
        poll_interval: float = 1.0,
        max_polls: int = 120,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not endpoint or not api_key:
            raise ValueError("Azure Document Intelligence requires endpoint and api_key")
        self._endpoint      = endpoint.rstrip("/")
        self._api_key       = api_key
        self._model         = model
        self._api_version   = api_version
        self._poll_interval = poll_interval
        self._max_polls     = max_polls
        self._timeout       = timeout
        self._transport     = transport
        self._sleep         = sleep

    @property
    def analyze_url(self) -> str:
        return (
            f"{self._endpoint}/documentintelligence/documentModels/"
            f"{self._model}:analyze?api-version={self._api_version}"
        )

    async def extract(self, blob: FileBlob) -> OcrOutput:
        headers = {"Ocp-Apim-Subscription-Key": self._api_key}

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(
                self.analyze_url,
                headers={**headers, "Content-Type": blob.content_type or "application/octet-stream"},
                content=blob.data,
            )
            _raise_for_status(self.name, resp)

            operation_url = resp.headers.get("Operation-Location")
            if not operation_url:
                raise ProviderError(self.name, ProviderErrorKind.SERVER, "missing Operation-Location header")

            result = await self._poll(client, operation_url, headers)

        return parse_analyze_result(result)

    async def _poll(
        self, client: httpx.AsyncClient, operation_url: str, headers: dict[str, str],
    ) -> dict[str, Any]:
        for attempt in range(1, self._max_polls + 1):
            await self._sleep(self._poll_interval)
            resp = await client.get(operation_url, headers=headers)
            _raise_for_status(self.name, resp)
            body = _json(self.name, resp)

            status = str(body.get("status", "")).lower()
            if status == "succeeded":
                logger.info("Azure DI | model=%s polls=%d status=succeeded", self._model, attempt)
                return body
            if status == "failed":
                detail = (body.get("error") or {}).get("message", "unknown error")
                raise ProviderError(self.name, ProviderErrorKind.REJECTED, f"analysis failed: {detail}")

        raise ProviderError(
            self.name, ProviderErrorKind.TIMEOUT,
            f"analysis still running after {self._max_polls} polls",
        )


def parse_analyze_result(body: dict[str, Any]) -> OcrOutput:
    """Azure analyze result → per-page text with tables rendered as markdown."""
    result = body.get("analyzeResult") or {}
    raw_pages = result.get("pages") or []

    pages: list[str] = []
    for page in raw_pages:
        lines = [ln.get("content", "") for ln in (page.get("lines") or []) if ln.get("content")]
        pages.append("\n".join(lines))

    if not any(p.strip() for p in pages):
        pages = [result.get("content") or ""]

    tables: list[dict[str, Any]] = []
    for table in result.get("tables") or []:
        parsed = {
            "row_count":    int(table.get("rowCount") or 0),
            "column_count": int(table.get("columnCount") or 0),
            "cells": [
                {
                    "row_index":    int(cell.get("rowIndex") or 0),
                    "column_index": int(cell.get("columnIndex") or 0),
                    "content":      cell.get("content") or "",
                }
                for cell in table.get("cells") or []
            ],
        }
        regions = table.get("boundingRegions") or [{}]
        page_number = int(regions[0].get("pageNumber") or 1)
        parsed["page_number"] = page_number
        tables.append(parsed)

        markdown = format_table_markdown(parsed)
        if markdown and 1 <= page_number <= len(pages):
            pages[page_number - 1] = f"{pages[page_number - 1]}\n\n{markdown}".strip()

    return OcrOutput(pages=pages, tables=tables)


def format_table_markdown(table: dict[str, Any]) -> str:
    rows, cols = table["row_count"], table["column_count"]
    if rows == 0 or cols == 0:
        return ""

    grid = [["" for _ in range(cols)] for _ in range(rows)]
    for cell in table["cells"]:
        r, c = cell["row_index"], cell["column_index"]
        if r < rows and c < cols:
            grid[r][c] = " ".join(cell["content"].split()).replace("|", "\\|")

    lines = ["| " + " | ".join(grid[0]) + " |", "| " + " | ".join("---" for _ in range(cols)) + " |"]
    lines.extend("| " + " | ".join(row) + " |" for row in grid[1:])
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Provider 2: Gemini vision
# ---------------------------------------------------------------------------

class GeminiOcrProvider(OcrProvider):
    name = "gemini-vision"

    def __init__(self, client: GeminiClient, *, max_output_tokens: int = 65536) -> None:
        self._client = client
        self._max_output_tokens = max_output_tokens

    async def extract(self, blob: FileBlob) -> OcrOutput:
        mime_type = blob.content_type
        if not mime_type or mime_type == "application/octet-stream":
            mime_type = "application/pdf" if blob.is_pdf else "image/jpeg"

        text = await self._client.generate(
            [
                {"text": OCR_PROMPT_PDF if blob.is_pdf else OCR_PROMPT_IMAGE},
                {"inline_data": {
                    "mime_type": mime_type,
                    "data": base64.b64encode(blob.data).decode("ascii"),
                }},
            ],
            provider=self.name,
            temperature=0.1,
            max_output_tokens=self._max_output_tokens,
        )
        return OcrOutput(pages=split_page_markers(text))


# ---------------------------------------------------------------------------
# Provider 3: OCR.space
# ---------------------------------------------------------------------------

class OcrSpaceProvider(OcrProvider):
    name = "ocr-space"

    def __init__(
        self,
        api_key: str,
        *,
        url: str = OCR_SPACE_URL,
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("OCR.space requires an api_key")
        self._api_key   = api_key
        self._url       = url
        self._timeout   = timeout
        self._transport = transport

    async def extract(self, blob: FileBlob) -> OcrOutput:
        filetype = "PDF" if blob.is_pdf else (blob.extension or "jpg").upper()
        form = {
            "apikey":            self._api_key,
            "language":          "eng",
            "isOverlayRequired": "false",
            "detectOrientation": "true",
            "scale":             "true",
            "OCREngine":         "2",
            "filetype":          filetype,
        }
        files = {"file": (blob.filename or f"document.{filetype.lower()}", blob.data, blob.content_type)}

        async with httpx.AsyncClient(timeout=self._timeout, transport=self._transport) as client:
            resp = await client.post(self._url, data=form, files=files)

        _raise_for_status(self.name, resp)
        body = _json(self.name, resp)

        results = body.get("ParsedResults") or []
        if body.get("OCRExitCode") != 1 or not results:
            message = body.get("ErrorMessage") or "unknown error"
            if isinstance(message, list):
                message = ", ".join(str(m) for m in message)
            raise ProviderError(self.name, ProviderErrorKind.REJECTED, f"parsing failed: {message}")

        return OcrOutput(pages=[str(r.get("ParsedText") or "") for r in results])
