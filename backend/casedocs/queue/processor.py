"""
OCR Queue Processor
═══════════════════

run_once() drains ONE bounded batch and returns a BatchReport. It never
loops on its own: the Celery beat schedule (or the service-role HTTP
trigger) calls it repeatedly, which keeps it testable and cancellable.

  run_once()
      │
      ├─ JobStore.claim_batch(batch_size, now)     pending → processing (atomic)
      │
      ├─ gather(process_claimed(job) …)             bounded by Semaphore(concurrency)
      │     │
      │     ├─ load document + source file          no file_url → terminal
      │     ├─ sha256(file)[:16]                    changed → invalidate document caches
      │     ├─ ExtractionChain.extract()            extraction cache
      │     ├─ AnalysisChain.analyze()              analysis cache; skipped for short text
      │     ├─ chunk_text / chunk_document_with_pages → chunk cache
      │     ├─ DocumentStore.persist_results()      + replace auto timeline events
      │     └─ JobStore.complete()
      │
      └─ BatchReport(processed, remaining, failed, jobs)

Failure policy (classify_failure):
  terminal, or transient with attempts+1 ≥ max_attempts
      → job failed, error recorded on the document, never retried
  transient below max_attempts
      → job pending again, retry_after = now + backoff[min(attempts-1, len-1)]
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Sequence

from casedocs.analysis.chain import AnalysisChain, should_analyze
from casedocs.analysis.result import AnalysisResult
from casedocs.core.errors import TerminalPipelineError, classify_failure
from casedocs.processing.cache import PipelineCaches, make_cache_key
from casedocs.processing.chunking import (
    Chunk,
    ChunkingOptions,
    chunk_document_with_pages,
    chunk_text,
)
from casedocs.processing.extractor import MIN_OCR_TEXT_LENGTH, ExtractionChain, ExtractionResult
from casedocs.queue.store import (
    DocumentRecord,
    DocumentResults,
    DocumentStore,
    JobRecord,
    JobStore,
)
from casedocs.storage.files import FileBlob, FileLoader, guess_content_type

logger = logging.getLogger(__name__)

DEFAULT_BACKOFF_SECONDS = (60, 300, 900)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QueueSettings:
    batch_size:      int = 5
    concurrency:     int = 5
    max_attempts:    int = 3
    backoff_seconds: tuple[int, ...] = DEFAULT_BACKOFF_SECONDS
    min_text_length: int = MIN_OCR_TEXT_LENGTH

    def __post_init__(self) -> None:
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if self.concurrency <= 0:
            raise ValueError("concurrency must be positive")
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        if not self.backoff_seconds or any(s <= 0 for s in self.backoff_seconds):
            raise ValueError("backoff_seconds must be a non-empty sequence of positive values")


def compute_retry_after(now: datetime, attempts: int, backoff: Sequence[int]) -> datetime:
    """now + backoff[min(attempts-1, len(backoff)-1)]; attempts counts from 1."""
    index = min(max(attempts, 1) - 1, len(backoff) - 1)
    return now + timedelta(seconds=backoff[index])


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class JobOutcome:
    id:          Any
    document_id: Any
    status:      str            # completed | failed | pending (rescheduled)
    error:       str | None = None


@dataclass
class BatchReport:
    processed: int = 0
    remaining: int = 0
    failed:    int = 0
    jobs:      list[JobOutcome] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Cache keys
# ---------------------------------------------------------------------------

def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()[:16]


def chunk_cache_key(document_id: Any, options: ChunkingOptions, by_page: bool) -> str:
    return make_cache_key(document_id, "chunks", {**options.as_dict(), "by_page": by_page})


def build_chunks(
    document_id: Any,
    text: str,
    page_breaks: Sequence[int],
    options: ChunkingOptions,
    by_page: bool,
) -> list[Chunk]:
    if by_page and page_breaks:
        return chunk_document_with_pages(text, page_breaks, options, document_id=str(document_id))
    return chunk_text(text, options, document_id=str(document_id))


# ---------------------------------------------------------------------------
# Processor
# ---------------------------------------------------------------------------

class QueueProcessor:
    def __init__(
        self,
        jobs:      JobStore,
        documents: DocumentStore,
        loader:    FileLoader,
        extractor: ExtractionChain,
        analysis:  AnalysisChain,
        caches:    PipelineCaches,
        settings:  QueueSettings | None = None,
        *,
        chunking:  ChunkingOptions | None = None,
        clock:     Callable[[], datetime] = utcnow,
    ) -> None:
        self._jobs      = jobs
        self._documents = documents
        self._loader    = loader
        self._extractor = extractor
        self._analysis  = analysis
        self._caches    = caches
        self._settings  = settings or QueueSettings()
        self._chunking  = chunking or ChunkingOptions()
        self._clock     = clock

    @property
    def settings(self) -> QueueSettings:
        return self._settings

    # ------------------------------------------------------------------
    # Batch entry point
    # ------------------------------------------------------------------

    async def run_once(self) -> BatchReport:
        claimed = await self._jobs.claim_batch(self._settings.batch_size, self._clock())
        if not claimed:
            remaining = await self._jobs.count_pending()
            logger.info("OCR queue | no claimable jobs remaining=%d", remaining)
            return BatchReport(remaining=remaining)

        semaphore = asyncio.Semaphore(self._settings.concurrency)

        async def _bounded(job: JobRecord) -> JobOutcome:
            async with semaphore:
                return await self.process_claimed(job)

        results = await asyncio.gather(
            *(_bounded(job) for job in claimed), return_exceptions=True,
        )
        outcomes = [
            self._unsettled(job, result) if isinstance(result, BaseException) else result
            for job, result in zip(claimed, results)
        ]

        report = BatchReport(
            processed=sum(1 for o in outcomes if o.status == "completed"),
            failed=sum(1 for o in outcomes if o.status == "failed"),
            remaining=await self._jobs.count_pending(),
            jobs=list(outcomes),
        )
        logger.info(
            "OCR queue | claimed=%d processed=%d failed=%d remaining=%d",
            len(claimed), report.processed, report.failed, report.remaining,
        )
        return report

    # ------------------------------------------------------------------
    # Single job
    # ------------------------------------------------------------------

    async def process_claimed(self, job: JobRecord) -> JobOutcome:
        """Run one job already in `processing` to a terminal or retry state."""
        logger.info("Job start | job=%s document=%s attempt=%d", job.id, job.document_id, job.attempts + 1)
        try:
            await self._process(job)
            await self._jobs.complete(job.id, self._clock())
        except Exception as exc:
            return await self._handle_failure(job, exc)

        logger.info("Job completed | job=%s document=%s", job.id, job.document_id)
        return JobOutcome(id=job.id, document_id=job.document_id, status="completed")

    async def _process(self, job: JobRecord) -> None:
        document = await self._documents.get_document(job.document_id)
        if document is None:
            raise TerminalPipelineError(f"Document {job.document_id} not found")
        if not document.file_url:
            raise TerminalPipelineError("Document has no source file reference")

        blob = await self._loader.load(document.file_url)
        if document.content_type:
            blob = FileBlob(
                data=blob.data,
                content_type=guess_content_type(blob.filename, document.content_type),
                filename=blob.filename,
            )

        digest = content_hash(blob.data)
        if document.ocr_content_hash and document.ocr_content_hash != digest:
            self._caches.invalidate_document(document.id)

        extraction = await self._extract(document, blob, digest)
        if extraction.is_ocr_target and len(extraction.text) < self._settings.min_text_length:
            raise TerminalPipelineError(
                f"Extracted text too short ({len(extraction.text)} chars)"
            )

        analysis: AnalysisResult | None = None
        if not extraction.is_placeholder and should_analyze(extraction.text):
            analysis = await self._analyze(document, extraction.text)

        page_breaks = extraction.page_breaks
        chunks = self._chunk(document, extraction.text, page_breaks)

        await self._documents.persist_results(document, DocumentResults(
            text=extraction.text,
            provider=extraction.provider,
            content_hash=digest,
            processed_at=self._clock(),
            page_breaks=page_breaks,
            tables=extraction.tables,
            chunk_count=len(chunks),
            analysis=analysis,
        ))

    async def _extract(self, document: DocumentRecord, blob: FileBlob, digest: str) -> ExtractionResult:
        key = make_cache_key(document.id, "extraction", {"content_hash": digest})
        cached = self._caches.extraction.get(key)
        if cached is not None:
            logger.info("Extraction cache hit | document=%s", document.id)
            return cached

        result = await self._extractor.extract(blob)
        self._caches.extraction.set(key, result)
        return result

    async def _analyze(self, document: DocumentRecord, text: str) -> AnalysisResult:
        key = make_cache_key(document.id, "analysis", {"text_hash": content_hash(text.encode("utf-8"))})
        cached = self._caches.analysis.get(key)
        if cached is not None:
            logger.info("Analysis cache hit | document=%s", document.id)
            return cached

        result = await self._analysis.analyze(text)
        self._caches.analysis.set(key, result)
        logger.info(
            "Analysis | document=%s provider=%s facts=%d events=%d",
            document.id, result.provider, len(result.key_facts), len(result.timeline_events),
        )
        return result

    def _chunk(self, document: DocumentRecord, text: str, page_breaks: list[int]) -> list[Chunk]:
        by_page = bool(page_breaks)
        chunks = build_chunks(document.id, text, page_breaks, self._chunking, by_page)
        self._caches.chunks.set(chunk_cache_key(document.id, self._chunking, by_page), chunks)
        return chunks

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _handle_failure(self, job: JobRecord, exc: Exception) -> JobOutcome:
        transient, message = classify_failure(exc)
        attempts = job.attempts + 1
        now = self._clock()

        if transient and attempts < self._settings.max_attempts:
            retry_after = compute_retry_after(now, attempts, self._settings.backoff_seconds)
            try:
                await self._jobs.reschedule(job.id, attempts, retry_after, message, now)
            except Exception as store_exc:
                return self._unsettled(job, store_exc, cause=message)
            logger.warning(
                "Job rescheduled | job=%s attempts=%d retry_after=%s error=%s",
                job.id, attempts, retry_after.isoformat(), message,
            )
            return JobOutcome(
                id=job.id,
                document_id=job.document_id,
                status="pending",
                error=f"{message}; retry at {retry_after.isoformat()}",
            )

        try:
            await self._jobs.fail(job.id, attempts, message, now)
        except Exception as store_exc:
            return self._unsettled(job, store_exc, cause=message)
        try:
            await self._documents.record_failure(job.document_id, message)
        except Exception as store_exc:
            logger.error("Document error not recorded | document=%s error=%s", job.document_id, store_exc)
        logger.error(
            "Job failed | job=%s attempts=%d transient=%s error=%s",
            job.id, attempts, transient, message,
        )
        return JobOutcome(id=job.id, document_id=job.document_id, status="failed", error=message)

    def _unsettled(self, job: JobRecord, exc: BaseException, cause: str | None = None) -> JobOutcome:
        """Outcome for a job whose state transition could not be written; it stays in `processing`."""
        message = classify_failure(exc)[1] if isinstance(exc, Exception) else repr(exc)
        error = f"{cause}; state not recorded: {message}" if cause else f"State not recorded: {message}"
        logger.error("Job unsettled | job=%s document=%s error=%s", job.id, job.document_id, error)
        return JobOutcome(id=job.id, document_id=job.document_id, status="processing", error=error)
