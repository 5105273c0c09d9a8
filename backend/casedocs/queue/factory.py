"""
Pipeline wiring — Settings → QueueProcessor

The single place that turns configuration into provider chains. Both the
FastAPI lifespan and the Celery worker call build_processor(); each passes
its own PipelineCaches so nothing is shared through module globals.

Providers whose credentials are missing are skipped rather than failing
startup; an empty OCR chain surfaces per job as a terminal
"No ocr provider configured" error.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from casedocs.analysis.chain import AnalysisChain
from casedocs.llm.gemini import GeminiClient
from casedocs.llm.providers import build_analysis_providers
from casedocs.processing.cache import CacheSettings, PipelineCaches
from casedocs.processing.extractor import ExtractionChain
from casedocs.processing.ocr import (
    AzureDocumentIntelligenceProvider,
    GeminiOcrProvider,
    OcrProvider,
    OcrSpaceProvider,
    PdfTextLayerProvider,
)
from casedocs.queue.processor import QueueProcessor, QueueSettings
from casedocs.queue.store import DocumentStore, JobStore, SqlDocumentStore, SqlJobStore
from casedocs.storage.files import FileLoader

if TYPE_CHECKING:
    from casedocs.core.config import Settings

logger = logging.getLogger(__name__)


def build_ocr_providers(settings: "Settings") -> list[OcrProvider]:
    providers: list[OcrProvider] = []

    if settings.ocr_native_pdf_first:
        providers.append(PdfTextLayerProvider())

    if settings.azure_doc_intelligence_configured:
        providers.append(AzureDocumentIntelligenceProvider(
            settings.azure_doc_intelligence_endpoint,
            settings.azure_doc_intelligence_key,
            model=settings.azure_doc_intelligence_model,
            api_version=settings.azure_doc_intelligence_api_version,
            poll_interval=settings.ocr_poll_interval_seconds,
            max_polls=settings.ocr_poll_max_attempts,
        ))

    if settings.google_ai_api_key:
        providers.append(GeminiOcrProvider(GeminiClient(
            settings.google_ai_api_key,
            settings.gemini_model,
            timeout=settings.ocr_timeout_seconds,
        )))

    if settings.ocr_space_api_key:
        providers.append(OcrSpaceProvider(
            settings.ocr_space_api_key,
            url=settings.ocr_space_url,
            timeout=settings.ocr_timeout_seconds,
        ))

    logger.info("OCR providers | configured=%s", [p.name for p in providers])
    return providers


def build_caches(settings: "Settings") -> PipelineCaches:
    return PipelineCaches.build(
        extraction=CacheSettings(settings.extraction_cache_max_bytes, settings.extraction_cache_ttl),
        analysis=CacheSettings(settings.analysis_cache_max_bytes, settings.analysis_cache_ttl),
        chunks=CacheSettings(settings.chunk_cache_max_bytes, settings.chunk_cache_ttl),
    )


def build_queue_settings(settings: "Settings") -> QueueSettings:
    return QueueSettings(
        batch_size=settings.ocr_queue_batch_size,
        concurrency=settings.ocr_queue_concurrency,
        max_attempts=settings.ocr_max_attempts,
        backoff_seconds=tuple(settings.ocr_backoff_seconds),
        min_text_length=settings.ocr_min_text_length,
    )


def build_processor(
    settings: "Settings",
    caches: PipelineCaches,
    *,
    jobs: JobStore | None = None,
    documents: DocumentStore | None = None,
) -> QueueProcessor:
    return QueueProcessor(
        jobs=jobs or SqlJobStore(),
        documents=documents or SqlDocumentStore(),
        loader=FileLoader(
            settings.s3_bucket,
            region=settings.aws_region,
            timeout=settings.download_timeout_seconds,
            max_bytes=settings.max_download_bytes,
        ),
        extractor=ExtractionChain(
            build_ocr_providers(settings),
            min_text_length=settings.ocr_min_text_length,
            timeout=settings.ocr_timeout_seconds,
        ),
        analysis=AnalysisChain(
            build_analysis_providers(settings),
            timeout=settings.llm_timeout_seconds,
            max_input_chars=settings.analysis_max_input_chars,
        ),
        caches=caches,
        settings=build_queue_settings(settings),
    )
