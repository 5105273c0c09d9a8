"""
Celery Tasks — OCR Queue

Task: process_ocr_queue
  Scheduled by beat ("process-ocr-queue"). Builds a QueueProcessor from
  settings and runs exactly one batch:

    claim ≤ batch_size pending jobs → extract → analyze → chunk → persist

  The worker process keeps its own PipelineCaches across runs; the API
  process has a separate set. The async engine is disposed after every run
  because each run gets a fresh event loop.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import Any

from celery import Task

from casedocs.core.config import settings
from casedocs.processing.cache import PipelineCaches
from casedocs.queue.factory import build_caches, build_processor
from casedocs.workers.celery_app import PROCESS_TASK, celery_app

logger = logging.getLogger(__name__)

_worker_caches: PipelineCaches | None = None


def worker_caches() -> PipelineCaches:
    global _worker_caches
    if _worker_caches is None:
        _worker_caches = build_caches(settings)
    return _worker_caches


# ---------------------------------------------------------------------------
# Async task helper
# Run async coroutines inside Celery's synchronous task context.
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)

    import concurrent.futures
    with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
        return pool.submit(asyncio.run, coro).result()


# ---------------------------------------------------------------------------
# Scheduled batch
# ---------------------------------------------------------------------------

@celery_app.task(
    name=PROCESS_TASK,
    bind=True,
    acks_late=True,
    ignore_result=False,
)
def process_ocr_queue(self: Task) -> dict[str, Any]:
    """One QueueProcessor.run_once(); returns the batch report as a dict."""
    return run_async(_process_ocr_queue_async())


async def _process_ocr_queue_async() -> dict[str, Any]:
    from casedocs.db.session import engine

    processor = build_processor(settings, worker_caches())
    try:
        report = await processor.run_once()
    finally:
        await engine.dispose()

    return {
        "processed": report.processed,
        "remaining": report.remaining,
        "failed":    report.failed,
        "jobs": [
            {**dataclasses.asdict(outcome), "id": str(outcome.id), "document_id": str(outcome.document_id)}
            for outcome in report.jobs
        ],
    }
