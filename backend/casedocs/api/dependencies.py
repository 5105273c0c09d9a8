"""
Composed FastAPI Dependencies

The single wiring point for request context. Pipeline components are built
once per process by install_pipeline() (called from the app lifespan) and
kept on app.state; dependencies below hand them to route handlers.

  app.state.caches        PipelineCaches
  app.state.rate_limiter  TokenBucketRateLimiter
  app.state.jobs          JobStore
  app.state.documents     DocumentStore
  app.state.processor     QueueProcessor

Tests call install_pipeline() with in-memory stores and fake providers
instead of running the lifespan.
"""

from __future__ import annotations

import logging
import math
from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Request, status

from casedocs.auth.middleware import require_member
from casedocs.auth.token import TokenPayload
from casedocs.core.config import Settings, get_settings
from casedocs.core.rate_limit import RateLimitConfig, TokenBucketRateLimiter
from casedocs.processing.cache import PipelineCaches
from casedocs.queue.factory import build_caches, build_processor
from casedocs.queue.processor import QueueProcessor
from casedocs.queue.store import DocumentStore, JobStore, SqlDocumentStore, SqlJobStore
from casedocs.schemas.queue import QueueErrors
from casedocs.services.ingestion import EnqueueService

logger = logging.getLogger(__name__)


def install_pipeline(
    app: FastAPI,
    settings: Settings,
    *,
    jobs: JobStore | None = None,
    documents: DocumentStore | None = None,
    processor: QueueProcessor | None = None,
    caches: PipelineCaches | None = None,
    rate_limiter: TokenBucketRateLimiter | None = None,
) -> None:
    jobs      = jobs if jobs is not None else SqlJobStore()
    documents = documents if documents is not None else SqlDocumentStore()
    caches    = caches if caches is not None else build_caches(settings)

    app.state.caches       = caches
    app.state.rate_limiter = rate_limiter if rate_limiter is not None else TokenBucketRateLimiter(
        global_config=RateLimitConfig.per_minute(settings.global_rate_limit_per_minute),
    )
    app.state.jobs         = jobs
    app.state.documents    = documents
    app.state.processor    = processor if processor is not None else build_processor(
        settings, caches, jobs=jobs, documents=documents,
    )


# ---------------------------------------------------------------------------
# Component accessors
# ---------------------------------------------------------------------------

def get_caches(request: Request) -> PipelineCaches:
    return request.app.state.caches


def get_rate_limiter(request: Request) -> TokenBucketRateLimiter:
    return request.app.state.rate_limiter


def get_job_store(request: Request) -> JobStore:
    return request.app.state.jobs


def get_document_store(request: Request) -> DocumentStore:
    return request.app.state.documents


def get_processor(request: Request) -> QueueProcessor:
    return request.app.state.processor


def get_enqueue_service(request: Request) -> EnqueueService:
    return EnqueueService(request.app.state.jobs, request.app.state.documents)


# ---------------------------------------------------------------------------
# Per-user rate limit gate
# ---------------------------------------------------------------------------

def rate_limited(scope: str, setting_name: str):
    """
    Returns a dependency that authenticates a member and charges one token
    from the shared global bucket, then from the user's `scope` bucket
    (settings.<setting_name> requests per minute). Raises 429 with reset_at
    when either bucket is empty.
    """
    async def _dependency(
        request: Request,
        user: Annotated[TokenPayload, Depends(require_member)],
    ) -> TokenPayload:
        per_minute = getattr(get_settings(), setting_name)
        limiter: TokenBucketRateLimiter = request.app.state.rate_limiter
        decision = limiter.check_global_limit()
        if decision.allowed:
            decision = limiter.check_user_limit(
                str(user.user_id or user.sub),
                scope=scope,
                config=RateLimitConfig.per_minute(per_minute),
            )
        if not decision.allowed:
            logger.info("Rate limited | user=%s scope=%s", user.sub, scope)
            retry_in = max(0, math.ceil(decision.reset_at - limiter.now()))
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail=QueueErrors.rate_limited(decision.reset_at).model_dump(),
                headers={"Retry-After": str(retry_in)},
            )
        return user

    return _dependency


def require_owner_id(user: TokenPayload) -> None:
    """Owner-scoped reads need a user subject; bare service tokens have none."""
    if user.user_id is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This endpoint requires a user token.",
        )


enqueue_rate_limit  = rate_limited("enqueue", "enqueue_rate_limit_per_minute")
sync_ocr_rate_limit = rate_limited("sync-ocr", "sync_ocr_rate_limit_per_minute")


# ---------------------------------------------------------------------------
# Type aliases for cleaner route signatures
# ---------------------------------------------------------------------------

Caches        = Annotated[PipelineCaches, Depends(get_caches)]
Jobs          = Annotated[JobStore,       Depends(get_job_store)]
Documents     = Annotated[DocumentStore,  Depends(get_document_store)]
Processor     = Annotated[QueueProcessor, Depends(get_processor)]
Enqueuer      = Annotated[EnqueueService, Depends(get_enqueue_service)]
