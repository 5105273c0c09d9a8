"""
OCR Queue API Router
POST /api/v1/ocr-queue/enqueue
POST /api/v1/ocr-queue/process
GET  /api/v1/ocr-queue/status

  ┌─────────────────────────────────────────────────────────┐
  │ enqueue  member+, 20/min per user → ocr_jobs rows       │
  │ process  service role only → one bounded batch          │
  │ status   viewer+, caller's own jobs, optional case_id   │
  └─────────────────────────────────────────────────────────┘

The processing endpoint exists for cron/edge triggers; the Celery beat
schedule calls the same QueueProcessor.run_once().
"""

from __future__ import annotations

import logging
from typing import Annotated, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status

from casedocs.api.dependencies import (
    Enqueuer,
    Jobs,
    Processor,
    enqueue_rate_limit,
    require_owner_id,
)
from casedocs.auth.middleware import require_service, require_viewer
from casedocs.auth.token import TokenPayload
from casedocs.schemas.queue import (
    BatchResponse,
    EnqueueRequest,
    EnqueueResponse,
    ErrorResponse,
    JobDetail,
    JobResult,
    QueueStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/ocr-queue",
    tags=["OCR Queue"],
)


# ---------------------------------------------------------------------------
# POST /ocr-queue/enqueue
# ---------------------------------------------------------------------------

@router.post(
    "/enqueue",
    response_model=EnqueueResponse,
    status_code=status.HTTP_200_OK,
    summary="Queue documents of one case for OCR",
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
        403: {"model": ErrorResponse, "description": "Case belongs to another user"},
        404: {"model": ErrorResponse, "description": "Case not found"},
        422: {"model": ErrorResponse, "description": "Validation error"},
        429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
    },
)
async def enqueue_documents(
    body:    EnqueueRequest,
    user:    Annotated[TokenPayload, Depends(enqueue_rate_limit)],
    service: Enqueuer,
) -> EnqueueResponse:
    require_owner_id(user)
    result = await service.enqueue(
        case_id=body.case_id,
        owner_id=user.user_id,
        document_ids=body.document_ids,
        priority=body.priority,
    )
    return EnqueueResponse(
        queued=result.queued,
        already_queued=result.already_queued,
        skipped=result.skipped,
        job_ids=result.job_ids,
    )


# ---------------------------------------------------------------------------
# POST /ocr-queue/process  (service role)
# ---------------------------------------------------------------------------

@router.post(
    "/process",
    response_model=BatchResponse,
    summary="Process one batch of pending OCR jobs",
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
        403: {"model": ErrorResponse, "description": "Service role required"},
    },
)
async def process_queue(
    user:      Annotated[TokenPayload, Depends(require_service)],
    processor: Processor,
) -> BatchResponse:
    logger.info("Queue trigger | caller=%s", user.sub)
    report = await processor.run_once()
    return BatchResponse(
        processed=report.processed,
        remaining=report.remaining,
        failed=report.failed,
        jobs=[
            JobResult(id=o.id, document_id=o.document_id, status=o.status, error=o.error)
            for o in report.jobs
        ],
    )


# ---------------------------------------------------------------------------
# GET /ocr-queue/status
# ---------------------------------------------------------------------------

@router.get(
    "/status",
    response_model=QueueStatusResponse,
    summary="Per-status counts and recent jobs for the caller",
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
        403: {"model": ErrorResponse, "description": "User token required"},
    },
)
async def queue_status(
    user:    Annotated[TokenPayload, Depends(require_viewer)],
    jobs:    Jobs,
    case_id: Optional[UUID] = Query(None, description="Restrict to one case"),
) -> QueueStatusResponse:
    require_owner_id(user)
    queue = await jobs.status_for_owner(user.user_id, case_id)
    return QueueStatusResponse(
        counts=queue.counts,
        jobs=[
            JobDetail(
                id=job.id,
                document_id=job.document_id,
                case_id=job.case_id,
                status=job.status,
                priority=job.priority,
                attempts=job.attempts,
                retry_after=job.retry_after,
                error=job.error,
                created_at=job.created_at,
                updated_at=job.updated_at,
                completed_at=job.completed_at,
            )
            for job in queue.jobs
        ],
    )
