"""
OCR Queue & Document Pipeline — Pydantic Request/Response Schemas

Covers:
  POST /api/v1/ocr-queue/enqueue        EnqueueRequest → EnqueueResponse
  POST /api/v1/ocr-queue/process        → BatchResponse          (service role)
  GET  /api/v1/ocr-queue/status         → QueueStatusResponse
  POST /api/v1/documents/{id}/ocr       → JobResult               (synchronous OCR)
  GET  /api/v1/documents/{id}/chunks    → ChunkListResponse
  GET  /api/v1/documents/cache/stats    → CacheStatsResponse      (service role)

plus the uniform error envelope and the QueueErrors factory.

Design decisions:
  - owner/user ids always come from the verified JWT, never the body.
  - document_ids are de-duplicated preserving order; 1–100 per call.
  - All timestamps are timezone-aware UTC.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

MAX_DOCUMENTS_PER_ENQUEUE = 100
MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5
SYNC_OCR_PRIORITY = 10


# ---------------------------------------------------------------------------
# Enqueue
# ---------------------------------------------------------------------------

class EnqueueRequest(BaseModel):
    case_id:      UUID
    document_ids: list[UUID] = Field(..., min_length=1, max_length=MAX_DOCUMENTS_PER_ENQUEUE)
    priority:     int        = Field(DEFAULT_PRIORITY, ge=MIN_PRIORITY, le=MAX_PRIORITY)

    @field_validator("document_ids")
    @classmethod
    def _dedupe(cls, value: list[UUID]) -> list[UUID]:
        return list(dict.fromkeys(value))


class EnqueueResponse(BaseModel):
    """Counts always add up to len(document_ids) after de-duplication."""
    queued:         int
    already_queued: int
    skipped:        int
    job_ids:        list[UUID] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Jobs / batches
# ---------------------------------------------------------------------------

class JobResult(BaseModel):
    id:          UUID
    document_id: UUID
    status:      str
    error:       str | None = None


class BatchResponse(BaseModel):
    processed: int
    remaining: int
    failed:    int
    jobs:      list[JobResult] = Field(default_factory=list)


class JobDetail(BaseModel):
    id:           UUID
    document_id:  UUID
    case_id:      UUID
    status:       str
    priority:     int
    attempts:     int
    retry_after:  datetime | None = None
    error:        str | None = None
    created_at:   datetime
    updated_at:   datetime | None = None
    completed_at: datetime | None = None


class QueueStatusResponse(BaseModel):
    counts: dict[str, int]
    jobs:   list[JobDetail] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Chunks & cache
# ---------------------------------------------------------------------------

class ChunkResponse(BaseModel):
    id:                str
    content:           str
    start_index:       int
    end_index:         int
    chunk_index:       int
    total_chunks:      int
    word_count:        int
    char_count:        int
    page_number:       int | None = None
    previous_chunk_id: str | None = None
    next_chunk_id:     str | None = None


class ChunkListResponse(BaseModel):
    document_id:  UUID
    total_chunks: int
    cached:       bool = False
    chunks:       list[ChunkResponse] = Field(default_factory=list)


class CacheStatsEntry(BaseModel):
    hits:       int
    misses:     int
    evictions:  int
    size:       int
    max_size:   int
    item_count: int
    hit_rate:   float


class CacheStatsResponse(BaseModel):
    caches: dict[str, CacheStatsEntry]


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str


class ErrorResponse(BaseModel):
    """Uniform error envelope for all 4xx/5xx responses."""
    error_code: str
    message:    str
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None = None
    reset_at:   float | None = Field(None, description="Epoch seconds when a rate limit resets")


class QueueErrors:
    """Factories for every documented error case."""

    @staticmethod
    def forbidden_case(case_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="FORBIDDEN",
            message="You do not have access to this case.",
            details=[ErrorDetail(field="case_id", message=f"Case '{case_id}' belongs to another user.", code="FORBIDDEN")],
        )

    @staticmethod
    def forbidden_document(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="FORBIDDEN",
            message="You do not have access to this document.",
            details=[ErrorDetail(field="document_id", message=f"Document '{document_id}' belongs to another user.", code="FORBIDDEN")],
        )

    @staticmethod
    def case_not_found(case_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="CASE_NOT_FOUND",
            message=f"Case '{case_id}' was not found.",
        )

    @staticmethod
    def document_not_found(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="DOCUMENT_NOT_FOUND",
            message=f"Document '{document_id}' was not found.",
        )

    @staticmethod
    def no_source_file(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="NO_SOURCE_FILE",
            message=f"Document '{document_id}' has no source file to process.",
        )

    @staticmethod
    def not_extracted(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="NOT_EXTRACTED",
            message=f"Document '{document_id}' has no extracted text yet.",
        )

    @staticmethod
    def already_queued(document_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="ALREADY_QUEUED",
            message="An OCR job for this document is already pending or processing.",
            details=[ErrorDetail(field="document_id", message=str(document_id), code="ALREADY_QUEUED")],
        )

    @staticmethod
    def rate_limited(reset_at: float) -> ErrorResponse:
        return ErrorResponse(
            error_code="RATE_LIMITED",
            message="Too many requests. Please retry later.",
            reset_at=reset_at,
        )

    @staticmethod
    def validation_error(details: list[dict[str, Any]]) -> ErrorResponse:
        return ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=[
                ErrorDetail(
                    field=".".join(str(p) for p in d.get("loc", ()) if p != "body") or None,
                    message=d.get("msg", "invalid value"),
                    code="VALIDATION_ERROR",
                )
                for d in details
            ],
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred.",
            request_id=request_id,
        )


HTTP_ERROR_MAP: dict[int, str] = {
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    409: "ALREADY_QUEUED",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
}
