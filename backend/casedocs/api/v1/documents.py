"""
Document Pipeline API Router
POST /api/v1/documents/{id}/ocr
GET  /api/v1/documents/{id}/chunks
GET  /api/v1/documents/cache/stats

Synchronous OCR request lifecycle:
  ┌─────────────────────────────────────────────────────────┐
  │ 1. JWT verification → user_id + role                    │
  │ 2. Member gate + 10/min per-user bucket (429)           │
  │ 3. Ownership / source file / dedup checks               │
  │    (EnqueueService.start_synchronous, 403/404/409/422)  │
  │ 4. Insert priority-10 job, claim it                     │
  │ 5. QueueProcessor.process_claimed() inline              │
  │ 6. Return the job outcome                               │
  └─────────────────────────────────────────────────────────┘

The chunk listing re-chunks persisted text with caller-supplied options;
results are served from the chunk cache when the same options were used
before. `query` ranks the chunks by term occurrences and `max_tokens` trims
the selection to a prompt budget; both apply after the cache.
"""

from __future__ import annotations

import logging
from typing import Annotated
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import JSONResponse

from casedocs.api.dependencies import (
    Caches,
    Documents,
    Enqueuer,
    Processor,
    require_owner_id,
    sync_ocr_rate_limit,
)
from casedocs.auth.middleware import require_service, require_viewer
from casedocs.auth.token import TokenPayload
from casedocs.processing.chunking import (
    DEFAULT_MAX_CHUNK_SIZE,
    DEFAULT_MIN_CHUNK_SIZE,
    DEFAULT_OVERLAP_SIZE,
    ChunkingOptions,
    find_relevant_chunks,
    optimize_chunks_for_token_limit,
)
from casedocs.queue.processor import build_chunks, chunk_cache_key
from casedocs.schemas.queue import (
    CacheStatsEntry,
    CacheStatsResponse,
    ChunkListResponse,
    ChunkResponse,
    ErrorDetail,
    ErrorResponse,
    JobResult,
    QueueErrors,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/documents",
    tags=["Document Pipeline"],
)


# ---------------------------------------------------------------------------
# GET /documents/cache/stats  (service role)
# ---------------------------------------------------------------------------

@router.get(
    "/cache/stats",
    response_model=CacheStatsResponse,
    summary="Hit/miss/eviction counters for the pipeline caches",
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
        403: {"model": ErrorResponse, "description": "Service role required"},
    },
)
async def cache_stats(
    user:   Annotated[TokenPayload, Depends(require_service)],
    caches: Caches,
) -> CacheStatsResponse:
    return CacheStatsResponse(
        caches={
            name: CacheStatsEntry(
                hits=s.hits,
                misses=s.misses,
                evictions=s.evictions,
                size=s.size,
                max_size=s.max_size,
                item_count=s.item_count,
                hit_rate=s.hit_rate,
            )
            for name, s in caches.stats().items()
        }
    )


# ---------------------------------------------------------------------------
# POST /documents/{document_id}/ocr
# ---------------------------------------------------------------------------

@router.post(
    "/{document_id}/ocr",
    response_model=JobResult,
    summary="Run OCR for one document and wait for the result",
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
        403: {"model": ErrorResponse, "description": "Document belongs to another user"},
        404: {"model": ErrorResponse, "description": "Document not found"},
        409: {"model": ErrorResponse, "description": "A job is already pending or processing"},
        422: {"model": ErrorResponse, "description": "Document has no source file"},
        429: {"model": ErrorResponse, "description": "Rate limit exceeded"},
    },
)
async def run_document_ocr(
    document_id: UUID,
    user:        Annotated[TokenPayload, Depends(sync_ocr_rate_limit)],
    service:     Enqueuer,
    processor:   Processor,
) -> JSONResponse:
    require_owner_id(user)
    job = await service.start_synchronous(document_id, user.user_id)
    outcome = await processor.process_claimed(job)

    result = JobResult(
        id=outcome.id,
        document_id=outcome.document_id,
        status=outcome.status,
        error=outcome.error,
    )
    return JSONResponse(
        status_code=status.HTTP_200_OK,
        content=result.model_dump(mode="json"),
        headers={"X-Job-ID": str(job.id)},
    )


# ---------------------------------------------------------------------------
# GET /documents/{document_id}/chunks
# ---------------------------------------------------------------------------

@router.get(
    "/{document_id}/chunks",
    response_model=ChunkListResponse,
    summary="Chunk a document's extracted text",
    responses={
        401: {"model": ErrorResponse, "description": "Missing or invalid JWT"},
        403: {"model": ErrorResponse, "description": "Document belongs to another user"},
        404: {"model": ErrorResponse, "description": "Document not found"},
        409: {"model": ErrorResponse, "description": "Document has not been extracted"},
        422: {"model": ErrorResponse, "description": "Invalid chunking options"},
    },
)
async def list_document_chunks(
    document_id: UUID,
    user:        Annotated[TokenPayload, Depends(require_viewer)],
    documents:   Documents,
    caches:      Caches,
    max_chunk_size: int  = Query(DEFAULT_MAX_CHUNK_SIZE, gt=0),
    min_chunk_size: int  = Query(DEFAULT_MIN_CHUNK_SIZE, ge=0),
    overlap_size:   int  = Query(DEFAULT_OVERLAP_SIZE, ge=0),
    respect_sentence_boundaries: bool = Query(True),
    by_page:        bool = Query(True, description="Chunk each page separately when page breaks are known"),
    query:          str | None = Query(None, max_length=500, description="Rank chunks by occurrences of these terms"),
    top_k:          int  = Query(5, gt=0, le=100, description="Chunks kept when ranking by query"),
    max_tokens:     int | None = Query(None, gt=0, description="Keep leading chunks within this token estimate"),
) -> ChunkListResponse:
    require_owner_id(user)

    try:
        options = ChunkingOptions(
            max_chunk_size=max_chunk_size,
            min_chunk_size=min_chunk_size,
            overlap_size=overlap_size,
            respect_sentence_boundaries=respect_sentence_boundaries,
        )
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=ErrorResponse(
                error_code="VALIDATION_ERROR",
                message="Invalid chunking options.",
                details=[ErrorDetail(message=str(exc), code="VALIDATION_ERROR")],
            ).model_dump(),
        )

    document = await documents.get_document(document_id)
    if document is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=QueueErrors.document_not_found(document_id).model_dump(),
        )
    if document.owner_id != user.user_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=QueueErrors.forbidden_document(document_id).model_dump(),
        )

    key = chunk_cache_key(document_id, options, by_page)
    chunks = caches.chunks.get(key)
    cached = chunks is not None

    if not cached:
        text, page_breaks = await documents.get_text(document_id)
        if text is None:
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=QueueErrors.not_extracted(document_id).model_dump(),
            )
        chunks = build_chunks(document_id, text, page_breaks, options, by_page)
        caches.chunks.set(key, chunks)

    if query:
        chunks = find_relevant_chunks(chunks, query, top_k)
    if max_tokens is not None:
        chunks = optimize_chunks_for_token_limit(chunks, max_tokens)

    logger.info("Chunks | document=%s count=%d cached=%s", document_id, len(chunks), cached)
    return ChunkListResponse(
        document_id=document_id,
        total_chunks=len(chunks),
        cached=cached,
        chunks=[
            ChunkResponse(
                id=c.id,
                content=c.content,
                start_index=c.start_index,
                end_index=c.end_index,
                chunk_index=c.chunk_index,
                total_chunks=c.total_chunks,
                word_count=c.word_count,
                char_count=c.char_count,
                page_number=c.page_number,
                previous_chunk_id=c.previous_chunk_id,
                next_chunk_id=c.next_chunk_id,
            )
            for c in chunks
        ],
    )
