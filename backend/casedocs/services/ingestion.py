"""
OCR Enqueue Service

Turns "please extract these documents" into ocr_jobs rows:

  enqueue(case_id, owner_id, document_ids, priority)
    1. Case must exist (404) and belong to the caller (403)
    2. Keep documents that belong to the case, have a file_url and have
       not been extracted yet (ocr_processed_at IS NULL)
    3. Drop documents that already have a pending/processing job
    4. Insert one pending job per remaining document
    5. Return queued / already_queued / skipped counts

  start_synchronous(document_id, owner_id)
    Same ownership and dedup rules for a single document, then inserts a
    top-priority job and claims it immediately so the caller can process
    it inline through QueueProcessor.process_claimed(). Re-extracting an
    already processed document is allowed here: it is an explicit request.

Dedup invariant: at most one pending/processing job per document. The
pre-check keeps the common path cheap; the partial unique index is the
final guard, and a lost insert race is reported as already_queued.

Errors are raised as HTTPException with QueueErrors bodies, so route
handlers stay thin. No extraction happens here.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Sequence

from fastapi import HTTPException, status

from casedocs.queue.processor import utcnow
from casedocs.queue.store import DocumentRecord, DocumentStore, JobRecord, JobStore, NewJob
from casedocs.schemas.queue import DEFAULT_PRIORITY, SYNC_OCR_PRIORITY, QueueErrors

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EnqueueResult:
    queued:         int
    already_queued: int
    skipped:        int
    job_ids:        list[uuid.UUID] = field(default_factory=list)


class EnqueueService:
    """Stateless apart from its stores — one instance can serve every request."""

    def __init__(
        self,
        jobs:      JobStore,
        documents: DocumentStore,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._jobs      = jobs
        self._documents = documents
        self._clock     = clock

    # ------------------------------------------------------------------
    # Batch enqueue
    # ------------------------------------------------------------------

    async def enqueue(
        self,
        case_id:      uuid.UUID,
        owner_id:     uuid.UUID,
        document_ids: Sequence[uuid.UUID],
        priority:     int = DEFAULT_PRIORITY,
    ) -> EnqueueResult:
        case = await self._documents.get_case(case_id)
        if case is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=QueueErrors.case_not_found(case_id).model_dump(),
            )
        if case.user_id != owner_id:
            logger.info("Enqueue denied | case=%s user=%s", case_id, owner_id)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=QueueErrors.forbidden_case(case_id).model_dump(),
            )

        requested = list(dict.fromkeys(document_ids))
        documents = await self._documents.find_documents(case_id, requested)
        eligible  = [d for d in documents if _is_enqueueable(d)]

        active = await self._jobs.active_document_ids([d.id for d in eligible])
        fresh  = [d for d in eligible if d.id not in active]

        outcome = await self._jobs.insert_jobs(
            [
                NewJob(document_id=d.id, case_id=case_id, user_id=owner_id, priority=priority)
                for d in fresh
            ],
            self._clock(),
        )

        queued         = len(outcome.job_ids)
        already_queued = len(active) + len(outcome.conflicted_doc_ids)
        skipped        = len(requested) - queued - already_queued

        logger.info(
            "Enqueue | case=%s user=%s requested=%d queued=%d already_queued=%d skipped=%d priority=%d",
            case_id, owner_id, len(requested), queued, already_queued, skipped, priority,
        )
        return EnqueueResult(
            queued=queued,
            already_queued=already_queued,
            skipped=skipped,
            job_ids=list(outcome.job_ids),
        )

    # ------------------------------------------------------------------
    # Synchronous single-document entry point
    # ------------------------------------------------------------------

    async def start_synchronous(self, document_id: uuid.UUID, owner_id: uuid.UUID) -> JobRecord:
        """Insert and claim a job for one document; returns it in `processing`."""
        document = await self._documents.get_document(document_id)
        if document is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=QueueErrors.document_not_found(document_id).model_dump(),
            )
        if document.owner_id != owner_id:
            logger.info("Sync OCR denied | document=%s user=%s", document_id, owner_id)
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=QueueErrors.forbidden_document(document_id).model_dump(),
            )
        if not document.file_url:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail=QueueErrors.no_source_file(document_id).model_dump(),
            )

        if await self._jobs.active_document_ids([document.id]):
            raise self._already_queued(document_id)

        now = self._clock()
        outcome = await self._jobs.insert_jobs(
            [NewJob(
                document_id=document.id,
                case_id=document.case_id,
                user_id=owner_id,
                priority=SYNC_OCR_PRIORITY,
            )],
            now,
        )
        if not outcome.job_ids:
            raise self._already_queued(document_id)

        # A batch processor may have claimed it in between.
        job = await self._jobs.claim_job(outcome.job_ids[0], self._clock())
        if job is None:
            raise self._already_queued(document_id)

        logger.info("Sync OCR | document=%s job=%s claimed", document_id, job.id)
        return job

    @staticmethod
    def _already_queued(document_id: uuid.UUID) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=QueueErrors.already_queued(document_id).model_dump(),
        )


def _is_enqueueable(document: DocumentRecord) -> bool:
    return bool(document.file_url) and document.ocr_processed_at is None
