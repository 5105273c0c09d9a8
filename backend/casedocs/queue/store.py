"""
Job & Document Stores
═════════════════════

The processor and the enqueue service talk to storage only through two
small interfaces, so tests can swap in in-memory fakes:

  JobStore       ocr_jobs lifecycle   (insert, claim, complete, fail, reschedule, status)
  DocumentStore  cases / documents / timeline_events reads and result writes

SQL implementations
───────────────────
Each operation opens its own session (db.session.session_scope) so jobs
processed concurrently never share a session or transaction.

Claiming is one statement:

  UPDATE ocr_jobs SET status='processing'
   WHERE id IN (SELECT id FROM ocr_jobs
                 WHERE status='pending'
                   AND (retry_after IS NULL OR retry_after <= :now)
                 ORDER BY priority DESC, created_at ASC
                 LIMIT :n
                 FOR UPDATE SKIP LOCKED)
  RETURNING *

Two processors running at once lock disjoint rows; a job can never be
claimed twice. Every later transition is conditional on
status='processing', so a job already moved on by someone else is left
alone.

Insertion relies on the partial unique index
uq_ocr_jobs_active_document (document_id WHERE status IN pending/processing):
ON CONFLICT DO NOTHING turns a lost dedup race into "already queued".
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.sql import Select, Update

from casedocs.analysis.result import AnalysisResult
from casedocs.db.session import session_scope
from casedocs.models.documents import (
    ACTIVE_JOB_STATUSES,
    JOB_STATUSES,
    Case,
    Document,
    OcrJob,
    TimelineEvent,
)

logger = logging.getLogger(__name__)

STATUS_JOB_LIMIT = 50


# ---------------------------------------------------------------------------
# Value types
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class JobRecord:
    id:           uuid.UUID
    document_id:  uuid.UUID
    case_id:      uuid.UUID
    user_id:      uuid.UUID
    status:       str
    priority:     int
    attempts:     int
    created_at:   datetime
    retry_after:  datetime | None = None
    error:        str | None = None
    updated_at:   datetime | None = None
    completed_at: datetime | None = None

    @classmethod
    def from_row(cls, row: OcrJob) -> "JobRecord":
        return cls(
            id=row.id,
            document_id=row.document_id,
            case_id=row.case_id,
            user_id=row.user_id,
            status=row.status,
            priority=row.priority,
            attempts=row.attempts,
            created_at=row.created_at,
            retry_after=row.retry_after,
            error=row.error_message,
            updated_at=row.updated_at,
            completed_at=row.completed_at,
        )


@dataclass(frozen=True)
class NewJob:
    document_id: uuid.UUID
    case_id:     uuid.UUID
    user_id:     uuid.UUID
    priority:    int


@dataclass(frozen=True)
class InsertOutcome:
    job_ids:            list[uuid.UUID]
    conflicted_doc_ids: list[uuid.UUID]


@dataclass(frozen=True)
class CaseRecord:
    id:      uuid.UUID
    user_id: uuid.UUID
    name:    str = ""


@dataclass(frozen=True)
class DocumentRecord:
    id:               uuid.UUID
    case_id:          uuid.UUID
    owner_id:         uuid.UUID
    name:             str = ""
    file_url:         str | None = None
    content_type:     str | None = None
    ocr_processed_at: datetime | None = None
    ocr_content_hash: str | None = None


@dataclass
class DocumentResults:
    """Everything one successful job writes onto its document."""
    text:         str
    provider:     str
    content_hash: str
    processed_at: datetime
    page_breaks:  list[int] = field(default_factory=list)
    tables:       list[dict[str, Any]] = field(default_factory=list)
    chunk_count:  int = 0
    analysis:     AnalysisResult | None = None


@dataclass
class QueueStatus:
    counts: dict[str, int]
    jobs:   list[JobRecord]


# ---------------------------------------------------------------------------
# Interfaces
# ---------------------------------------------------------------------------

class JobStore(ABC):
    @abstractmethod
    async def insert_jobs(self, jobs: Sequence[NewJob], now: datetime) -> InsertOutcome: ...

    @abstractmethod
    async def active_document_ids(self, document_ids: Sequence[uuid.UUID]) -> set[uuid.UUID]:
        """Documents among `document_ids` with a pending or processing job."""

    @abstractmethod
    async def claim_batch(self, limit: int, now: datetime) -> list[JobRecord]:
        """Atomically move up to `limit` claimable jobs to processing."""

    @abstractmethod
    async def claim_job(self, job_id: uuid.UUID, now: datetime) -> JobRecord | None:
        """Claim one specific pending job; None if it is no longer pending."""

    @abstractmethod
    async def complete(self, job_id: uuid.UUID, now: datetime) -> bool: ...

    @abstractmethod
    async def fail(self, job_id: uuid.UUID, attempts: int, error: str, now: datetime) -> bool: ...

    @abstractmethod
    async def reschedule(
        self,
        job_id: uuid.UUID,
        attempts: int,
        retry_after: datetime,
        error: str,
        now: datetime,
    ) -> bool: ...

    @abstractmethod
    async def count_pending(self) -> int: ...

    @abstractmethod
    async def status_for_owner(
        self,
        owner_id: uuid.UUID,
        case_id: uuid.UUID | None = None,
        limit: int = STATUS_JOB_LIMIT,
    ) -> QueueStatus: ...


class DocumentStore(ABC):
    @abstractmethod
    async def get_case(self, case_id: uuid.UUID) -> CaseRecord | None: ...

    @abstractmethod
    async def get_document(self, document_id: uuid.UUID) -> DocumentRecord | None: ...

    @abstractmethod
    async def find_documents(
        self,
        case_id: uuid.UUID,
        document_ids: Sequence[uuid.UUID],
    ) -> list[DocumentRecord]:
        """Documents of `case_id` whose id is in `document_ids`."""

    @abstractmethod
    async def get_text(self, document_id: uuid.UUID) -> tuple[str | None, list[int]]:
        """Extracted text and page breaks, or (None, []) if not extracted."""

    @abstractmethod
    async def persist_results(self, document: DocumentRecord, results: DocumentResults) -> None:
        """Write extraction + analysis and replace auto timeline events."""

    @abstractmethod
    async def record_failure(self, document_id: uuid.UUID, error: str) -> None: ...


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

def claim_statement(now: datetime, limit: int) -> Update:
    candidates: Select = (
        select(OcrJob.id)
        .where(
            OcrJob.status == "pending",
            or_(OcrJob.retry_after.is_(None), OcrJob.retry_after <= now),
        )
        .order_by(OcrJob.priority.desc(), OcrJob.created_at.asc())
        .limit(limit)
        .with_for_update(skip_locked=True)
    )
    return (
        update(OcrJob)
        .where(OcrJob.id.in_(candidates.scalar_subquery()))
        .values(status="processing", updated_at=now)
        .returning(OcrJob)
        .execution_options(synchronize_session=False)
    )


def insert_jobs_statement(jobs: Sequence[NewJob], now: datetime):
    stmt = pg_insert(OcrJob).values([
        {
            "id":          uuid.uuid4(),
            "document_id": job.document_id,
            "case_id":     job.case_id,
            "user_id":     job.user_id,
            "status":      "pending",
            "priority":    job.priority,
            "attempts":    0,
            "created_at":  now,
            "updated_at":  now,
        }
        for job in jobs
    ])
    return stmt.on_conflict_do_nothing(
        index_elements=[OcrJob.document_id],
        index_where=OcrJob.status.in_(ACTIVE_JOB_STATUSES),
    ).returning(OcrJob.id, OcrJob.document_id)


def _sort_claimed(jobs: list[JobRecord]) -> list[JobRecord]:
    # RETURNING order is unspecified
    return sorted(jobs, key=lambda j: (-j.priority, j.created_at))


# ---------------------------------------------------------------------------
# SQL implementations
# ---------------------------------------------------------------------------

class SqlJobStore(JobStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._factory = session_factory

    async def insert_jobs(self, jobs: Sequence[NewJob], now: datetime) -> InsertOutcome:
        if not jobs:
            return InsertOutcome(job_ids=[], conflicted_doc_ids=[])
        async with session_scope(self._factory) as session:
            rows = (await session.execute(insert_jobs_statement(jobs, now))).all()

        inserted = {row.document_id: row.id for row in rows}
        conflicted = [j.document_id for j in jobs if j.document_id not in inserted]
        if conflicted:
            logger.info("Enqueue | lost dedup race for %d document(s)", len(conflicted))
        return InsertOutcome(
            job_ids=[inserted[j.document_id] for j in jobs if j.document_id in inserted],
            conflicted_doc_ids=conflicted,
        )

    async def active_document_ids(self, document_ids: Sequence[uuid.UUID]) -> set[uuid.UUID]:
        if not document_ids:
            return set()
        async with session_scope(self._factory) as session:
            result = await session.execute(
                select(OcrJob.document_id).where(
                    OcrJob.document_id.in_(list(document_ids)),
                    OcrJob.status.in_(ACTIVE_JOB_STATUSES),
                )
            )
            return set(result.scalars().all())

    async def claim_batch(self, limit: int, now: datetime) -> list[JobRecord]:
        async with session_scope(self._factory) as session:
            result = await session.execute(claim_statement(now, limit))
            jobs = [JobRecord.from_row(row) for row in result.scalars().all()]
        return _sort_claimed(jobs)

    async def claim_job(self, job_id: uuid.UUID, now: datetime) -> JobRecord | None:
        stmt = (
            update(OcrJob)
            .where(OcrJob.id == job_id, OcrJob.status == "pending")
            .values(status="processing", updated_at=now)
            .returning(OcrJob)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._factory) as session:
            row = (await session.execute(stmt)).scalars().first()
            return JobRecord.from_row(row) if row is not None else None

    async def _transition(self, job_id: uuid.UUID, **values: Any) -> bool:
        stmt = (
            update(OcrJob)
            .where(OcrJob.id == job_id, OcrJob.status == "processing")
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        async with session_scope(self._factory) as session:
            result = await session.execute(stmt)
        if result.rowcount == 0:
            logger.warning("Job transition skipped | job=%s not processing", job_id)
            return False
        return True

    async def complete(self, job_id: uuid.UUID, now: datetime) -> bool:
        return await self._transition(
            job_id, status="completed", completed_at=now, updated_at=now, error_message=None,
        )

    async def fail(self, job_id: uuid.UUID, attempts: int, error: str, now: datetime) -> bool:
        return await self._transition(
            job_id, status="failed", attempts=attempts, error_message=error,
            completed_at=now, updated_at=now,
        )

    async def reschedule(
        self,
        job_id: uuid.UUID,
        attempts: int,
        retry_after: datetime,
        error: str,
        now: datetime,
    ) -> bool:
        return await self._transition(
            job_id, status="pending", attempts=attempts, retry_after=retry_after,
            error_message=error, updated_at=now,
        )

    async def count_pending(self) -> int:
        async with session_scope(self._factory) as session:
            result = await session.execute(
                select(func.count()).select_from(OcrJob).where(OcrJob.status == "pending")
            )
            return int(result.scalar_one())

    async def status_for_owner(
        self,
        owner_id: uuid.UUID,
        case_id: uuid.UUID | None = None,
        limit: int = STATUS_JOB_LIMIT,
    ) -> QueueStatus:
        filters = [OcrJob.user_id == owner_id]
        if case_id is not None:
            filters.append(OcrJob.case_id == case_id)

        async with session_scope(self._factory) as session:
            count_rows = await session.execute(
                select(OcrJob.status, func.count()).where(*filters).group_by(OcrJob.status)
            )
            job_rows = await session.execute(
                select(OcrJob).where(*filters).order_by(OcrJob.created_at.desc()).limit(limit)
            )
            counts = {s: 0 for s in JOB_STATUSES}
            for job_status, n in count_rows.all():
                counts[job_status] = int(n)
            jobs = [JobRecord.from_row(row) for row in job_rows.scalars().all()]

        return QueueStatus(counts=counts, jobs=jobs)


class SqlDocumentStore(DocumentStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
        self._factory = session_factory

    async def get_case(self, case_id: uuid.UUID) -> CaseRecord | None:
        async with session_scope(self._factory) as session:
            row = await session.get(Case, case_id)
            if row is None:
                return None
            return CaseRecord(id=row.id, user_id=row.user_id, name=row.name)

    @staticmethod
    def _documents_query() -> Select:
        return select(Document, Case.user_id).join(Case, Case.id == Document.case_id)

    @staticmethod
    def _record(doc: Document, owner_id: uuid.UUID) -> DocumentRecord:
        return DocumentRecord(
            id=doc.id,
            case_id=doc.case_id,
            owner_id=owner_id,
            name=doc.name,
            file_url=doc.file_url,
            content_type=doc.content_type,
            ocr_processed_at=doc.ocr_processed_at,
            ocr_content_hash=doc.ocr_content_hash,
        )

    async def get_document(self, document_id: uuid.UUID) -> DocumentRecord | None:
        async with session_scope(self._factory) as session:
            row = (await session.execute(
                self._documents_query().where(Document.id == document_id)
            )).first()
            if row is None:
                return None
            return self._record(row[0], row[1])

    async def find_documents(
        self,
        case_id: uuid.UUID,
        document_ids: Sequence[uuid.UUID],
    ) -> list[DocumentRecord]:
        if not document_ids:
            return []
        async with session_scope(self._factory) as session:
            rows = (await session.execute(
                self._documents_query().where(
                    Document.case_id == case_id,
                    Document.id.in_(list(document_ids)),
                )
            )).all()
            return [self._record(doc, owner_id) for doc, owner_id in rows]

    async def get_text(self, document_id: uuid.UUID) -> tuple[str | None, list[int]]:
        async with session_scope(self._factory) as session:
            row = (await session.execute(
                select(Document.ocr_text, Document.ocr_page_breaks).where(Document.id == document_id)
            )).first()
        if row is None:
            return None, []
        return row[0], list(row[1] or [])

    async def persist_results(self, document: DocumentRecord, results: DocumentResults) -> None:
        values: dict[str, Any] = {
            "ocr_text":         results.text,
            "ocr_provider":     results.provider,
            "ocr_processed_at": results.processed_at,
            "ocr_content_hash": results.content_hash,
            "ocr_page_breaks":  results.page_breaks,
            "ocr_tables":       results.tables,
            "ocr_error":        None,
            "chunk_count":      results.chunk_count,
        }
        # An absent analysis clears the previous content's results.
        analysis = results.analysis if results.analysis is not None else AnalysisResult()
        values.update(
            ai_analyzed=analysis.analyzed,
            analysis_provider=analysis.provider,
            summary=analysis.summary or None,
            key_facts=list(analysis.key_facts),
            favorable_findings=list(analysis.favorable_findings),
            adverse_findings=list(analysis.adverse_findings),
            action_items=list(analysis.action_items),
        )

        async with session_scope(self._factory) as session:
            await session.execute(
                update(Document).where(Document.id == document.id).values(**values)
            )
            await session.execute(
                delete(TimelineEvent).where(
                    TimelineEvent.linked_document_id == document.id,
                    TimelineEvent.source == "auto",
                )
            )
            for event in analysis.timeline_events:
                session.add(TimelineEvent(
                    case_id=document.case_id,
                    user_id=document.owner_id,
                    linked_document_id=document.id,
                    event_date=date.fromisoformat(event.date),
                    title=event.title,
                    description=event.description,
                    importance=event.importance,
                    event_type=event.event_type,
                    source="auto",
                ))

        logger.info(
            "Persisted | document=%s provider=%s chars=%d events=%d",
            document.id, results.provider, len(results.text),
            len(analysis.timeline_events),
        )

    async def record_failure(self, document_id: uuid.UUID, error: str) -> None:
        async with session_scope(self._factory) as session:
            await session.execute(
                update(Document).where(Document.id == document_id).values(ocr_error=error)
            )
