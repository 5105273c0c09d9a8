"""
SQLAlchemy ORM Models — Cases, Documents, OCR Jobs & Timeline Events

Mapped classes in SQLAlchemy 2.x style for full async support.

Ownership: a Case belongs to one user (cases.user_id). Documents, jobs and
timeline events are scoped to a case; the pipeline never reads across
owners except from the service-role batch processor.

Schema: casedocs (set via __table_args__)
"""

from __future__ import annotations

import uuid
from datetime import date, datetime
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


JOB_STATUSES = ("pending", "processing", "completed", "failed")
ACTIVE_JOB_STATUSES = ("pending", "processing")


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Case — casedocs.cases
# ---------------------------------------------------------------------------

class Case(Base):
    __tablename__ = "cases"
    __table_args__ = (
        Index("idx_cases_user_id", "user_id"),
        {"schema": "casedocs"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    name: Mapped[str]          = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Case id={self.id} user={self.user_id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# Document — casedocs.documents
# ---------------------------------------------------------------------------

class Document(Base):
    """
    One uploaded file plus everything the pipeline derives from it.

    ocr_processed_at is the "already extracted" marker: enqueue skips
    documents where it is set. ocr_content_hash is the sha256 prefix of the
    source bytes at extraction time; a different hash on re-processing
    invalidates every cached entry for the document.
    """

    __tablename__ = "documents"
    __table_args__ = (
        Index("idx_documents_case_id", "case_id"),
        {"schema": "casedocs"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    case_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("casedocs.cases.id", ondelete="CASCADE"),
        nullable=False,
    )
    name: Mapped[str] = mapped_column(Text, nullable=False)
    file_url: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="S3 key, s3:// URI or http(s) URL of the source file",
    )
    content_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Extraction
    ocr_text: Mapped[Optional[str]]              = mapped_column(Text, nullable=True)
    ocr_provider: Mapped[Optional[str]]          = mapped_column(Text, nullable=True)
    ocr_processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ocr_content_hash: Mapped[Optional[str]]      = mapped_column(Text, nullable=True)
    ocr_page_breaks: Mapped[list] = mapped_column(JSONB, nullable=False, default=list, server_default="[]")
    ocr_tables: Mapped[list]      = mapped_column(JSONB, nullable=False, default=list, server_default="[]")
    ocr_error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated when the last extraction job failed terminally",
    )

    # Analysis
    ai_analyzed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    analysis_provider: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    summary: Mapped[Optional[str]]           = mapped_column(Text, nullable=True)
    key_facts: Mapped[list]          = mapped_column(JSONB, nullable=False, default=list, server_default="[]")
    favorable_findings: Mapped[list] = mapped_column(JSONB, nullable=False, default=list, server_default="[]")
    adverse_findings: Mapped[list]   = mapped_column(JSONB, nullable=False, default=list, server_default="[]")
    action_items: Mapped[list]       = mapped_column(JSONB, nullable=False, default=list, server_default="[]")

    chunk_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return f"<Document id={self.id} case={self.case_id} name={self.name!r}>"


# ---------------------------------------------------------------------------
# OcrJob — casedocs.ocr_jobs
# ---------------------------------------------------------------------------

class OcrJob(Base):
    """
    Unit of pipeline work.

    State machine (status column):
        pending    — claimable once retry_after is null or past
        processing — claimed by exactly one processor
        completed  — results persisted
        failed     — terminal error or max attempts reached (see error_message)

    The partial unique index allows at most one pending/processing job per
    document; terminal rows are history and never reopened.
    """

    __tablename__ = "ocr_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ocr_jobs_status_check",
        ),
        Index(
            "uq_ocr_jobs_active_document",
            "document_id",
            unique=True,
            postgresql_where=text("status IN ('pending', 'processing')"),
        ),
        Index("idx_ocr_jobs_claim", "status", "priority", "created_at"),
        Index("idx_ocr_jobs_user_id", "user_id"),
        {"schema": "casedocs"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    document_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("casedocs.documents.id", ondelete="CASCADE"),
        nullable=False,
    )
    case_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("casedocs.cases.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    status: Mapped[str]  = mapped_column(Text, nullable=False, default="pending", server_default="pending")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=5, server_default="5")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")
    retry_after: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[Optional[str]]    = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<OcrJob id={self.id} document={self.document_id} "
            f"status={self.status} attempts={self.attempts}>"
        )


# ---------------------------------------------------------------------------
# TimelineEvent — casedocs.timeline_events
# ---------------------------------------------------------------------------

class TimelineEvent(Base):
    """
    Case timeline entry. Rows with source='auto' are derived from a document
    by the pipeline and replaced wholesale each time it is re-analyzed.
    """

    __tablename__ = "timeline_events"
    __table_args__ = (
        CheckConstraint("importance IN ('high', 'medium', 'low')", name="timeline_events_importance_check"),
        Index("idx_timeline_events_case_date", "case_id", "event_date"),
        Index("idx_timeline_events_document", "linked_document_id", "source"),
        {"schema": "casedocs"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    case_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("casedocs.cases.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    linked_document_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("casedocs.documents.id", ondelete="SET NULL"),
        nullable=True,
    )
    event_date: Mapped[date]  = mapped_column(Date, nullable=False)
    title: Mapped[str]        = mapped_column(Text, nullable=False)
    description: Mapped[str]  = mapped_column(Text, nullable=False, default="", server_default="")
    importance: Mapped[str]   = mapped_column(Text, nullable=False, default="medium", server_default="medium")
    event_type: Mapped[str]   = mapped_column(Text, nullable=False, default="general", server_default="general")
    source: Mapped[str]       = mapped_column(Text, nullable=False, default="manual", server_default="manual")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
