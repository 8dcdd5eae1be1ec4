"""SQLAlchemy ORM models for messages, watermarks and pipeline results."""

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from backend.docpipe.models.common import utc_now


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class UnifiedMessage(Base):
    """Chat message from any stream, written by ingestion adapters."""

    __tablename__ = "unified_messages"
    __table_args__ = (
        UniqueConstraint("stream_id", "message_id", name="uq_message_stream_msg"),
        Index("idx_message_stream_status_ts", "stream_id", "processing_status", "timestamp"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    stream_id: Mapped[str] = mapped_column(Text, nullable=False)
    message_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    author: Mapped[str] = mapped_column(Text, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    channel: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    processing_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default="PENDING"
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    # Relationships
    classification: Mapped["MessageClassification | None"] = relationship(
        "MessageClassification", back_populates="message", uselist=False
    )


class ProcessingWatermark(Base):
    """Per-stream processing watermark."""

    __tablename__ = "processing_watermark"

    stream_id: Mapped[str] = mapped_column(Text, primary_key=True)
    watermark_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    last_processed_batch: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utc_now, onupdate=utc_now, nullable=False
    )


class MessageClassification(Base):
    """Thread membership and category of one message (one row per message)."""

    __tablename__ = "message_classification"
    __table_args__ = (Index("idx_classification_conversation", "conversation_id"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("unified_messages.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )
    batch_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    conversation_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    category: Mapped[str] = mapped_column(Text, nullable=False)
    doc_value_reason: Mapped[str] = mapped_column(Text, nullable=False)
    rag_search_criteria: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    model_used: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    # Relationships
    message: Mapped["UnifiedMessage"] = relationship(
        "UnifiedMessage", back_populates="classification"
    )


class ConversationRagContext(Base):
    """Retrieved reference docs for one thread."""

    __tablename__ = "conversation_rag_context"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    batch_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    summary: Mapped[str | None] = mapped_column(String(200), nullable=True)
    retrieved_docs: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    total_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    proposals_rejected: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)


class DocProposal(Base):
    """Accepted documentation change proposal awaiting admin review."""

    __tablename__ = "doc_proposals"
    __table_args__ = (
        Index("idx_proposal_conversation", "conversation_id"),
        Index("idx_proposal_page_status", "page", "status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    conversation_id: Mapped[str] = mapped_column(Text, nullable=False)
    batch_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    page: Mapped[str] = mapped_column(Text, nullable=False)
    update_type: Mapped[str] = mapped_column(String(16), nullable=False)
    section: Mapped[str | None] = mapped_column(Text, nullable=True)
    suggested_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_suggested_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_messages: Mapped[list[int] | None] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    model_used: Mapped[str | None] = mapped_column(Text, nullable=True)
    warnings: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    enrichment: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    # Relationships
    review_logs: Mapped[list["ProposalReviewLog"]] = relationship(
        "ProposalReviewLog", back_populates="proposal"
    )


class ProposalReviewLog(Base):
    """Audit entry for one ruleset review (accepted or rejected proposal)."""

    __tablename__ = "proposal_review_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    proposal_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("doc_proposals.id", ondelete="CASCADE"), nullable=True
    )
    conversation_id: Mapped[str] = mapped_column(Text, nullable=False)
    page: Mapped[str] = mapped_column(Text, nullable=False)
    ruleset_version: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    original_content: Mapped[str | None] = mapped_column(Text, nullable=True)
    modifications_applied: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    rejected: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    rejection_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    rejection_rule_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    quality_flags: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)

    # Relationships
    proposal: Mapped["DocProposal | None"] = relationship(
        "DocProposal", back_populates="review_logs"
    )


class TenantRuleset(Base):
    """Tenant-authored ruleset text."""

    __tablename__ = "tenant_rulesets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)


class PipelineRunLog(Base):
    """One orchestrator execution with per-step summaries."""

    __tablename__ = "pipeline_run_logs"
    __table_args__ = (Index("idx_run_log_instance_created", "instance_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    instance_id: Mapped[str] = mapped_column(Text, nullable=False)
    batch_id: Mapped[str] = mapped_column(Text, nullable=False)
    pipeline_id: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    input_messages: Mapped[int] = mapped_column(Integer, nullable=False)
    steps: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False)
    output_threads: Mapped[int | None] = mapped_column(Integer, nullable=True)
    output_proposals: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    llm_calls: Mapped[int | None] = mapped_column(Integer, nullable=True)
    llm_tokens_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utc_now, nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
