"""SQL implementations of repository interfaces."""

import logging
from collections.abc import Sequence
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.docpipe.db.models import (
    ConversationRagContext,
    DocProposal,
    MessageClassification,
    PipelineRunLog,
    ProposalReviewLog,
    UnifiedMessage,
)
from backend.docpipe.db.models import ProcessingWatermark as ProcessingWatermarkDB
from backend.docpipe.db.models import TenantRuleset as TenantRulesetDB
from backend.docpipe.db.repositories import (
    PersistenceError,
    PipelineRunRecord,
    ReviewedProposal,
    StoredProposal,
    ThreadResult,
)
from backend.docpipe.models.common import utc_now
from backend.docpipe.models.messages import Message, ProcessingStatus, ProcessingWatermark
from backend.docpipe.models.ruleset import TenantRuleset

logger = logging.getLogger(__name__)


def _to_message(row: UnifiedMessage) -> Message:
    return Message(
        id=row.id,
        stream_id=row.stream_id,
        message_id=row.message_id,
        timestamp=row.timestamp,
        author=row.author,
        content=row.content,
        channel=row.channel,
        processing_status=ProcessingStatus(row.processing_status),
    )


def _to_watermark(row: ProcessingWatermarkDB) -> ProcessingWatermark:
    return ProcessingWatermark(
        stream_id=row.stream_id,
        watermark_time=row.watermark_time,
        last_processed_batch_at=row.last_processed_batch,
    )


class SqlMessageRepository:
    """SQL implementation of MessageRepository."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def list_streams_with_pending(self, exclude: Sequence[str] = ()) -> list[str]:
        """Distinct stream ids having at least one PENDING message."""
        stmt = (
            select(UnifiedMessage.stream_id)
            .where(UnifiedMessage.processing_status == ProcessingStatus.PENDING.value)
            .distinct()
            .order_by(UnifiedMessage.stream_id)
        )
        if exclude:
            stmt = stmt.where(UnifiedMessage.stream_id.not_in(list(exclude)))

        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_earliest_message_time(self, stream_id: str) -> datetime | None:
        """Timestamp of the stream's earliest message (any status)."""
        stmt = select(func.min(UnifiedMessage.timestamp)).where(
            UnifiedMessage.stream_id == stream_id
        )
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def find_earliest_pending(self, stream_id: str, since: datetime) -> datetime | None:
        """Timestamp of the earliest PENDING message at or after ``since``."""
        stmt = select(func.min(UnifiedMessage.timestamp)).where(
            UnifiedMessage.stream_id == stream_id,
            UnifiedMessage.processing_status == ProcessingStatus.PENDING.value,
            UnifiedMessage.timestamp >= since,
        )
        async with self._session_factory() as session:
            return (await session.execute(stmt)).scalar_one_or_none()

    async def count_pending_in_window(
        self, stream_id: str, start: datetime, end: datetime
    ) -> int:
        """Count PENDING messages with start <= timestamp < end."""
        stmt = select(func.count(UnifiedMessage.id)).where(
            UnifiedMessage.stream_id == stream_id,
            UnifiedMessage.processing_status == ProcessingStatus.PENDING.value,
            UnifiedMessage.timestamp >= start,
            UnifiedMessage.timestamp < end,
        )
        async with self._session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def fetch_pending_in_window(
        self, stream_id: str, start: datetime, end: datetime, limit: int
    ) -> list[Message]:
        """PENDING messages in [start, end), oldest first, capped at ``limit``."""
        stmt = (
            select(UnifiedMessage)
            .where(
                UnifiedMessage.stream_id == stream_id,
                UnifiedMessage.processing_status == ProcessingStatus.PENDING.value,
                UnifiedMessage.timestamp >= start,
                UnifiedMessage.timestamp < end,
            )
            .order_by(UnifiedMessage.timestamp, UnifiedMessage.id)
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_message(row) for row in rows]

    async def fetch_context_messages(
        self, stream_id: str, start: datetime, end: datetime, limit: int
    ) -> list[Message]:
        """Most recent ``limit`` messages (any status) in [start, end), oldest first."""
        stmt = (
            select(UnifiedMessage)
            .where(
                UnifiedMessage.stream_id == stream_id,
                UnifiedMessage.timestamp >= start,
                UnifiedMessage.timestamp < end,
            )
            .order_by(UnifiedMessage.timestamp.desc(), UnifiedMessage.id.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [_to_message(row) for row in reversed(rows)]

    async def mark_completed(self, message_ids: Sequence[int]) -> int:
        """Set messages to COMPLETED."""
        if not message_ids:
            return 0
        stmt = (
            update(UnifiedMessage)
            .where(UnifiedMessage.id.in_(list(message_ids)))
            .values(processing_status=ProcessingStatus.COMPLETED.value)
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            return result.rowcount or 0


class SqlWatermarkRepository:
    """SQL implementation of WatermarkRepository."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, stream_id: str) -> ProcessingWatermark | None:
        """Get a stream's watermark."""
        async with self._session_factory() as session:
            row = await session.get(ProcessingWatermarkDB, stream_id)
            return _to_watermark(row) if row else None

    async def create(self, stream_id: str, watermark_time: datetime) -> ProcessingWatermark:
        """Create a watermark (returns the existing one if present)."""
        async with self._session_factory() as session, session.begin():
            row = await session.get(ProcessingWatermarkDB, stream_id)
            if row is None:
                row = ProcessingWatermarkDB(stream_id=stream_id, watermark_time=watermark_time)
                session.add(row)
            return _to_watermark(row)

    async def advance(
        self, stream_id: str, watermark_time: datetime, processed_at: datetime | None = None
    ) -> ProcessingWatermark:
        """Move the watermark forward; never moves it backwards."""
        async with self._session_factory() as session, session.begin():
            row = await session.get(ProcessingWatermarkDB, stream_id)
            if row is None:
                row = ProcessingWatermarkDB(stream_id=stream_id, watermark_time=watermark_time)
                session.add(row)
            elif watermark_time > row.watermark_time:
                row.watermark_time = watermark_time
            row.last_processed_batch = processed_at or utc_now()
            return _to_watermark(row)


class SqlResultRepository:
    """SQL implementation of ResultRepository."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def store_thread(self, result: ThreadResult) -> list[int]:
        """Persist one thread's results in a single transaction."""
        try:
            async with self._session_factory() as session, session.begin():
                await self._upsert_classifications(session, result)
                await self._upsert_rag_context(session, result)

                proposal_ids: list[int] = []
                for reviewed in result.accepted:
                    proposal = self._build_proposal(result, reviewed)
                    session.add(proposal)
                    await session.flush()
                    proposal_ids.append(proposal.id)
                    self._add_review_log(session, result, reviewed, proposal.id)

                for reviewed in result.rejected:
                    self._add_review_log(session, result, reviewed, None)

                return proposal_ids
        except SQLAlchemyError as e:
            raise PersistenceError(
                f"Failed to store results for thread {result.thread.id}"
            ) from e

    async def _upsert_classifications(self, session: AsyncSession, result: ThreadResult) -> None:
        for record in result.classifications:
            existing = (
                await session.execute(
                    select(MessageClassification).where(
                        MessageClassification.message_id == record.message_id
                    )
                )
            ).scalar_one_or_none()

            if existing is None:
                existing = MessageClassification(message_id=record.message_id)
                session.add(existing)

            existing.batch_id = result.batch_id
            existing.conversation_id = result.thread.id
            existing.category = record.category
            existing.doc_value_reason = record.doc_value_reason
            existing.rag_search_criteria = record.rag_search_criteria
            existing.model_used = record.model_used

    async def _upsert_rag_context(self, session: AsyncSession, result: ThreadResult) -> None:
        record = result.rag_context
        existing = (
            await session.execute(
                select(ConversationRagContext).where(
                    ConversationRagContext.conversation_id == result.thread.id
                )
            )
        ).scalar_one_or_none()

        if existing is None:
            existing = ConversationRagContext(conversation_id=result.thread.id)
            session.add(existing)

        existing.batch_id = result.batch_id
        existing.summary = record.summary
        existing.retrieved_docs = record.retrieved_docs
        existing.total_tokens = record.total_tokens
        existing.proposals_rejected = record.rejected
        existing.rejection_reason = record.rejection_reason

    def _build_proposal(self, result: ThreadResult, reviewed: ReviewedProposal) -> DocProposal:
        proposal = reviewed.proposal
        warnings = reviewed.warnings
        return DocProposal(
            conversation_id=result.thread.id,
            batch_id=result.batch_id,
            page=proposal.page,
            update_type=proposal.update_type.value,
            section=proposal.section,
            suggested_text=proposal.suggested_text,
            raw_suggested_text=proposal.raw_suggested_text,
            reasoning=proposal.reasoning or None,
            source_messages=proposal.source_message_ids or None,
            model_used=reviewed.model_used,
            warnings=warnings or None,
            enrichment=(
                reviewed.enrichment.model_dump(mode="json") if reviewed.enrichment else None
            ),
        )

    def _add_review_log(
        self,
        session: AsyncSession,
        result: ThreadResult,
        reviewed: ReviewedProposal,
        proposal_id: int | None,
    ) -> None:
        if reviewed.review is None or result.ruleset_version is None:
            return
        review = reviewed.review
        session.add(
            ProposalReviewLog(
                proposal_id=proposal_id,
                conversation_id=result.thread.id,
                page=reviewed.proposal.page,
                ruleset_version=result.ruleset_version,
                original_content=review.original_content,
                modifications_applied=review.modifications_applied or None,
                rejected=review.rejected,
                rejection_reason=review.rejection_reason,
                rejection_rule_text=review.rejection_rule_text,
                quality_flags=review.quality_flags or None,
            )
        )

    async def delete_classifications(self, message_ids: Sequence[int]) -> int:
        """Remove classifications so messages are reclassified next run."""
        if not message_ids:
            return 0
        stmt = delete(MessageClassification).where(
            MessageClassification.message_id.in_(list(message_ids))
        )
        async with self._session_factory() as session, session.begin():
            result = await session.execute(stmt)
            return result.rowcount or 0

    async def count_pending_proposals(self, page: str | None = None) -> int:
        """Count pending proposals, optionally for one page."""
        stmt = select(func.count(DocProposal.id)).where(DocProposal.status == "pending")
        if page is not None:
            stmt = stmt.where(DocProposal.page == page)
        async with self._session_factory() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def list_proposals(self, conversation_id: str | None = None) -> list[StoredProposal]:
        """List stored proposals, optionally for one thread."""
        stmt = select(DocProposal).order_by(DocProposal.id)
        if conversation_id is not None:
            stmt = stmt.where(DocProposal.conversation_id == conversation_id)
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [
                StoredProposal(
                    id=row.id,
                    conversation_id=row.conversation_id,
                    batch_id=row.batch_id,
                    page=row.page,
                    update_type=row.update_type,
                    status=row.status,
                    suggested_text=row.suggested_text,
                    warnings=list(row.warnings or []),
                    created_at=row.created_at,
                )
                for row in rows
            ]


class SqlRulesetRepository:
    """SQL implementation of RulesetRepository."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get_ruleset(self, tenant_id: str) -> TenantRuleset | None:
        """Get a tenant's ruleset text and version."""
        stmt = select(TenantRulesetDB).where(TenantRulesetDB.tenant_id == tenant_id)
        async with self._session_factory() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                return None
            return TenantRuleset(
                tenant_id=row.tenant_id, content=row.content, updated_at=row.updated_at
            )

    async def save_ruleset(self, tenant_id: str, content: str) -> TenantRuleset:
        """Create or replace a tenant's ruleset, bumping its version."""
        now = utc_now()
        stmt = select(TenantRulesetDB).where(TenantRulesetDB.tenant_id == tenant_id)
        async with self._session_factory() as session, session.begin():
            row = (await session.execute(stmt)).scalar_one_or_none()
            if row is None:
                row = TenantRulesetDB(tenant_id=tenant_id, content=content, updated_at=now)
                session.add(row)
            else:
                row.content = content
                row.updated_at = now
            return TenantRuleset(tenant_id=tenant_id, content=content, updated_at=now)


class SqlRunLogRepository:
    """SQL implementation of RunLogRepository."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def start_run(
        self, instance_id: str, batch_id: str, pipeline_id: str, input_messages: int
    ) -> int:
        """Insert a running entry and return its id."""
        async with self._session_factory() as session, session.begin():
            row = PipelineRunLog(
                instance_id=instance_id,
                batch_id=batch_id,
                pipeline_id=pipeline_id,
                status="running",
                input_messages=input_messages,
                steps=[],
            )
            session.add(row)
            await session.flush()
            return row.id

    async def finish_run(
        self,
        run_id: int,
        *,
        status: str,
        steps: list[dict[str, Any]],
        output_threads: int,
        output_proposals: int,
        total_duration_ms: int,
        llm_calls: int,
        llm_tokens_used: int,
        error_message: str | None = None,
    ) -> None:
        """Complete a run entry."""
        async with self._session_factory() as session, session.begin():
            row = await session.get(PipelineRunLog, run_id)
            if row is None:
                logger.warning(f"Pipeline run log {run_id} not found")
                return
            row.status = status
            row.steps = steps
            row.output_threads = output_threads
            row.output_proposals = output_proposals
            row.total_duration_ms = total_duration_ms
            row.llm_calls = llm_calls
            row.llm_tokens_used = llm_tokens_used
            row.error_message = error_message
            row.completed_at = utc_now()

    async def list_runs(self, instance_id: str, limit: int = 20) -> list[PipelineRunRecord]:
        """Most recent runs first."""
        stmt = (
            select(PipelineRunLog)
            .where(PipelineRunLog.instance_id == instance_id)
            .order_by(PipelineRunLog.created_at.desc(), PipelineRunLog.id.desc())
            .limit(limit)
        )
        async with self._session_factory() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [
                PipelineRunRecord(
                    id=row.id,
                    instance_id=row.instance_id,
                    batch_id=row.batch_id,
                    pipeline_id=row.pipeline_id,
                    status=row.status,
                    input_messages=row.input_messages,
                    steps=list(row.steps or []),
                    output_threads=row.output_threads,
                    output_proposals=row.output_proposals,
                    total_duration_ms=row.total_duration_ms,
                    llm_calls=row.llm_calls,
                    llm_tokens_used=row.llm_tokens_used,
                    error_message=row.error_message,
                    created_at=row.created_at,
                    completed_at=row.completed_at,
                )
                for row in rows
            ]
