"""In-memory implementations of repository interfaces."""

import copy
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from backend.docpipe.db.repositories import (
    ClassificationRecord,
    PipelineRunRecord,
    RagContextRecord,
    StoredProposal,
    ThreadResult,
)
from backend.docpipe.models.common import utc_now
from backend.docpipe.models.messages import Message, ProcessingStatus, ProcessingWatermark
from backend.docpipe.models.ruleset import ReviewResult, TenantRuleset


class InMemoryMessageRepository:
    """In-memory implementation of MessageRepository."""

    def __init__(self, messages: Iterable[Message] = ()) -> None:
        self._messages: dict[int, Message] = {}
        for message in messages:
            self.add(message)

    def add(self, message: Message) -> None:
        """Insert a message (ingestion stand-in)."""
        self._messages[message.id] = message

    def get(self, message_id: int) -> Message | None:
        """Get a message by id."""
        return self._messages.get(message_id)

    def all(self) -> list[Message]:
        """All messages ordered by timestamp."""
        return sorted(self._messages.values(), key=lambda m: (m.timestamp, m.id))

    def _pending(self, stream_id: str) -> list[Message]:
        return [
            m
            for m in self.all()
            if m.stream_id == stream_id and m.processing_status == ProcessingStatus.PENDING
        ]

    async def list_streams_with_pending(self, exclude: Sequence[str] = ()) -> list[str]:
        """Distinct stream ids having at least one PENDING message."""
        return sorted(
            {
                m.stream_id
                for m in self._messages.values()
                if m.processing_status == ProcessingStatus.PENDING and m.stream_id not in exclude
            }
        )

    async def get_earliest_message_time(self, stream_id: str) -> datetime | None:
        """Timestamp of the stream's earliest message (any status)."""
        times = [m.timestamp for m in self._messages.values() if m.stream_id == stream_id]
        return min(times) if times else None

    async def find_earliest_pending(self, stream_id: str, since: datetime) -> datetime | None:
        """Timestamp of the earliest PENDING message at or after ``since``."""
        times = [m.timestamp for m in self._pending(stream_id) if m.timestamp >= since]
        return min(times) if times else None

    async def count_pending_in_window(
        self, stream_id: str, start: datetime, end: datetime
    ) -> int:
        """Count PENDING messages with start <= timestamp < end."""
        return sum(1 for m in self._pending(stream_id) if start <= m.timestamp < end)

    async def fetch_pending_in_window(
        self, stream_id: str, start: datetime, end: datetime, limit: int
    ) -> list[Message]:
        """PENDING messages in [start, end), oldest first, capped at ``limit``."""
        window = [m for m in self._pending(stream_id) if start <= m.timestamp < end]
        return [m.model_copy() for m in window[:limit]]

    async def fetch_context_messages(
        self, stream_id: str, start: datetime, end: datetime, limit: int
    ) -> list[Message]:
        """Most recent ``limit`` messages (any status) in [start, end), oldest first."""
        window = [m for m in self.all() if m.stream_id == stream_id and start <= m.timestamp < end]
        return [m.model_copy() for m in window[-limit:]] if limit > 0 else []

    async def mark_completed(self, message_ids: Sequence[int]) -> int:
        """Set messages to COMPLETED."""
        updated = 0
        for message_id in message_ids:
            message = self._messages.get(message_id)
            if message is None:
                continue
            self._messages[message_id] = message.model_copy(
                update={"processing_status": ProcessingStatus.COMPLETED}
            )
            updated += 1
        return updated


class InMemoryWatermarkRepository:
    """In-memory implementation of WatermarkRepository."""

    def __init__(self) -> None:
        self._watermarks: dict[str, ProcessingWatermark] = {}
        self.history: list[tuple[str, datetime]] = []

    async def get(self, stream_id: str) -> ProcessingWatermark | None:
        """Get a stream's watermark."""
        return self._watermarks.get(stream_id)

    async def create(self, stream_id: str, watermark_time: datetime) -> ProcessingWatermark:
        """Create a watermark (returns the existing one if present)."""
        if stream_id not in self._watermarks:
            self._watermarks[stream_id] = ProcessingWatermark(
                stream_id=stream_id, watermark_time=watermark_time
            )
            self.history.append((stream_id, watermark_time))
        return self._watermarks[stream_id]

    async def advance(
        self, stream_id: str, watermark_time: datetime, processed_at: datetime | None = None
    ) -> ProcessingWatermark:
        """Move the watermark forward; never moves it backwards."""
        current = self._watermarks.get(stream_id)
        new_time = watermark_time
        if current is not None and current.watermark_time > watermark_time:
            new_time = current.watermark_time

        self._watermarks[stream_id] = ProcessingWatermark(
            stream_id=stream_id,
            watermark_time=new_time,
            last_processed_batch_at=processed_at or utc_now(),
        )
        self.history.append((stream_id, new_time))
        return self._watermarks[stream_id]


@dataclass
class _StoredClassification:
    record: ClassificationRecord
    batch_id: str
    conversation_id: str


@dataclass
class _StoredReviewLog:
    proposal_id: int | None
    conversation_id: str
    page: str
    ruleset_version: datetime
    review: ReviewResult


@dataclass
class _ResultState:
    classifications: dict[int, _StoredClassification] = field(default_factory=dict)
    rag_contexts: dict[str, RagContextRecord] = field(default_factory=dict)
    proposals: dict[int, StoredProposal] = field(default_factory=dict)
    review_logs: list[_StoredReviewLog] = field(default_factory=list)
    next_proposal_id: int = 1


class InMemoryResultRepository:
    """In-memory implementation of ResultRepository.

    Writes for one thread are staged on a copy of the state and swapped in
    only when the whole unit succeeds.
    """

    def __init__(self) -> None:
        self._state = _ResultState()

    @property
    def classifications(self) -> dict[int, _StoredClassification]:
        return self._state.classifications

    @property
    def rag_contexts(self) -> dict[str, RagContextRecord]:
        return self._state.rag_contexts

    @property
    def proposals(self) -> dict[int, StoredProposal]:
        return self._state.proposals

    @property
    def review_logs(self) -> list[_StoredReviewLog]:
        return self._state.review_logs

    async def store_thread(self, result: ThreadResult) -> list[int]:
        """Persist one thread's results atomically."""
        staged = copy.deepcopy(self._state)
        proposal_ids = self._apply(staged, result)
        self._state = staged
        return proposal_ids

    def _apply(self, state: _ResultState, result: ThreadResult) -> list[int]:
        thread_id = result.thread.id
        for record in result.classifications:
            state.classifications[record.message_id] = _StoredClassification(
                record=record, batch_id=result.batch_id, conversation_id=thread_id
            )
        state.rag_contexts[thread_id] = result.rag_context

        proposal_ids: list[int] = []
        for reviewed in result.accepted:
            proposal_id = state.next_proposal_id
            state.next_proposal_id += 1
            state.proposals[proposal_id] = StoredProposal(
                id=proposal_id,
                conversation_id=thread_id,
                batch_id=result.batch_id,
                page=reviewed.proposal.page,
                update_type=reviewed.proposal.update_type.value,
                status="pending",
                suggested_text=reviewed.proposal.suggested_text,
                warnings=reviewed.warnings,
                created_at=utc_now(),
            )
            proposal_ids.append(proposal_id)
            self._log_review(state, result, reviewed.proposal.page, reviewed.review, proposal_id)

        for reviewed in result.rejected:
            self._log_review(state, result, reviewed.proposal.page, reviewed.review, None)

        return proposal_ids

    def _log_review(
        self,
        state: _ResultState,
        result: ThreadResult,
        page: str,
        review: ReviewResult | None,
        proposal_id: int | None,
    ) -> None:
        if review is None or result.ruleset_version is None:
            return
        state.review_logs.append(
            _StoredReviewLog(
                proposal_id=proposal_id,
                conversation_id=result.thread.id,
                page=page,
                ruleset_version=result.ruleset_version,
                review=review,
            )
        )

    async def delete_classifications(self, message_ids: Sequence[int]) -> int:
        """Remove classifications so messages are reclassified next run."""
        removed = 0
        for message_id in message_ids:
            if self._state.classifications.pop(message_id, None) is not None:
                removed += 1
        return removed

    async def count_pending_proposals(self, page: str | None = None) -> int:
        """Count pending proposals, optionally for one page."""
        return sum(
            1
            for p in self._state.proposals.values()
            if p.status == "pending" and (page is None or p.page == page)
        )

    async def list_proposals(self, conversation_id: str | None = None) -> list[StoredProposal]:
        """List stored proposals, optionally for one thread."""
        return [
            p
            for p in self._state.proposals.values()
            if conversation_id is None or p.conversation_id == conversation_id
        ]


class InMemoryRulesetRepository:
    """In-memory implementation of RulesetRepository."""

    def __init__(self) -> None:
        self._rulesets: dict[str, TenantRuleset] = {}
        self.load_count = 0

    async def get_ruleset(self, tenant_id: str) -> TenantRuleset | None:
        """Get a tenant's ruleset text and version."""
        self.load_count += 1
        return self._rulesets.get(tenant_id)

    async def save_ruleset(
        self, tenant_id: str, content: str, updated_at: datetime | None = None
    ) -> TenantRuleset:
        """Create or replace a tenant's ruleset, bumping its version."""
        ruleset = TenantRuleset(
            tenant_id=tenant_id, content=content, updated_at=updated_at or utc_now()
        )
        self._rulesets[tenant_id] = ruleset
        return ruleset


class InMemoryRunLogRepository:
    """In-memory implementation of RunLogRepository."""

    def __init__(self) -> None:
        self._runs: dict[int, PipelineRunRecord] = {}

    async def start_run(
        self, instance_id: str, batch_id: str, pipeline_id: str, input_messages: int
    ) -> int:
        """Insert a running entry and return its id."""
        run_id = len(self._runs) + 1
        self._runs[run_id] = PipelineRunRecord(
            id=run_id,
            instance_id=instance_id,
            batch_id=batch_id,
            pipeline_id=pipeline_id,
            status="running",
            input_messages=input_messages,
            steps=[],
            output_threads=None,
            output_proposals=None,
            total_duration_ms=None,
            llm_calls=None,
            llm_tokens_used=None,
            error_message=None,
            created_at=utc_now(),
            completed_at=None,
        )
        return run_id

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
        record = self._runs.get(run_id)
        if record is None:
            return
        record.status = status
        record.steps = steps
        record.output_threads = output_threads
        record.output_proposals = output_proposals
        record.total_duration_ms = total_duration_ms
        record.llm_calls = llm_calls
        record.llm_tokens_used = llm_tokens_used
        record.error_message = error_message
        record.completed_at = utc_now()

    async def list_runs(self, instance_id: str, limit: int = 20) -> list[PipelineRunRecord]:
        """Most recent runs first."""
        runs = [r for r in self._runs.values() if r.instance_id == instance_id]
        runs.sort(key=lambda r: r.id, reverse=True)
        return runs[:limit]
