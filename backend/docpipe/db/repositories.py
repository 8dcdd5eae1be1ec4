"""Repository protocol interfaces for data access."""

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from backend.docpipe.models.enrichment import Enrichment
from backend.docpipe.models.messages import Message, ProcessingWatermark
from backend.docpipe.models.pipeline import ConversationThread, Proposal
from backend.docpipe.models.ruleset import ReviewResult, TenantRuleset


class PersistenceError(Exception):
    """A write to the result store failed."""

    pass


@dataclass
class ClassificationRecord:
    """Classification row for one thread member."""

    message_id: int
    category: str
    doc_value_reason: str
    rag_search_criteria: dict[str, Any] | None
    model_used: str | None = None


@dataclass
class RagContextRecord:
    """RAG snapshot for one thread."""

    summary: str
    retrieved_docs: list[dict[str, Any]]
    total_tokens: int
    rejected: bool | None = None
    rejection_reason: str | None = None


@dataclass
class ReviewedProposal:
    """Proposal with its enrichment and ruleset review."""

    proposal: Proposal
    enrichment: Enrichment | None
    review: ReviewResult | None
    model_used: str | None = None

    @property
    def warnings(self) -> list[str]:
        flags = self.review.quality_flags if self.review else []
        return [*self.proposal.warnings, *flags]


@dataclass
class ThreadResult:
    """Everything written for one thread, as a single atomic unit."""

    batch_id: str
    thread: ConversationThread
    classifications: list[ClassificationRecord]
    rag_context: RagContextRecord
    accepted: list[ReviewedProposal] = field(default_factory=list)
    rejected: list[ReviewedProposal] = field(default_factory=list)
    ruleset_version: datetime | None = None


@dataclass
class StoredProposal:
    """Persisted proposal summary."""

    id: int
    conversation_id: str
    batch_id: str | None
    page: str
    update_type: str
    status: str
    suggested_text: str | None
    warnings: list[str]
    created_at: datetime


@dataclass
class PipelineRunRecord:
    """Pipeline run log entry."""

    id: int
    instance_id: str
    batch_id: str
    pipeline_id: str
    status: str
    input_messages: int
    steps: list[dict[str, Any]]
    output_threads: int | None
    output_proposals: int | None
    total_duration_ms: int | None
    llm_calls: int | None
    llm_tokens_used: int | None
    error_message: str | None
    created_at: datetime
    completed_at: datetime | None


class MessageRepository(Protocol):
    """Read access to messages and the PENDING to COMPLETED transition."""

    async def list_streams_with_pending(self, exclude: Sequence[str] = ()) -> list[str]:
        """Distinct stream ids having at least one PENDING message."""
        ...

    async def get_earliest_message_time(self, stream_id: str) -> datetime | None:
        """Timestamp of the stream's earliest message (any status)."""
        ...

    async def find_earliest_pending(self, stream_id: str, since: datetime) -> datetime | None:
        """Timestamp of the earliest PENDING message at or after ``since``."""
        ...

    async def count_pending_in_window(
        self, stream_id: str, start: datetime, end: datetime
    ) -> int:
        """Count PENDING messages with start <= timestamp < end."""
        ...

    async def fetch_pending_in_window(
        self, stream_id: str, start: datetime, end: datetime, limit: int
    ) -> list[Message]:
        """PENDING messages in [start, end), oldest first, capped at ``limit``."""
        ...

    async def fetch_context_messages(
        self, stream_id: str, start: datetime, end: datetime, limit: int
    ) -> list[Message]:
        """Most recent ``limit`` messages (any status) in [start, end), oldest first."""
        ...

    async def mark_completed(self, message_ids: Sequence[int]) -> int:
        """Set messages to COMPLETED.

        Returns:
            Number of rows updated
        """
        ...


class WatermarkRepository(Protocol):
    """Per-stream watermark storage."""

    async def get(self, stream_id: str) -> ProcessingWatermark | None:
        """Get a stream's watermark."""
        ...

    async def create(self, stream_id: str, watermark_time: datetime) -> ProcessingWatermark:
        """Create a watermark (no-op returning the existing one if present)."""
        ...

    async def advance(
        self, stream_id: str, watermark_time: datetime, processed_at: datetime | None = None
    ) -> ProcessingWatermark:
        """Move the watermark forward; never moves it backwards."""
        ...


class ResultRepository(Protocol):
    """Storage for classifications, RAG contexts, proposals and review logs."""

    async def store_thread(self, result: ThreadResult) -> list[int]:
        """Persist one thread's results in a single transaction.

        Returns:
            Ids of created proposals

        Raises:
            PersistenceError: If any write fails (nothing is kept)
        """
        ...

    async def delete_classifications(self, message_ids: Sequence[int]) -> int:
        """Remove classifications so messages are reclassified next run."""
        ...

    async def count_pending_proposals(self, page: str | None = None) -> int:
        """Count pending proposals, optionally for one page."""
        ...

    async def list_proposals(self, conversation_id: str | None = None) -> list[StoredProposal]:
        """List stored proposals, optionally for one thread."""
        ...


class RulesetRepository(Protocol):
    """Tenant ruleset storage."""

    async def get_ruleset(self, tenant_id: str) -> TenantRuleset | None:
        """Get a tenant's ruleset text and version."""
        ...

    async def save_ruleset(self, tenant_id: str, content: str) -> TenantRuleset:
        """Create or replace a tenant's ruleset, bumping its version."""
        ...


class RunLogRepository(Protocol):
    """Pipeline run log storage."""

    async def start_run(
        self, instance_id: str, batch_id: str, pipeline_id: str, input_messages: int
    ) -> int:
        """Insert a running entry and return its id."""
        ...

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
        ...

    async def list_runs(self, instance_id: str, limit: int = 20) -> list[PipelineRunRecord]:
        """Most recent runs first."""
        ...
