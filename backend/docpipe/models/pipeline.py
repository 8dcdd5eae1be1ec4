"""Pipeline domain models - threads, retrieved docs, proposals, run results."""

from typing import Any

from pydantic import BaseModel, Field

from backend.docpipe.models.common import NO_DOC_VALUE, StepStatus, StepType, UpdateType


class RagSearchCriteria(BaseModel):
    """Search hints produced by the classifier for one thread."""

    keywords: list[str] = Field(default_factory=list)
    semantic_query: str = ""


class ConversationThread(BaseModel):
    """Group of related messages sharing one category."""

    id: str
    category: str
    message_indices: list[int] = Field(default_factory=list)
    message_ids: list[int] = Field(default_factory=list)
    summary: str = ""
    doc_value_reason: str = ""
    rag_search_criteria: RagSearchCriteria | None = None

    @property
    def has_doc_value(self) -> bool:
        return self.category != NO_DOC_VALUE


class RagDocument(BaseModel):
    """Reference document returned by similarity search."""

    id: str
    file_path: str
    title: str
    content: str
    similarity: float


class Proposal(BaseModel):
    """Candidate documentation change generated for one thread."""

    update_type: UpdateType
    page: str
    section: str | None = None
    suggested_text: str | None = None
    raw_suggested_text: str | None = None
    reasoning: str = ""
    source_message_indices: list[int] = Field(default_factory=list)
    source_message_ids: list[int] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class PipelineError(BaseModel):
    """Structured record of a step that failed after all retries."""

    step_id: str
    message: str


class StepLog(BaseModel):
    """Summary of one step execution."""

    step_id: str
    step_type: StepType
    status: StepStatus
    duration_ms: int = 0
    input_count: int = 0
    output_count: int = 0
    attempts: int = 0
    error: str | None = None


class PipelineMetrics(BaseModel):
    """Metrics collected over one pipeline execution."""

    step_durations: dict[str, int] = Field(default_factory=dict)
    llm_calls: int = 0
    llm_tokens_used: int = 0
    total_duration_ms: int = 0


class PipelineResult(BaseModel):
    """Outcome of one orchestrator run."""

    success: bool
    threads: list[ConversationThread] = Field(default_factory=list)
    rag_results: dict[str, list[RagDocument]] = Field(default_factory=dict)
    proposals: dict[str, list[Proposal]] = Field(default_factory=dict)
    errors: list[PipelineError] = Field(default_factory=list)
    metrics: PipelineMetrics = Field(default_factory=PipelineMetrics)
    step_logs: list[StepLog] = Field(default_factory=list)

    @property
    def proposal_count(self) -> int:
        return sum(len(p) for p in self.proposals.values())

    def summary(self) -> dict[str, Any]:
        """Compact dict for logging."""
        return {
            "success": self.success,
            "threads": len(self.threads),
            "proposals": self.proposal_count,
            "errors": len(self.errors),
            "llm_calls": self.metrics.llm_calls,
            "total_duration_ms": self.metrics.total_duration_ms,
        }
