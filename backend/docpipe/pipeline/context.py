"""Pipeline context - accumulator passed between steps."""

import copy
from dataclasses import dataclass, field

from backend.docpipe.models.config import DomainConfig
from backend.docpipe.models.messages import Message
from backend.docpipe.models.pipeline import (
    ConversationThread,
    PipelineMetrics,
    Proposal,
    RagDocument,
)
from backend.docpipe.models.ruleset import ParsedRuleset


@dataclass
class PipelineContext:
    """State for one pipeline execution.

    Inputs are set by the caller. Each output field is written only by the
    step that owns it: filtered_messages (filter), threads (classify),
    rag_results (enrich), proposals (generate, then validate/condense).
    """

    batch_id: str
    stream_id: str
    messages: list[Message]
    domain_config: DomainConfig
    context_messages: list[Message] = field(default_factory=list)
    ruleset: ParsedRuleset | None = None

    # Step outputs
    filtered_messages: list[Message] = field(default_factory=list)
    threads: list[ConversationThread] = field(default_factory=list)
    rag_results: dict[str, list[RagDocument]] = field(default_factory=dict)
    proposals: dict[str, list[Proposal]] = field(default_factory=dict)

    metrics: PipelineMetrics = field(default_factory=PipelineMetrics)
    warnings: list[str] = field(default_factory=list)

    def __post_init__(self) -> None:
        # Until a filter step runs, every batch message is classifiable
        if not self.filtered_messages:
            self.filtered_messages = list(self.messages)

    def snapshot(self) -> "PipelineContext":
        """Deep copy used to restore pre-step state after a failed step."""
        return copy.deepcopy(self)

    def thread_messages(self, thread: ConversationThread) -> list[Message]:
        """Batch messages belonging to a thread."""
        by_id = {m.id: m for m in self.messages}
        return [by_id[i] for i in thread.message_ids if i in by_id]

    def record_llm_call(self, tokens_used: int) -> None:
        self.metrics.llm_calls += 1
        self.metrics.llm_tokens_used += tokens_used
