"""Persistence of pipeline results with enrichment and ruleset review."""

import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field

from backend.docpipe.db.repositories import (
    ClassificationRecord,
    RagContextRecord,
    ResultRepository,
    ReviewedProposal,
    ThreadResult,
)
from backend.docpipe.enrichment.engine import EnrichmentEngine
from backend.docpipe.models.messages import Message
from backend.docpipe.models.pipeline import (
    ConversationThread,
    PipelineResult,
    Proposal,
    RagDocument,
)
from backend.docpipe.pipeline.postprocess import post_process_proposal
from backend.docpipe.review.cache import RulesetSnapshot
from backend.docpipe.review.engine import RulesetReviewEngine
from backend.docpipe.review.modifier import ReviewModifier
from backend.docpipe.utils.logging import StructuredPipelineLogger
from backend.docpipe.utils.metrics import PrometheusBatchMetrics

logger = logging.getLogger(__name__)

SUMMARY_MAX_CHARS = 200
PREVIEW_MAX_CHARS = 1000
CHARS_PER_TOKEN = 4
NO_VALUE_REASON = "Classified as no documentation value"


@dataclass
class StoreOutcome:
    """Result of storing one pipeline run."""

    processed_message_ids: set[int] = field(default_factory=set)
    failed_thread_ids: list[str] = field(default_factory=list)
    proposals_created: int = 0
    proposals_rejected: int = 0


def truncate_summary(summary: str) -> str:
    if len(summary) > SUMMARY_MAX_CHARS:
        return summary[: SUMMARY_MAX_CHARS - 3] + "..."
    return summary


def estimate_tokens(docs: Sequence[RagDocument]) -> int:
    """Rough token estimate: 4 characters per token."""
    return math.ceil(sum(len(d.content) for d in docs) / CHARS_PER_TOKEN)


def rag_context_record(thread: ConversationThread, docs: Sequence[RagDocument]) -> RagContextRecord:
    """RAG snapshot for a thread; no-value threads are recorded as rejected."""
    if not thread.has_doc_value:
        return RagContextRecord(
            summary=truncate_summary(thread.summary),
            retrieved_docs=[],
            total_tokens=0,
            rejected=True,
            rejection_reason=thread.doc_value_reason or NO_VALUE_REASON,
        )

    return RagContextRecord(
        summary=truncate_summary(thread.summary),
        retrieved_docs=[
            {
                "doc_id": d.id,
                "title": d.title,
                "file_path": d.file_path,
                "similarity": d.similarity,
                "content_preview": (
                    d.content[:PREVIEW_MAX_CHARS] + "..."
                    if len(d.content) > PREVIEW_MAX_CHARS
                    else d.content
                ),
            }
            for d in docs
        ],
        total_tokens=estimate_tokens(docs),
    )


class PipelineResultWriter:
    """Stores classifications, RAG contexts, reviewed proposals and review logs.

    Each thread is written as one atomic unit. A thread whose write fails is
    reported so its messages stay PENDING.
    """

    def __init__(
        self,
        results: ResultRepository,
        *,
        enrichment: EnrichmentEngine | None = None,
        review_engine: RulesetReviewEngine | None = None,
        modifier: ReviewModifier | None = None,
        classification_model: str | None = None,
        proposal_model: str | None = None,
        structured_logger: StructuredPipelineLogger | None = None,
        metrics: PrometheusBatchMetrics | None = None,
    ) -> None:
        self._results = results
        self._enrichment = enrichment or EnrichmentEngine()
        self._review = review_engine or RulesetReviewEngine()
        self._modifier = modifier
        self._classification_model = classification_model
        self._proposal_model = proposal_model
        self._log = structured_logger or StructuredPipelineLogger()
        self._metrics = metrics or PrometheusBatchMetrics()

    async def store(
        self,
        batch_id: str,
        result: PipelineResult,
        messages: Sequence[Message],
        ruleset: RulesetSnapshot,
    ) -> StoreOutcome:
        """Store every thread of a pipeline result.

        Args:
            batch_id: Batch identifier
            result: Pipeline output
            messages: Batch messages the pipeline ran on
            ruleset: Tenant ruleset and its version

        Returns:
            StoreOutcome with the ids of messages whose thread was stored
        """
        outcome = StoreOutcome()
        by_id = {m.id: m for m in messages}

        for thread in result.threads:
            source = [by_id[i] for i in thread.message_ids if i in by_id]
            try:
                thread_result = await self.build_thread_result(
                    batch_id,
                    thread,
                    result.rag_results.get(thread.id, []),
                    result.proposals.get(thread.id, []),
                    source,
                    ruleset,
                )
                await self._results.store_thread(thread_result)
            except Exception:
                logger.exception(f"Failed to store results for thread {thread.id}")
                outcome.failed_thread_ids.append(thread.id)
                continue

            outcome.processed_message_ids.update(m.id for m in source)
            outcome.proposals_created += len(thread_result.accepted)
            outcome.proposals_rejected += len(thread_result.rejected)

        self._metrics.inc_proposals("accepted", outcome.proposals_created)
        self._metrics.inc_proposals("rejected", outcome.proposals_rejected)
        return outcome

    async def build_thread_result(
        self,
        batch_id: str,
        thread: ConversationThread,
        rag_docs: Sequence[RagDocument],
        proposals: Sequence[Proposal],
        source_messages: Sequence[Message],
        ruleset: RulesetSnapshot,
    ) -> ThreadResult:
        """Enrich and review a thread's proposals and assemble its write unit."""
        thread_result = ThreadResult(
            batch_id=batch_id,
            thread=thread,
            classifications=[
                ClassificationRecord(
                    message_id=m.id,
                    category=thread.category,
                    doc_value_reason=thread.doc_value_reason,
                    rag_search_criteria=(
                        thread.rag_search_criteria.model_dump()
                        if thread.has_doc_value and thread.rag_search_criteria
                        else None
                    ),
                    model_used=self._classification_model,
                )
                for m in source_messages
            ],
            rag_context=rag_context_record(thread, rag_docs),
            ruleset_version=ruleset.version,
        )

        if not thread.has_doc_value:
            return thread_result

        for proposal in proposals:
            reviewed = await self.review_proposal(
                thread, proposal, rag_docs, source_messages, ruleset
            )
            if reviewed.review is not None and reviewed.review.rejected:
                thread_result.rejected.append(reviewed)
            else:
                thread_result.accepted.append(reviewed)

        if thread_result.rejected:
            logger.info(
                f"Ruleset rejected {len(thread_result.rejected)}/{len(proposals)} "
                f"proposals for thread {thread.id}"
            )
        return thread_result

    async def review_proposal(
        self,
        thread: ConversationThread,
        proposal: Proposal,
        rag_docs: Sequence[RagDocument],
        source_messages: Sequence[Message],
        ruleset: RulesetSnapshot,
    ) -> ReviewedProposal:
        pending = await self._results.count_pending_proposals(proposal.page)
        enrichment = self._enrichment.enrich(proposal, rag_docs, source_messages, pending)

        if ruleset.version is None:
            return ReviewedProposal(
                proposal=proposal, enrichment=enrichment, review=None, model_used=self._proposal_model
            )

        review = self._review.review(ruleset.ruleset, proposal, enrichment)
        self._log.log_review(
            thread.id,
            proposal.page,
            review.rejected,
            reason=review.rejection_reason,
            quality_flags=review.quality_flags,
        )

        if not review.rejected and self._modifier is not None:
            modified, applied = await self._modifier.apply(ruleset.ruleset, proposal, enrichment)
            if applied:
                processed = post_process_proposal(modified.suggested_text, modified.page)
                proposal = modified.model_copy(
                    update={
                        "suggested_text": processed.text or modified.suggested_text,
                        "warnings": [*modified.warnings, *processed.warnings],
                    }
                )
                review.modifications_applied = applied

        return ReviewedProposal(
            proposal=proposal, enrichment=enrichment, review=review, model_used=self._proposal_model
        )
