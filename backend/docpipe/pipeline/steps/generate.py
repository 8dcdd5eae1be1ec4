"""Proposal generation per enriched thread."""

import logging
import re

from pydantic import BaseModel, Field

from backend.docpipe.models.common import StepType, UpdateType
from backend.docpipe.models.pipeline import ConversationThread, Proposal, RagDocument
from backend.docpipe.pipeline.context import PipelineContext
from backend.docpipe.pipeline.postprocess import post_process_proposal
from backend.docpipe.pipeline.steps.base import PipelineStep

logger = logging.getLogger(__name__)


class GeneratedProposal(BaseModel):
    """One change as returned by the generator."""

    update_type: UpdateType
    page: str
    section: str | None = None
    suggested_text: str | None = None
    reasoning: str = ""
    source_messages: list[int] | None = None


class GenerationResponse(BaseModel):
    """Generator reply."""

    proposals: list[GeneratedProposal] = Field(default_factory=list)
    proposals_rejected: bool | None = None
    rejection_reason: str | None = None


def format_rag_docs(docs: list[RagDocument]) -> str:
    if not docs:
        return "(No relevant documentation found)"

    return "\n\n---\n\n".join(
        f"[DOC {i}] {doc.title}\nPath: {doc.file_path}\nSimilarity: {doc.similarity:.3f}\n\n"
        f"{doc.content}"
        for i, doc in enumerate(docs, start=1)
    )


def format_thread_messages(thread: ConversationThread, context: PipelineContext) -> str:
    """Thread messages labelled with their index in the filtered batch."""
    lines = []
    for i in thread.message_indices:
        if 0 <= i < len(context.filtered_messages):
            m = context.filtered_messages[i]
            lines.append(f"[{i}] [{m.timestamp.isoformat()}] {m.author}: {m.content}")
    return "\n\n".join(lines) if lines else "(No messages)"


def security_warnings(text: str | None, block_patterns: list[str]) -> list[str]:
    """Warnings for block patterns found in suggested text."""
    if not text:
        return []

    warnings = []
    for pattern in block_patterns:
        try:
            if re.search(pattern, text, re.IGNORECASE):
                warnings.append(f"Blocked pattern detected: {pattern}")
        except re.error:
            logger.warning(f"Invalid security block pattern ignored: {pattern}")
    return warnings


class ProposalGenerateStep(PipelineStep):
    """Asks the LLM for documentation changes for each valuable thread."""

    step_type = StepType.GENERATE

    def input_count(self, context: PipelineContext) -> int:
        return sum(1 for t in context.threads if t.has_doc_value)

    def output_count(self, context: PipelineContext) -> int:
        return sum(len(p) for p in context.proposals.values())

    async def execute(self, context: PipelineContext) -> PipelineContext:
        per_thread = int(self.option("max_proposals_per_thread", 5))
        per_batch = int(self.option("max_proposals_per_batch", 100))
        total = 0

        for thread in context.threads:
            if not thread.has_doc_value:
                continue
            if total >= per_batch:
                logger.warning(f"Reached max proposals per batch ({per_batch}), stopping")
                break

            try:
                proposals = await self._generate_for_thread(context, thread)
            except Exception as e:
                logger.error(f"Failed to generate proposals for thread {thread.id}: {e}")
                context.warnings.append(f"Proposal generation failed for thread {thread.id}")
                context.proposals[thread.id] = []
                continue

            proposals = proposals[: min(per_thread, per_batch - total)]
            context.proposals[thread.id] = proposals
            total += len(proposals)

        logger.info(f"Proposal generation complete for batch {context.batch_id}: {total}")
        return context

    async def _generate_for_thread(
        self, context: PipelineContext, thread: ConversationThread
    ) -> list[Proposal]:
        prompt = self.render(
            self.option("prompt_id", "changeset-generation"),
            {
                "project_name": context.domain_config.name,
                "thread_category": thread.category,
                "thread_summary": thread.summary,
                "doc_value_reason": thread.doc_value_reason,
                "conversation": format_thread_messages(thread, context),
                "rag_context": format_rag_docs(context.rag_results.get(thread.id, [])),
                "max_proposals": self.option("max_proposals_per_thread", 5),
            },
        )

        if context.ruleset is not None and context.ruleset.prompt_context:
            guidelines = "\n".join(f"- {rule}" for rule in context.ruleset.prompt_context)
            prompt = prompt.model_copy(
                update={
                    "system": (
                        f"{prompt.system}\n\n## Tenant-Specific Guidelines\n\n"
                        "Follow these additional guidelines when generating proposals:\n"
                        f"{guidelines}"
                    )
                }
            )

        data = await self.request(
            context,
            prompt,
            GenerationResponse,
            "proposal",
            default_temperature=0.4,
            default_max_tokens=32768,
        )

        if data.proposals_rejected:
            logger.debug(f"Thread {thread.id}: proposals rejected - {data.rejection_reason}")
            return []

        block_patterns = context.domain_config.security.block_patterns
        proposals = []
        for item in data.proposals:
            if item.update_type == UpdateType.NONE:
                continue

            processed = post_process_proposal(item.suggested_text, item.page)
            indices = [i for i in item.source_messages or [] if i in thread.message_indices]
            if not indices:
                indices = list(thread.message_indices)

            proposals.append(
                Proposal(
                    update_type=item.update_type,
                    page=item.page,
                    section=item.section,
                    suggested_text=processed.text or item.suggested_text,
                    raw_suggested_text=item.suggested_text,
                    reasoning=item.reasoning,
                    source_message_indices=indices,
                    source_message_ids=[context.filtered_messages[i].id for i in indices],
                    warnings=processed.warnings
                    + security_warnings(item.suggested_text, block_patterns),
                )
            )
        return proposals
