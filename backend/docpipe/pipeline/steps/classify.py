"""LLM thread classification."""

import logging

from pydantic import BaseModel, Field

from backend.docpipe.models.common import NO_DOC_VALUE, StepType, to_epoch_ms, utc_now
from backend.docpipe.models.config import CategoryConfig
from backend.docpipe.models.messages import Message
from backend.docpipe.models.pipeline import ConversationThread, RagSearchCriteria
from backend.docpipe.pipeline.context import PipelineContext
from backend.docpipe.pipeline.steps.base import PipelineStep

logger = logging.getLogger(__name__)

UNASSIGNED_REASON = "Not assigned to any thread by the classifier"
FILTERED_REASON = "Excluded by keyword filter"


class ClassifiedThread(BaseModel):
    """One thread as returned by the classifier."""

    category: str
    messages: list[int] = Field(default_factory=list)
    summary: str = ""
    doc_value_reason: str = ""
    rag_search_criteria: RagSearchCriteria | None = None


class ClassificationResponse(BaseModel):
    """Classifier reply."""

    threads: list[ClassifiedThread] = Field(default_factory=list)


def format_messages(messages: list[Message], *, indexed: bool = True) -> str:
    """Render messages as ``[idx] [iso-ts] author: content`` lines."""
    if not messages:
        return "(No messages)"

    lines = []
    for idx, m in enumerate(messages):
        prefix = f"[{idx}] " if indexed else ""
        lines.append(f"{prefix}[{m.timestamp.isoformat()}] {m.author}: {m.content}")
    return "\n\n".join(lines)


def format_categories(categories: list[CategoryConfig]) -> str:
    return "\n".join(f"- **{c.label}** ({c.id}): {c.description}" for c in categories)


class BatchClassifyStep(PipelineStep):
    """Groups filtered messages into threads with one category each.

    Every batch message ends up in exactly one thread: messages the filter
    dropped and messages the classifier left out are collected into
    synthetic no-doc-value threads, so they can be marked processed.
    """

    step_type = StepType.CLASSIFY

    def input_count(self, context: PipelineContext) -> int:
        return len(context.messages)

    def output_count(self, context: PipelineContext) -> int:
        return len(context.threads)

    async def execute(self, context: PipelineContext) -> PipelineContext:
        threads: list[ConversationThread] = []
        assigned: set[int] = set()

        if context.filtered_messages:
            response = await self._classify(context)
            threads, assigned = self._build_threads(context, response)
        else:
            logger.info(f"No messages passed the filter for batch {context.batch_id}")

        unassigned = [i for i in range(len(context.filtered_messages)) if i not in assigned]
        if unassigned:
            threads.append(
                ConversationThread(
                    id=f"thread_{context.batch_id}_unassigned",
                    category=NO_DOC_VALUE,
                    message_indices=unassigned,
                    message_ids=[context.filtered_messages[i].id for i in unassigned],
                    summary="Messages not assigned to any thread",
                    doc_value_reason=UNASSIGNED_REASON,
                )
            )

        kept_ids = {m.id for m in context.filtered_messages}
        dropped = [m.id for m in context.messages if m.id not in kept_ids]
        if dropped:
            threads.append(
                ConversationThread(
                    id=f"thread_{context.batch_id}_filtered",
                    category=NO_DOC_VALUE,
                    message_ids=dropped,
                    summary="Messages excluded by the keyword filter",
                    doc_value_reason=FILTERED_REASON,
                )
            )

        context.threads = threads
        categories = sorted({t.category for t in threads})
        logger.info(
            f"Classified batch {context.batch_id} into {len(threads)} threads "
            f"({', '.join(categories)})"
        )
        return context

    async def _classify(self, context: PipelineContext) -> ClassificationResponse:
        domain = context.domain_config
        prompt = self.render(
            self.option("prompt_id", "thread-classification"),
            {
                "project_name": domain.name,
                "domain_description": domain.description,
                "categories": format_categories(domain.categories),
                "context_messages": format_messages(context.context_messages, indexed=False),
                "messages_to_analyze": format_messages(context.filtered_messages),
            },
        )
        return await self.request(
            context,
            prompt,
            ClassificationResponse,
            "classification",
            default_temperature=0.2,
            default_max_tokens=32768,
        )

    def _build_threads(
        self, context: PipelineContext, response: ClassificationResponse
    ) -> tuple[list[ConversationThread], set[int]]:
        filtered = context.filtered_messages
        known_categories = {c.id for c in context.domain_config.categories}
        stamp = to_epoch_ms(utc_now())

        threads: list[ConversationThread] = []
        assigned: set[int] = set()

        for idx, item in enumerate(response.threads):
            indices = []
            for i in item.messages:
                if not 0 <= i < len(filtered):
                    logger.warning(f"Classifier returned out-of-range message index {i}")
                    continue
                if i in assigned:
                    logger.debug(f"Message index {i} already assigned, ignoring duplicate")
                    continue
                assigned.add(i)
                indices.append(i)

            if not indices:
                logger.debug(f"Dropping classified thread {idx} with no valid messages")
                continue

            if item.category not in known_categories:
                logger.warning(f"Classifier returned unknown category {item.category!r}")

            threads.append(
                ConversationThread(
                    id=f"thread_{context.batch_id}_{idx}_{stamp}",
                    category=item.category,
                    message_indices=indices,
                    message_ids=[filtered[i].id for i in indices],
                    summary=item.summary,
                    doc_value_reason=item.doc_value_reason,
                    rag_search_criteria=(
                        item.rag_search_criteria if item.category != NO_DOC_VALUE else None
                    ),
                )
            )

        return threads, assigned
