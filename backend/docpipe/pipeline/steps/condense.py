"""Length reduction for over-long proposals."""

import logging

from pydantic import BaseModel

from backend.docpipe.models.common import StepType, UpdateType
from backend.docpipe.models.pipeline import Proposal
from backend.docpipe.pipeline.context import PipelineContext
from backend.docpipe.pipeline.steps.base import PipelineStep

logger = logging.getLogger(__name__)

# (min priority, max length, target length), checked in order
DEFAULT_PRIORITY_TIERS: list[tuple[int, int, int]] = [
    (70, 5000, 3500),
    (40, 3500, 2500),
    (0, 2000, 1500),
]
DEFAULT_CATEGORY_PRIORITY = 50


class CondenseResponse(BaseModel):
    """Condenser reply."""

    condensed_content: str


def lengths_for_priority(
    priority: int, tiers: list[tuple[int, int, int]] = DEFAULT_PRIORITY_TIERS
) -> tuple[int, int]:
    """(max_length, target_length) for a category priority."""
    for min_priority, max_length, target_length in tiers:
        if priority >= min_priority:
            return max_length, target_length
    return tiers[-1][1], tiers[-1][2]


class LengthReductionStep(PipelineStep):
    """Condenses suggested text that exceeds its category's length tier.

    Single LLM attempt per proposal; on failure the original text is kept.
    """

    step_type = StepType.CONDENSE

    def input_count(self, context: PipelineContext) -> int:
        return sum(len(p) for p in context.proposals.values())

    def output_count(self, context: PipelineContext) -> int:
        return self.input_count(context)

    async def execute(self, context: PipelineContext) -> PipelineContext:
        priorities = {c.id: c.priority for c in context.domain_config.categories}
        categories = {t.id: t.category for t in context.threads}
        tiers = [tuple(t) for t in self.option("priority_tiers", DEFAULT_PRIORITY_TIERS)]
        condensed = 0

        for thread_id, proposals in context.proposals.items():
            priority = priorities.get(categories.get(thread_id, ""), DEFAULT_CATEGORY_PRIORITY)
            max_length, target_length = lengths_for_priority(priority, tiers)

            processed = []
            for proposal in proposals:
                text = proposal.suggested_text
                if (
                    not text
                    or proposal.update_type in (UpdateType.DELETE, UpdateType.NONE)
                    or len(text) <= max_length
                ):
                    processed.append(proposal)
                    continue

                try:
                    processed.append(
                        await self._condense(
                            context, proposal, max_length, target_length, priority
                        )
                    )
                    condensed += 1
                except Exception as e:
                    logger.error(f"Failed to condense proposal for {proposal.page}: {e}")
                    processed.append(
                        proposal.model_copy(
                            update={"warnings": [*proposal.warnings, f"Length reduction failed: {e}"]}
                        )
                    )
            context.proposals[thread_id] = processed

        logger.info(f"Length reduction complete for batch {context.batch_id}: {condensed} condensed")
        return context

    async def _condense(
        self,
        context: PipelineContext,
        proposal: Proposal,
        max_length: int,
        target_length: int,
        priority: int,
    ) -> Proposal:
        text = proposal.suggested_text or ""
        prompt = self.render(
            self.option("prompt_id", "content-condense"),
            {
                "page": proposal.page,
                "section": proposal.section or "(none)",
                "current_length": len(text),
                "max_length": max_length,
                "target_length": target_length,
                "priority": priority,
                "content": text,
            },
        )
        data = await self.request(
            context, prompt, CondenseResponse, "condense", default_temperature=0.3
        )

        warnings = list(proposal.warnings)
        if len(data.condensed_content) > max_length:
            warnings.append(
                f"Condensed content still exceeds max length "
                f"({len(data.condensed_content)} > {max_length})"
            )
        logger.info(f"Condensed {proposal.page}: {len(text)} -> {len(data.condensed_content)} chars")
        return proposal.model_copy(
            update={"suggested_text": data.condensed_content, "warnings": warnings}
        )
