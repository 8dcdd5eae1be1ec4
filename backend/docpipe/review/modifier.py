"""REVIEW_MODIFICATIONS - LLM rewrite of proposal text per tenant rules."""

import logging

from pydantic import BaseModel, Field

from backend.docpipe.llm.client import LLMHandler
from backend.docpipe.models.enrichment import Enrichment
from backend.docpipe.models.pipeline import Proposal
from backend.docpipe.models.ruleset import ParsedRuleset
from backend.docpipe.prompts.registry import PromptRegistry

logger = logging.getLogger(__name__)

MODIFICATION_PROMPT_ID = "ruleset-modification"


class ModificationResponse(BaseModel):
    """Modifier reply."""

    modified: bool = False
    content: str = ""
    modifications_applied: list[str] = Field(default_factory=list)


def summarize_enrichment(enrichment: Enrichment) -> str:
    """Plain-text enrichment digest for the modification prompt."""
    dup = enrichment.duplication_warning
    style = enrichment.style_analysis
    change = enrichment.change_context
    source = enrichment.source_analysis

    lines = [
        f"- Duplication: {'detected' if dup.detected else 'none'} "
        f"({dup.overlap_percentage}% overlap"
        + (f" with {dup.matching_page})" if dup.matching_page else ")"),
        f"- Related docs: {', '.join(d.page for d in enrichment.related_docs) or 'none'}",
        f"- Change size: {change.change_percentage}% "
        f"({change.other_pending_proposals} other pending proposals)",
        f"- Target style: {style.target_page_style.format_pattern}, "
        f"{style.target_page_style.technical_depth}",
        f"- Proposal style: {style.proposal_style.format_pattern}, "
        f"{style.proposal_style.technical_depth}",
        f"- Source: {source.message_count} messages from {source.unique_authors} authors",
    ]
    if style.consistency_notes:
        lines.append(f"- Style notes: {'; '.join(style.consistency_notes)}")
    return "\n".join(lines)


class ReviewModifier:
    """Applies REVIEW_MODIFICATIONS rules with a single LLM call.

    Any failure keeps the original text.
    """

    def __init__(
        self,
        llm: LLMHandler,
        prompts: PromptRegistry,
        *,
        model: str | None = None,
        temperature: float = 0.2,
    ) -> None:
        self._llm = llm
        self._prompts = prompts
        self._model = model
        self._temperature = temperature

    async def apply(
        self, ruleset: ParsedRuleset, proposal: Proposal, enrichment: Enrichment
    ) -> tuple[Proposal, list[str]]:
        """Return the (possibly rewritten) proposal and the modifications applied."""
        if not ruleset.review_modifications or not proposal.suggested_text:
            return proposal, []

        try:
            prompt = self._prompts.render(
                MODIFICATION_PROMPT_ID,
                {
                    "modifications": "\n".join(f"- {m}" for m in ruleset.review_modifications),
                    "enrichment_summary": summarize_enrichment(enrichment),
                    "page": proposal.page,
                    "content": proposal.suggested_text,
                },
            )
            response = await self._llm.request_json(
                prompt,
                ModificationResponse,
                "ruleset-modification",
                model=self._model,
                temperature=self._temperature,
            )
        except Exception as e:
            logger.warning(f"Review modification failed for {proposal.page}, keeping original: {e}")
            return proposal, []

        data = response.data
        if not data.modified or not data.content.strip():
            return proposal, []

        logger.info(
            f"Applied {len(data.modifications_applied)} review modifications to {proposal.page}"
        )
        return proposal.model_copy(update={"suggested_text": data.content}), list(
            data.modifications_applied
        )
