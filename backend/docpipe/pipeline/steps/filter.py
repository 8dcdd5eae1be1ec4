"""Keyword pre-filter."""

import logging

from backend.docpipe.models.common import StepType
from backend.docpipe.models.config import KeywordConfig
from backend.docpipe.pipeline.context import PipelineContext
from backend.docpipe.pipeline.steps.base import PipelineStep

logger = logging.getLogger(__name__)


def matches_keywords(text: str, keywords: KeywordConfig) -> bool:
    """Exclude keywords win; otherwise at least one include keyword is required."""
    if not keywords.include and not keywords.exclude:
        return True

    haystack = text if keywords.case_sensitive else text.lower()

    def contains(keyword: str) -> bool:
        return (keyword if keywords.case_sensitive else keyword.lower()) in haystack

    if any(contains(k) for k in keywords.exclude):
        return False
    if keywords.include:
        return any(contains(k) for k in keywords.include)
    return True


class KeywordFilterStep(PipelineStep):
    """Drops messages by include/exclude keywords. No I/O."""

    step_type = StepType.FILTER

    def input_count(self, context: PipelineContext) -> int:
        return len(context.messages)

    def output_count(self, context: PipelineContext) -> int:
        return len(context.filtered_messages)

    def keywords(self, context: PipelineContext) -> KeywordConfig:
        """Step config keywords override the domain keywords."""
        domain = context.domain_config.keywords
        return KeywordConfig(
            include=self.option("include_keywords", domain.include),
            exclude=self.option("exclude_keywords", domain.exclude),
            case_sensitive=self.option("case_sensitive", domain.case_sensitive),
        )

    async def execute(self, context: PipelineContext) -> PipelineContext:
        keywords = self.keywords(context)
        context.filtered_messages = [
            m for m in context.messages if matches_keywords(m.content, keywords)
        ]

        dropped = len(context.messages) - len(context.filtered_messages)
        logger.info(
            f"Keyword filter: {dropped}/{len(context.messages)} messages filtered out "
            f"(batch {context.batch_id})"
        )
        return context
