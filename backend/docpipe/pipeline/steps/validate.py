"""Content validation with LLM reformatting."""

import json
import logging
import re

import yaml
from pydantic import BaseModel

from backend.docpipe.models.common import StepType, UpdateType
from backend.docpipe.models.pipeline import Proposal
from backend.docpipe.pipeline.context import PipelineContext
from backend.docpipe.pipeline.steps.base import PipelineStep

logger = logging.getLogger(__name__)

_FILE_TYPES = {
    "md": "markdown",
    "mdx": "markdown",
    "markdown": "markdown",
    "yaml": "yaml",
    "yml": "yaml",
    "json": "json",
    "txt": "text",
}

_FENCED = re.compile(r"```[\s\S]*?```")
_INLINE_TICK = re.compile(r"(?<!\\)`")
_OPEN_LINK = re.compile(r"\]\([^)]*$", re.MULTILINE)


class ReformatResponse(BaseModel):
    """Reformatter reply."""

    content: str


def file_type_for(page: str) -> str:
    """File type by extension; unknown extensions are treated as markdown."""
    return _FILE_TYPES.get(page.lower().rsplit(".", 1)[-1], "markdown")


def validate_markdown(content: str) -> str | None:
    errors = []
    if content.count("```") % 2:
        errors.append("Unbalanced code blocks (odd number of ``` markers)")
    elif len(_INLINE_TICK.findall(_FENCED.sub("", content))) % 2:
        errors.append("Unbalanced inline code markers")
    if _OPEN_LINK.search(content):
        errors.append("Incomplete markdown links detected")
    return "; ".join(errors) or None


def validate_json(content: str) -> str | None:
    try:
        json.loads(content)
    except json.JSONDecodeError as e:
        return f"Invalid JSON: {e.msg} at line {e.lineno}"
    return None


def validate_yaml(content: str) -> str | None:
    try:
        yaml.safe_load(content)
    except yaml.YAMLError as e:
        return f"Invalid YAML: {e}"
    return None


def validate_content(content: str, file_type: str) -> str | None:
    """Return an error description, or None when the content is valid."""
    if file_type == "markdown":
        return validate_markdown(content)
    if file_type == "json":
        return validate_json(content)
    if file_type == "yaml":
        return validate_yaml(content)
    return None


class ContentValidationStep(PipelineStep):
    """Checks suggested text structure and asks the LLM to repair failures."""

    step_type = StepType.VALIDATE

    def input_count(self, context: PipelineContext) -> int:
        return sum(len(p) for p in context.proposals.values())

    def output_count(self, context: PipelineContext) -> int:
        return self.input_count(context)

    async def execute(self, context: PipelineContext) -> PipelineContext:
        skip_patterns = [re.compile(p, re.IGNORECASE) for p in self.option("skip_patterns", [])]
        reformatted = failed = 0

        for thread_id, proposals in context.proposals.items():
            validated = []
            for proposal in proposals:
                if (
                    not proposal.suggested_text
                    or proposal.update_type in (UpdateType.DELETE, UpdateType.NONE)
                    or any(p.search(proposal.page) for p in skip_patterns)
                ):
                    validated.append(proposal)
                    continue

                result, outcome = await self._validate_and_reformat(context, proposal)
                if outcome == "reformatted":
                    reformatted += 1
                elif outcome == "failed":
                    failed += 1
                validated.append(result)
            context.proposals[thread_id] = validated

        logger.info(
            f"Content validation complete for batch {context.batch_id}: "
            f"{reformatted} reformatted, {failed} failed"
        )
        return context

    async def _validate_and_reformat(
        self, context: PipelineContext, proposal: Proposal
    ) -> tuple[Proposal, str]:
        """Return the checked proposal and one of valid, reformatted, failed."""
        max_retries = int(self.option("max_retries", 2))
        file_type = file_type_for(proposal.page)
        content = proposal.suggested_text or ""
        error: str | None = None

        for attempt in range(max_retries + 1):
            error = validate_content(content, file_type)
            if error is None:
                if content == proposal.suggested_text:
                    return proposal, "valid"
                reformatted = proposal.model_copy(
                    update={
                        "suggested_text": content,
                        "warnings": [*proposal.warnings, "Content was reformatted by LLM"],
                    }
                )
                return reformatted, "reformatted"

            if attempt == max_retries:
                break

            logger.debug(
                f"Validation failed for {proposal.page} "
                f"(attempt {attempt + 1}/{max_retries + 1}): {error}"
            )
            try:
                prompt = self.render(
                    self.option("prompt_id", "content-reformat"),
                    {
                        "file_type": file_type,
                        "page": proposal.page,
                        "validation_error": error,
                        "content": content,
                    },
                )
                data = await self.request(context, prompt, ReformatResponse, "reformat")
            except Exception as e:
                logger.error(f"LLM reformat failed for {proposal.page}: {e}")
                break
            content = data.content

        logger.warning(f"Content validation failed for {proposal.page}: {error}")
        failed = proposal.model_copy(
            update={
                "warnings": [
                    *proposal.warnings,
                    f"Validation failed after {max_retries + 1} attempts: {error}",
                ]
            }
        )
        return failed, "failed"
