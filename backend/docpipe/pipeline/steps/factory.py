"""Step factory - builds configured steps with their collaborators."""

import logging

from backend.docpipe.llm.client import LLMHandler
from backend.docpipe.models.common import StepType
from backend.docpipe.models.config import PipelineConfig, StepConfig
from backend.docpipe.pipeline.config import ConfigurationError
from backend.docpipe.pipeline.steps.base import PipelineStep
from backend.docpipe.pipeline.steps.classify import BatchClassifyStep
from backend.docpipe.pipeline.steps.condense import LengthReductionStep
from backend.docpipe.pipeline.steps.filter import KeywordFilterStep
from backend.docpipe.pipeline.steps.generate import ProposalGenerateStep
from backend.docpipe.pipeline.steps.rag_enrich import RagEnrichStep
from backend.docpipe.pipeline.steps.validate import ContentValidationStep
from backend.docpipe.prompts.registry import PromptRegistry
from backend.docpipe.rag.service import RagService

logger = logging.getLogger(__name__)

STEP_CLASSES: dict[StepType, type[PipelineStep]] = {
    StepType.FILTER: KeywordFilterStep,
    StepType.CLASSIFY: BatchClassifyStep,
    StepType.ENRICH: RagEnrichStep,
    StepType.GENERATE: ProposalGenerateStep,
    StepType.VALIDATE: ContentValidationStep,
    StepType.CONDENSE: LengthReductionStep,
}

# Step types that cannot run without an LLM handler and prompt registry
LLM_STEP_TYPES = {StepType.CLASSIFY, StepType.GENERATE, StepType.VALIDATE, StepType.CONDENSE}


class StepFactory:
    """Maps step types to classes and injects shared collaborators."""

    def __init__(
        self,
        *,
        llm: LLMHandler | None = None,
        prompts: PromptRegistry | None = None,
        rag: RagService | None = None,
        default_models: dict[StepType, str] | None = None,
    ) -> None:
        self._llm = llm
        self._prompts = prompts
        self._rag = rag
        self._default_models = default_models or {}
        self._registry: dict[StepType, type[PipelineStep]] = dict(STEP_CLASSES)

    def register(self, step_type: StepType, step_class: type[PipelineStep]) -> None:
        """Register or replace the class for a step type."""
        self._registry[step_type] = step_class

    def create(self, config: StepConfig) -> PipelineStep:
        """Build one step.

        Raises:
            ConfigurationError: If no class is registered for the step type
        """
        step_class = self._registry.get(config.step_type)
        if step_class is None:
            raise ConfigurationError(
                f"Unknown step type {config.step_type!r} for step {config.step_id}"
            )

        default_model = self._default_models.get(config.step_type)
        if default_model and "model" not in config.config:
            config = config.model_copy(
                update={"config": {**config.config, "model": default_model}}
            )

        return step_class(config, llm=self._llm, prompts=self._prompts, rag=self._rag)

    def create_all(self, pipeline: PipelineConfig) -> list[PipelineStep]:
        """Build every enabled step in configured order.

        Pipeline-wide limits are passed to the generate step.
        """
        steps = []
        for step_config in pipeline.steps:
            if not step_config.enabled:
                logger.debug(f"Step {step_config.step_id} disabled")
                continue
            if step_config.step_type == StepType.GENERATE:
                step_config = step_config.model_copy(
                    update={
                        "config": {
                            "max_proposals_per_batch": pipeline.limits.max_proposals_per_batch,
                            **step_config.config,
                        }
                    }
                )
            steps.append(self.create(step_config))
        return steps
