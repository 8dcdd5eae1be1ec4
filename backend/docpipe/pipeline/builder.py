"""Assembles a ready-to-run orchestrator from settings and collaborators."""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

from backend.docpipe.config import Settings
from backend.docpipe.db.repositories import RunLogRepository
from backend.docpipe.llm.client import LLMHandler
from backend.docpipe.models.common import StepType
from backend.docpipe.models.config import DEFAULT_DOMAIN_CONFIG, DomainConfig, PipelineConfig
from backend.docpipe.pipeline.config import (
    ConfigurationError,
    load_domain_config,
    load_pipeline_config,
)
from backend.docpipe.pipeline.orchestrator import PipelineOrchestrator
from backend.docpipe.pipeline.steps.factory import LLM_STEP_TYPES, StepFactory
from backend.docpipe.prompts.registry import PromptNotFoundError, PromptRegistry, PromptRenderError
from backend.docpipe.rag.service import RagService

logger = logging.getLogger(__name__)


@dataclass
class BuiltPipeline:
    """Orchestrator plus the domain config and prompts it was built with."""

    orchestrator: PipelineOrchestrator
    domain_config: DomainConfig
    prompts: PromptRegistry | None
    llm_enabled: bool


class PipelineBuilder:
    """Loads configs and prompts and builds the configured steps.

    When configuration or prompts fail to load, LLM-dependent steps are
    disabled for the resulting pipeline instead of raising.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        llm: LLMHandler | None,
        rag: RagService | None,
        prompts: PromptRegistry | None = None,
        run_log: RunLogRepository | None = None,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
    ) -> None:
        self._settings = settings
        self._llm = llm
        self._rag = rag
        self._prompts = prompts
        self._run_log = run_log
        self._sleep_fn = sleep_fn

    def default_models(self) -> dict[StepType, str]:
        s = self._settings
        return {
            StepType.CLASSIFY: s.classification_model,
            StepType.GENERATE: s.proposal_model,
            StepType.VALIDATE: s.proposal_model,
            StepType.CONDENSE: s.proposal_model,
        }

    def build(self) -> BuiltPipeline:
        """Build the pipeline, degrading to non-LLM steps on init failure."""
        domain_config = self._load_domain_config()

        try:
            config = load_pipeline_config(self._settings.pipeline_config_path, self._settings)
            if self._llm is None:
                config = self._without_llm_steps(config)
            prompts = self._prompts or PromptRegistry(
                overrides_dir=self._settings.prompt_overrides_dir
            ).load()
            factory = StepFactory(
                llm=self._llm, prompts=prompts, rag=self._rag, default_models=self.default_models()
            )
            steps = factory.create_all(config)
            llm_enabled = self._llm is not None
        except (ConfigurationError, PromptRenderError, PromptNotFoundError, OSError) as e:
            logger.warning(f"Failed to initialize pipeline, LLM steps disabled: {e}")
            config = self._without_llm_steps(load_pipeline_config(None, self._settings))
            prompts = None
            steps = StepFactory(rag=self._rag).create_all(config)
            llm_enabled = False

        orchestrator = PipelineOrchestrator(
            config,
            steps,
            sleep_fn=self._sleep_fn,
            run_log=self._run_log,
            instance_id=self._settings.tenant_id,
        )
        logger.info(
            f"Built pipeline {config.pipeline_id}: "
            f"{', '.join(step.step_id for step in steps) or '(no steps)'}"
        )
        return BuiltPipeline(
            orchestrator=orchestrator,
            domain_config=domain_config,
            prompts=prompts,
            llm_enabled=llm_enabled,
        )

    def _load_domain_config(self) -> DomainConfig:
        try:
            return load_domain_config(self._settings.domain_config_path)
        except ConfigurationError as e:
            logger.warning(f"Failed to load domain config, using defaults: {e}")
            return DEFAULT_DOMAIN_CONFIG.model_copy(deep=True)

    @staticmethod
    def _without_llm_steps(config: PipelineConfig) -> PipelineConfig:
        steps = [
            step.model_copy(update={"enabled": False}) if step.step_type in LLM_STEP_TYPES else step
            for step in config.steps
        ]
        return config.model_copy(update={"steps": steps})
