"""Base class for pipeline steps.

A step reads the inputs and earlier outputs on a PipelineContext and writes
only the field(s) it owns. The orchestrator hands each step a snapshot, so a
step may mutate the context it receives freely; the orchestrator keeps the
result only when execute() returns normally.
"""

import logging
from typing import Any, TypeVar

from pydantic import BaseModel

from backend.docpipe.llm.client import LLMHandler
from backend.docpipe.models.common import StepType
from backend.docpipe.models.config import StepConfig
from backend.docpipe.pipeline.context import PipelineContext
from backend.docpipe.prompts.registry import PromptRegistry, RenderedPrompt
from backend.docpipe.rag.service import RagService

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class PipelineStepError(Exception):
    """Step cannot run or produced unusable output."""

    pass


class PipelineStep:
    """Shared plumbing for configured steps."""

    step_type: StepType

    def __init__(
        self,
        config: StepConfig,
        *,
        llm: LLMHandler | None = None,
        prompts: PromptRegistry | None = None,
        rag: RagService | None = None,
    ) -> None:
        self.config = config
        self._llm = llm
        self._prompts = prompts
        self._rag = rag

    @property
    def step_id(self) -> str:
        return self.config.step_id

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def option(self, key: str, default: Any = None) -> Any:
        """Step-specific config value."""
        value = self.config.config.get(key)
        return default if value is None else value

    def input_count(self, context: PipelineContext) -> int:
        """Number of items this step would consume; 0 means skip."""
        raise NotImplementedError

    def output_count(self, context: PipelineContext) -> int:
        raise NotImplementedError

    async def execute(self, context: PipelineContext) -> PipelineContext:
        raise NotImplementedError

    def require_llm(self) -> LLMHandler:
        if self._llm is None:
            raise PipelineStepError(f"Step {self.step_id} requires an LLM handler")
        return self._llm

    def require_prompts(self) -> PromptRegistry:
        if self._prompts is None:
            raise PipelineStepError(f"Step {self.step_id} requires a prompt registry")
        return self._prompts

    def require_rag(self) -> RagService:
        if self._rag is None:
            raise PipelineStepError(f"Step {self.step_id} requires a RAG service")
        return self._rag

    def render(self, prompt_id: str, variables: dict[str, Any]) -> RenderedPrompt:
        return self.require_prompts().render(prompt_id, variables)

    async def request(
        self,
        context: PipelineContext,
        prompt: RenderedPrompt,
        schema: type[T],
        purpose: str,
        *,
        default_temperature: float = 0.2,
        default_max_tokens: int = 8192,
    ) -> T:
        """Send a rendered prompt through the LLM handler and count the call.

        Model, temperature and max_tokens come from the step config when set.
        """
        response = await self.require_llm().request_json(
            prompt,
            schema,
            purpose,
            model=self.option("model"),
            temperature=float(self.option("temperature", default_temperature)),
            max_tokens=int(self.option("max_tokens", default_max_tokens)),
        )
        context.record_llm_call(response.tokens_used)
        return response.data

    def __repr__(self) -> str:
        return f"{type(self).__name__}(step_id={self.step_id!r})"
