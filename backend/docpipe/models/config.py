"""Pipeline and domain configuration models with built-in defaults."""

from typing import Any

from pydantic import BaseModel, Field

from backend.docpipe.models.common import StepType


class StepConfig(BaseModel):
    """Configuration for one pipeline step."""

    step_id: str
    step_type: StepType
    enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)


class ErrorHandlingConfig(BaseModel):
    """Retry and stop policy applied to every step."""

    stop_on_error: bool = False
    retry_attempts: int = Field(default=3, ge=0)
    retry_delay_ms: int = Field(default=5000, ge=0)
    backoff_multiplier: float = Field(default=2.0, ge=1.0)


class PipelineLimits(BaseModel):
    """Output caps for a single pipeline run."""

    max_proposals_per_batch: int = 100


class PipelineConfig(BaseModel):
    """Ordered step list plus error handling policy."""

    pipeline_id: str = "default"
    version: str = "1.0.0"
    steps: list[StepConfig]
    error_handling: ErrorHandlingConfig = Field(default_factory=ErrorHandlingConfig)
    limits: PipelineLimits = Field(default_factory=PipelineLimits)

    def step(self, step_id: str) -> StepConfig | None:
        """Look up a step by id."""
        return next((s for s in self.steps if s.step_id == step_id), None)


class CategoryConfig(BaseModel):
    """Classification category offered to the LLM."""

    id: str
    label: str
    description: str = ""
    priority: int = Field(default=50, ge=0, le=100)


class KeywordConfig(BaseModel):
    """Keyword filter configuration."""

    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)
    case_sensitive: bool = False


class RagPathFilter(BaseModel):
    """Glob patterns restricting which docs may be retrieved."""

    include: list[str] = Field(default_factory=list)
    exclude: list[str] = Field(default_factory=list)


class SecurityConfig(BaseModel):
    """Regex patterns that flag suggested text."""

    block_patterns: list[str] = Field(default_factory=list)


class DomainConfig(BaseModel):
    """Project-specific classification and retrieval configuration."""

    domain_id: str = "generic"
    name: str = "Generic documentation"
    description: str = ""
    categories: list[CategoryConfig]
    keywords: KeywordConfig = Field(default_factory=KeywordConfig)
    rag_paths: RagPathFilter = Field(default_factory=RagPathFilter)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    context: dict[str, Any] = Field(default_factory=dict)


DEFAULT_PIPELINE_CONFIG = PipelineConfig(
    steps=[
        StepConfig(step_id="keyword-filter", step_type=StepType.FILTER),
        StepConfig(
            step_id="batch-classify",
            step_type=StepType.CLASSIFY,
            config={"prompt_id": "thread-classification", "temperature": 0.2, "max_tokens": 32768},
        ),
        StepConfig(
            step_id="rag-enrich",
            step_type=StepType.ENRICH,
            config={"top_k": 5, "min_similarity": 0.6},
        ),
        StepConfig(
            step_id="proposal-generate",
            step_type=StepType.GENERATE,
            config={
                "prompt_id": "changeset-generation",
                "temperature": 0.4,
                "max_tokens": 32768,
                "max_proposals_per_thread": 5,
            },
        ),
        StepConfig(
            step_id="content-validate",
            step_type=StepType.VALIDATE,
            enabled=False,
            config={"prompt_id": "content-reformat", "max_retries": 2},
        ),
        StepConfig(
            step_id="length-reduce",
            step_type=StepType.CONDENSE,
            enabled=False,
            config={"prompt_id": "content-condense"},
        ),
    ],
)


DEFAULT_DOMAIN_CONFIG = DomainConfig(
    categories=[
        CategoryConfig(
            id="troubleshooting",
            label="Troubleshooting",
            description="Errors, failures and their resolutions",
            priority=80,
        ),
        CategoryConfig(
            id="how-to",
            label="How-to",
            description="Questions answered with concrete steps or configuration",
            priority=60,
        ),
        CategoryConfig(
            id="concept",
            label="Concept",
            description="Explanations of how a feature or component works",
            priority=40,
        ),
        CategoryConfig(
            id="no-doc-value",
            label="No documentation value",
            description="Greetings, off-topic chatter, or questions without an answer",
            priority=0,
        ),
    ],
)
