"""LLM handler for structured JSON requests with OpenAI integration.

Security: Reads API key from environment only, never hardcoded.
No key means no handler: the pipeline then runs with LLM steps disabled.
"""

import hashlib
import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generic, Protocol, TypeVar

from openai import AsyncOpenAI
from pydantic import BaseModel, ValidationError

from backend.docpipe.config import Settings, get_settings
from backend.docpipe.models.common import utc_now
from backend.docpipe.prompts.registry import RenderedPrompt
from backend.docpipe.utils.metrics import PrometheusPipelineMetrics

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)


class LLMResponseError(Exception):
    """LLM returned no usable structured response."""

    pass


@dataclass
class LLMResponse(Generic[T]):
    """Validated structured response with token usage."""

    data: T
    tokens_used: int = 0
    cached: bool = False


class LLMHandler(Protocol):
    """Protocol for structured LLM request implementations."""

    async def request_json(
        self,
        prompt: RenderedPrompt,
        schema: type[T],
        purpose: str,
        *,
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 8192,
    ) -> LLMResponse[T]:
        """Submit a rendered prompt and parse the reply into ``schema``.

        Args:
            prompt: Rendered system/user prompt pair
            schema: Pydantic model the reply must validate against
            purpose: Call tag (classification, proposal, ...) for caching and metrics
            model: Model override (default: handler's model)
            temperature: Sampling temperature
            max_tokens: Response token cap

        Returns:
            LLMResponse wrapping the validated data

        Raises:
            LLMResponseError: Reply missing, not JSON, or not matching schema
        """
        ...


@dataclass
class CacheEntry(Generic[T]):
    """Cached LLM response with metadata."""

    value: LLMResponse[T]
    cached_at: datetime
    ttl_seconds: int

    def is_fresh(self, now: datetime) -> bool:
        """Check if cache entry is still valid."""
        return (now - self.cached_at).total_seconds() < self.ttl_seconds


class LLMResponseCache:
    """In-memory response cache, enabled per purpose."""

    def __init__(
        self,
        purposes: list[str] | None = None,
        ttl_seconds: int = 3600,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._purposes = set(purposes or [])
        self._ttl_seconds = ttl_seconds
        self._clock = clock or utc_now
        self._cache: dict[str, CacheEntry[Any]] = {}

    def enabled_for(self, purpose: str) -> bool:
        """Whether responses for this purpose are cached."""
        return purpose in self._purposes and self._ttl_seconds > 0

    def make_key(
        self, purpose: str, model: str, prompt: RenderedPrompt, schema: type[BaseModel]
    ) -> str:
        """Generate deterministic cache key from request."""
        data = {
            "purpose": purpose,
            "model": model,
            "schema": schema.__name__,
            "system": prompt.system,
            "user": prompt.user,
        }
        digest = hashlib.sha256(json.dumps(data, sort_keys=True).encode()).hexdigest()
        return f"{purpose}:{digest}"

    def get(self, key: str) -> LLMResponse[Any] | None:
        """Get cached response if fresh, None otherwise."""
        entry = self._cache.get(key)
        if entry and entry.is_fresh(self._clock()):
            return entry.value
        elif entry:
            # Expired - remove
            del self._cache[key]
        return None

    def set(self, key: str, value: LLMResponse[Any]) -> None:
        """Store response with the configured TTL."""
        self._cache[key] = CacheEntry(
            value=value, cached_at=self._clock(), ttl_seconds=self._ttl_seconds
        )


class DeterministicStubHandler:
    """Deterministic stub handler for testing (no API key required).

    Returns the schema's default instance, so classification yields no
    threads and generation yields no proposals.
    """

    async def request_json(
        self,
        prompt: RenderedPrompt,
        schema: type[T],
        purpose: str,
        *,
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 8192,
    ) -> LLMResponse[T]:
        """Return the schema default."""
        logger.debug(f"Stub LLM handler answering {purpose} request")
        return LLMResponse(data=schema.model_validate({}), tokens_used=0)


class OpenAIHandler:
    """OpenAI-backed handler using JSON response format."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        cache: LLMResponseCache | None = None,
        metrics: PrometheusPipelineMetrics | None = None,
    ):
        """Initialize OpenAI handler.

        Args:
            api_key: OpenAI API key (read from environment)
            model: Default model name
            cache: Optional purpose-scoped response cache
            metrics: Metrics recorder (optional)
        """
        self.client = AsyncOpenAI(api_key=api_key)
        self.model = model
        self._cache = cache or LLMResponseCache()
        self._metrics = metrics or PrometheusPipelineMetrics()

    async def request_json(
        self,
        prompt: RenderedPrompt,
        schema: type[T],
        purpose: str,
        *,
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 8192,
    ) -> LLMResponse[T]:
        """Request structured output from OpenAI and validate it."""
        model_name = model or self.model

        cache_key: str | None = None
        if self._cache.enabled_for(purpose):
            cache_key = self._cache.make_key(purpose, model_name, prompt, schema)
            cached = self._cache.get(cache_key)
            if cached is not None:
                self._metrics.record_llm_call(purpose, "cache_hit")
                return LLMResponse(data=cached.data, tokens_used=0, cached=True)

        try:
            response = await self.client.chat.completions.create(
                model=model_name,
                messages=[
                    {"role": "system", "content": self._build_system_prompt(prompt, schema)},
                    {"role": "user", "content": prompt.user},
                ],
                temperature=temperature,
                max_tokens=max_tokens,
                response_format={"type": "json_object"},
            )
        except Exception as e:
            self._metrics.record_llm_call(purpose, "error")
            logger.error(f"OpenAI API call failed for {purpose}: {e}")
            raise LLMResponseError(f"OpenAI request failed for {purpose}") from e

        content = response.choices[0].message.content or ""
        tokens_used = response.usage.total_tokens if response.usage else 0

        # Validation: Check for empty response
        if not content.strip():
            self._metrics.record_llm_call(purpose, "empty", tokens_used)
            raise LLMResponseError(f"OpenAI returned empty response for {purpose}")

        try:
            data = schema.model_validate_json(content)
        except ValidationError as e:
            self._metrics.record_llm_call(purpose, "invalid", tokens_used)
            raise LLMResponseError(f"OpenAI response for {purpose} did not match schema") from e

        self._metrics.record_llm_call(purpose, "success", tokens_used)
        result = LLMResponse(data=data, tokens_used=tokens_used)
        if cache_key is not None:
            self._cache.set(cache_key, result)
        return result

    def _build_system_prompt(self, prompt: RenderedPrompt, schema: type[BaseModel]) -> str:
        """Append the JSON schema contract to the system prompt."""
        schema_json = json.dumps(schema.model_json_schema(), indent=2)
        return (
            f"{prompt.system}\n\n"
            "Respond with a single JSON object that validates against this JSON schema:\n"
            f"{schema_json}"
        )


def get_llm_handler(settings: Settings | None = None) -> LLMHandler | None:
    """Factory function to get the LLM handler based on config.

    Returns:
        OpenAIHandler if API key is configured, None otherwise. Callers must
        treat None as "LLM steps disabled"; DeterministicStubHandler is never
        substituted for a missing key because its empty replies would look
        like successfully classified batches.
    """
    settings = settings or get_settings()
    api_key = settings.openai_api_key

    if api_key and api_key.get_secret_value():
        logger.info("Using OpenAI handler for pipeline requests")
        return OpenAIHandler(
            api_key=api_key.get_secret_value(),
            model=settings.classification_model,
            cache=LLMResponseCache(
                purposes=settings.llm_cached_purposes,
                ttl_seconds=settings.llm_cache_ttl_seconds,
            ),
        )
    logger.warning("No OpenAI API key configured, LLM pipeline steps will be disabled")
    return None
