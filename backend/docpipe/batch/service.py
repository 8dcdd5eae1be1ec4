"""Wiring - builds a BatchMessageProcessor from settings."""

import logging
from collections.abc import Awaitable, Callable
from datetime import datetime
from functools import lru_cache

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.docpipe.batch.processor import BatchMessageProcessor
from backend.docpipe.batch.scheduler import BatchWindowScheduler
from backend.docpipe.batch.storage import PipelineResultWriter
from backend.docpipe.config import Settings, get_settings
from backend.docpipe.db.engine import get_session_factory
from backend.docpipe.db.sql_repositories import (
    SqlMessageRepository,
    SqlResultRepository,
    SqlRulesetRepository,
    SqlRunLogRepository,
    SqlWatermarkRepository,
)
from backend.docpipe.enrichment.engine import EnrichmentEngine
from backend.docpipe.llm.client import LLMHandler, get_llm_handler
from backend.docpipe.pipeline.builder import PipelineBuilder
from backend.docpipe.prompts.registry import PromptRegistry, PromptRenderError
from backend.docpipe.rag.service import KeywordRagService, RagService
from backend.docpipe.review.cache import RulesetCache
from backend.docpipe.review.modifier import ReviewModifier

logger = logging.getLogger(__name__)


def build_rag_service(settings: Settings) -> RagService:
    """Keyword search over the configured reference docs (empty if unset)."""
    if settings.reference_docs_dir:
        return KeywordRagService.from_directory(settings.reference_docs_dir)
    logger.warning("No reference docs directory configured, RAG search returns nothing")
    return KeywordRagService()


def build_processor(
    settings: Settings | None = None,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    llm: LLMHandler | None = None,
    rag: RagService | None = None,
    clock: Callable[[], datetime] | None = None,
    sleep_fn: Callable[[float], Awaitable[None]] | None = None,
) -> BatchMessageProcessor:
    """Build a processor backed by SQL repositories.

    Args:
        settings: Settings (default: get_settings())
        session_factory: Session factory (default: global async engine)
        llm: LLM handler (default: get_llm_handler(); None without an API key,
            which disables the LLM steps so no window is completed)
        rag: RAG service (default: keyword search over reference_docs_dir)
        clock: Injectable UTC clock for scheduling and ruleset caching
        sleep_fn: Injectable async sleep for step retries

    Returns:
        Ready BatchMessageProcessor
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    llm = llm or get_llm_handler(settings)
    rag = rag or build_rag_service(settings)

    messages = SqlMessageRepository(session_factory)
    results = SqlResultRepository(session_factory)

    scheduler = BatchWindowScheduler(
        messages,
        SqlWatermarkRepository(session_factory),
        batch_window_hours=settings.batch_window_hours,
        context_window_hours=settings.context_window_hours,
        max_batch_size=settings.max_batch_size,
        max_context_messages=settings.max_context_messages,
        fallback_lookback_days=settings.fallback_lookback_days,
        clock=clock,
    )

    prompts: PromptRegistry | None = None
    try:
        prompts = PromptRegistry(overrides_dir=settings.prompt_overrides_dir).load()
    except (PromptRenderError, OSError) as e:
        logger.warning(f"Prompts failed to load, review modifications disabled: {e}")

    # Without prompts the builder retries the load and falls back to non-LLM steps
    builder = PipelineBuilder(
        settings,
        llm=llm,
        rag=rag,
        prompts=prompts,
        run_log=SqlRunLogRepository(session_factory),
        sleep_fn=sleep_fn,
    )

    modifier: ReviewModifier | None = None
    if llm is not None and prompts is not None:
        modifier = ReviewModifier(llm, prompts, model=settings.review_model)

    writer = PipelineResultWriter(
        results,
        enrichment=EnrichmentEngine(min_similarity=settings.rag_min_similarity),
        modifier=modifier,
        classification_model=settings.classification_model,
        proposal_model=settings.proposal_model,
    )

    return BatchMessageProcessor(
        scheduler=scheduler,
        messages=messages,
        results=results,
        writer=writer,
        pipeline_builder=builder,
        ruleset_cache=RulesetCache(
            SqlRulesetRepository(session_factory),
            ttl_seconds=settings.ruleset_cache_ttl_seconds,
            clock=clock,
        ),
        tenant_id=settings.tenant_id,
        excluded_stream_ids=settings.excluded_stream_ids,
    )


@lru_cache
def get_processor() -> BatchMessageProcessor:
    """Process-wide processor instance (FastAPI dependency)."""
    return build_processor(get_settings())
