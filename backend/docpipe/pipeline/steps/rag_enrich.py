"""RAG enrichment - reference documents per valuable thread."""

import fnmatch
import logging
import re

from backend.docpipe.models.common import StepType
from backend.docpipe.models.config import RagPathFilter
from backend.docpipe.models.pipeline import ConversationThread, RagDocument
from backend.docpipe.pipeline.context import PipelineContext
from backend.docpipe.pipeline.steps.base import PipelineStep

logger = logging.getLogger(__name__)

_I18N_PREFIX = re.compile(r"^i18n/[a-z]{2}(-[A-Z]{2})?/")
_LOCALE_PREFIX = re.compile(r"^[a-z]{2}(-[A-Z]{2})?/")


def search_query(thread: ConversationThread) -> str:
    """Semantic query if present, else the keywords joined."""
    criteria = thread.rag_search_criteria
    if criteria is None:
        return ""
    return (criteria.semantic_query or " ".join(criteria.keywords)).strip()


def filter_by_paths(docs: list[RagDocument], paths: RagPathFilter) -> list[RagDocument]:
    """Apply exclude globs, then require an include glob when any are set."""

    def matches(path: str, patterns: list[str]) -> bool:
        return any(fnmatch.fnmatch(path.lower(), p.lower()) for p in patterns)

    result = []
    for doc in docs:
        if paths.exclude and matches(doc.file_path, paths.exclude):
            continue
        if paths.include and not matches(doc.file_path, paths.include):
            continue
        result.append(doc)
    return result


def base_path(file_path: str) -> str:
    """Strip an ``i18n/<lang>/`` or ``<lang>/`` prefix."""
    return _LOCALE_PREFIX.sub("", _I18N_PREFIX.sub("", file_path))


def dedupe_translations(docs: list[RagDocument]) -> list[RagDocument]:
    """Keep one doc per base path, preferring the untranslated one.

    Input order (similarity descending) is preserved.
    """
    best: dict[str, RagDocument] = {}
    for doc in docs:
        key = base_path(doc.file_path)
        existing = best.get(key)
        if existing is None:
            best[key] = doc
        elif existing.file_path.startswith("i18n/") and not doc.file_path.startswith("i18n/"):
            best[key] = doc
        elif doc.similarity > existing.similarity:
            best[key] = doc

    kept = {id(doc) for doc in best.values()}
    return [doc for doc in docs if id(doc) in kept]


class RagEnrichStep(PipelineStep):
    """Retrieves similar reference docs for every non-no-doc-value thread."""

    step_type = StepType.ENRICH

    def input_count(self, context: PipelineContext) -> int:
        return sum(1 for t in context.threads if t.has_doc_value)

    def output_count(self, context: PipelineContext) -> int:
        return sum(len(docs) for docs in context.rag_results.values())

    async def execute(self, context: PipelineContext) -> PipelineContext:
        rag = self.require_rag()
        top_k = int(self.option("top_k", 5))
        min_similarity = float(self.option("min_similarity", 0.6))
        dedupe = bool(self.option("deduplicate_translations", True))

        for thread in context.threads:
            if not thread.has_doc_value:
                continue

            query = search_query(thread)
            if not query:
                logger.debug(f"Thread {thread.id} has no search query")
                context.rag_results[thread.id] = []
                continue

            try:
                hits = await rag.search_similar_docs(query, top_k * 2)
            except Exception as e:
                logger.error(f"RAG search failed for thread {thread.id}: {e}")
                context.warnings.append(f"RAG search failed for thread {thread.id}")
                context.rag_results[thread.id] = []
                continue

            docs = sorted(
                (d for d in hits if d.similarity >= min_similarity),
                key=lambda d: d.similarity,
                reverse=True,
            )
            docs = filter_by_paths(docs, context.domain_config.rag_paths)
            if dedupe:
                docs = dedupe_translations(docs)
            context.rag_results[thread.id] = docs[:top_k]

            logger.debug(f"Thread {thread.id}: {len(context.rag_results[thread.id])} docs")

        logger.info(
            f"RAG enrichment complete for batch {context.batch_id}: "
            f"{self.output_count(context)} docs"
        )
        return context
