"""Enrichment engine - pure analysis of a proposal against reference docs.

Computes related docs, duplication, style consistency, change size and
source-conversation quality. No I/O; every sub-analysis degrades to its
neutral value instead of raising.
"""

import logging
from collections.abc import Callable, Sequence
from typing import TypeVar

from backend.docpipe.enrichment.text_analysis import ngram_overlap, style_metrics
from backend.docpipe.models.common import UpdateType
from backend.docpipe.models.enrichment import (
    ChangeContext,
    DuplicationWarning,
    Enrichment,
    RelatedDoc,
    SourceAnalysis,
    StyleAnalysis,
)
from backend.docpipe.models.messages import Message
from backend.docpipe.models.pipeline import Proposal, RagDocument

logger = logging.getLogger(__name__)

T = TypeVar("T")

SNIPPET_CHARS = 200
SUMMARY_CHARS = 200
SEMANTIC_MATCH_FLOOR = 0.8
SENTENCE_LENGTH_DRIFT = 0.5


class EnrichmentEngine:
    """Computes Enrichment for proposals."""

    def __init__(
        self,
        *,
        min_similarity: float = 0.6,
        duplication_threshold: int = 50,
        max_related_docs: int = 5,
        ngram_size: int = 3,
    ) -> None:
        self.min_similarity = min_similarity
        self.duplication_threshold = duplication_threshold
        self.max_related_docs = max_related_docs
        self.ngram_size = ngram_size

    def enrich(
        self,
        proposal: Proposal,
        rag_docs: Sequence[RagDocument],
        source_messages: Sequence[Message],
        pending_proposal_count: int = 0,
    ) -> Enrichment:
        """Build the enrichment for one proposal.

        Args:
            proposal: Generated proposal
            rag_docs: Reference documents retrieved for the proposal's thread
            source_messages: Messages of the thread that produced the proposal
            pending_proposal_count: Other pending proposals (coordination signal)

        Returns:
            Enrichment with neutral values for any sub-analysis that failed
        """
        target_content = _target_content(proposal, rag_docs)

        return Enrichment(
            related_docs=_safe(lambda: self.find_related_docs(proposal, rag_docs), list),
            duplication_warning=_safe(
                lambda: self.check_duplication(proposal, rag_docs), DuplicationWarning
            ),
            style_analysis=_safe(
                lambda: analyze_style(proposal, target_content), StyleAnalysis
            ),
            change_context=_safe(
                lambda: calculate_change_context(
                    proposal, target_content, pending_proposal_count
                ),
                ChangeContext,
            ),
            source_analysis=_safe(lambda: analyze_source(source_messages), SourceAnalysis),
        )

    def find_related_docs(
        self, proposal: Proposal, rag_docs: Sequence[RagDocument]
    ) -> list[RelatedDoc]:
        """RAG hits above the floor, one per page, best first, capped."""
        best_by_page: dict[str, RagDocument] = {}
        for doc in rag_docs:
            if doc.similarity < self.min_similarity:
                continue
            current = best_by_page.get(doc.file_path)
            if current is None or doc.similarity > current.similarity:
                best_by_page[doc.file_path] = doc

        related = [
            RelatedDoc(
                page=doc.file_path,
                section=doc.title or None,
                similarity_score=doc.similarity,
                match_type=_match_type(proposal, doc),
                snippet=_truncate(doc.content, SNIPPET_CHARS),
            )
            for doc in best_by_page.values()
        ]
        related.sort(key=lambda r: r.similarity_score, reverse=True)
        return related[: self.max_related_docs]

    def check_duplication(
        self, proposal: Proposal, rag_docs: Sequence[RagDocument]
    ) -> DuplicationWarning:
        """Max n-gram overlap over all docs; detected strictly above threshold."""
        if not proposal.suggested_text:
            return DuplicationWarning()

        max_overlap = 0
        best: RagDocument | None = None
        for doc in rag_docs:
            overlap = ngram_overlap(proposal.suggested_text, doc.content, self.ngram_size)
            if overlap > max_overlap:
                max_overlap = overlap
                best = doc

        detected = max_overlap > self.duplication_threshold
        return DuplicationWarning(
            detected=detected,
            overlap_percentage=max_overlap,
            matching_page=best.file_path if detected and best else None,
            matching_section=best.title if detected and best else None,
        )


def analyze_style(proposal: Proposal, target_content: str) -> StyleAnalysis:
    """Compare style of the target page and the proposed text."""
    proposal_content = proposal.suggested_text or ""
    target_style = style_metrics(target_content)
    proposal_style = style_metrics(proposal_content)

    notes: list[str] = []
    if target_content:
        if target_style.format_pattern != proposal_style.format_pattern:
            notes.append(
                f"Format mismatch: target uses {target_style.format_pattern}, "
                f"proposal uses {proposal_style.format_pattern}"
            )
        if target_style.technical_depth != proposal_style.technical_depth:
            notes.append(
                f"Technical depth mismatch: target is {target_style.technical_depth}, "
                f"proposal is {proposal_style.technical_depth}"
            )
        if target_style.uses_code_examples and not proposal_style.uses_code_examples:
            notes.append("Target page uses code examples but proposal does not")

        target_len = target_style.avg_sentence_length
        proposal_len = proposal_style.avg_sentence_length
        if target_len > 0 and abs(target_len - proposal_len) / target_len > SENTENCE_LENGTH_DRIFT:
            notes.append(
                f"Sentence length differs significantly: target averages {target_len} words, "
                f"proposal averages {proposal_len}"
            )

    return StyleAnalysis(
        target_page_style=target_style,
        proposal_style=proposal_style,
        consistency_notes=notes,
    )


def calculate_change_context(
    proposal: Proposal, target_content: str, pending_proposal_count: int
) -> ChangeContext:
    """Character-count delta between existing and proposed content."""
    target_chars = len(target_content)
    proposal_chars = len(proposal.suggested_text or "")

    change = 0
    if proposal.update_type in (UpdateType.INSERT, UpdateType.DELETE):
        change = 100
    elif target_chars > 0:
        change = round(abs(target_chars - proposal_chars) / target_chars * 100)

    return ChangeContext(
        target_section_char_count=target_chars,
        proposal_char_count=proposal_chars,
        change_percentage=max(0, min(change, 100)),
        other_pending_proposals=max(pending_proposal_count, 0),
    )


def analyze_source(messages: Sequence[Message]) -> SourceAnalysis:
    """Message count, distinct authors and a naive consensus signal."""
    if not messages:
        return SourceAnalysis()

    unique_authors = len({m.author for m in messages})
    summary = " | ".join(f"{m.author}: {m.content}" for m in messages)

    return SourceAnalysis(
        message_count=len(messages),
        unique_authors=unique_authors,
        thread_had_consensus=unique_authors >= 2 and len(messages) >= 3,
        conversation_summary=_truncate(summary, SUMMARY_CHARS),
    )


def _target_content(proposal: Proposal, rag_docs: Sequence[RagDocument]) -> str:
    for doc in rag_docs:
        if doc.file_path == proposal.page:
            return doc.content or ""
    return ""


def _match_type(proposal: Proposal, doc: RagDocument) -> str:
    if doc.file_path == proposal.page:
        return "same-section"
    if doc.similarity >= SEMANTIC_MATCH_FLOOR:
        return "semantic"
    return "keyword"


def _truncate(text: str, limit: int) -> str:
    return text[:limit] + ("..." if len(text) > limit else "")


def _safe(compute: Callable[[], T], fallback: Callable[[], T]) -> T:
    try:
        return compute()
    except Exception:
        logger.exception("Enrichment sub-analysis failed, using neutral value")
        return fallback()
