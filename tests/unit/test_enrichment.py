"""Tests for proposal enrichment and text heuristics."""

from collections.abc import Callable
from datetime import datetime, timedelta

import pytest

from backend.docpipe.enrichment.engine import (
    EnrichmentEngine,
    analyze_source,
    analyze_style,
    calculate_change_context,
)
from backend.docpipe.enrichment.text_analysis import (
    avg_sentence_length,
    detect_format_pattern,
    estimate_technical_depth,
    has_code_examples,
    ngram_overlap,
)
from backend.docpipe.models.common import UpdateType
from backend.docpipe.models.enrichment import DuplicationWarning
from backend.docpipe.models.messages import Message
from backend.docpipe.models.pipeline import Proposal, RagDocument

T0 = datetime(2026, 3, 1, 9, 0)


def doc(path: str, similarity: float, content: str = "", title: str = "") -> RagDocument:
    return RagDocument(
        id=path, file_path=path, title=title or path, content=content, similarity=similarity
    )


def proposal(
    text: str | None = "alpha beta gamma delta epsilon zeta",
    page: str = "docs/sync.md",
    update_type: UpdateType = UpdateType.UPDATE,
) -> Proposal:
    return Proposal(update_type=update_type, page=page, suggested_text=text)


class TestTextAnalysis:
    def test_avg_sentence_length(self) -> None:
        assert avg_sentence_length("One two three. Four five six seven eight!") == 4
        assert avg_sentence_length("") == 0
        assert avg_sentence_length("...") == 0

    def test_code_examples(self) -> None:
        assert has_code_examples("Run `sync --now` first")
        assert has_code_examples("```\nx = 1\n```")
        assert has_code_examples("def handler(event): pass")
        assert not has_code_examples("Plain words only")

    def test_format_pattern(self) -> None:
        assert detect_format_pattern("- one\n- two") == "bullets"
        assert detect_format_pattern("1. one\n2. two") == "bullets"
        assert detect_format_pattern("Intro paragraph.\n\n- one\n- two") == "mixed"
        assert detect_format_pattern("Just a paragraph.\n\nAnother one.") == "prose"

    def test_technical_depth(self) -> None:
        assert estimate_technical_depth("Algorithm complexity and kernel internals") == "advanced"
        assert estimate_technical_depth("A basic tutorial for getting started") == "beginner"
        assert estimate_technical_depth("Configure the sync interval") == "intermediate"

    def test_ngram_overlap(self) -> None:
        text = "alpha beta gamma delta epsilon zeta"
        assert ngram_overlap(text, text) == 100
        # 2 of 4 trigrams shared, measured against the smaller set
        assert ngram_overlap(text, "alpha beta gamma delta xi omicron pi rho") == 50
        assert ngram_overlap(text, "") == 0
        assert ngram_overlap("too short", text) == 0


class TestFindRelatedDocs:
    def test_floor_dedupe_order_and_match_type(self) -> None:
        engine = EnrichmentEngine(min_similarity=0.6)
        docs = [
            doc("docs/low.md", 0.5),
            doc("docs/b.md", 0.7),
            doc("docs/b.md", 0.9),
            doc("docs/sync.md", 0.85),
            doc("docs/d.md", 0.65),
        ]

        related = engine.find_related_docs(proposal(), docs)

        assert [(r.page, r.similarity_score, r.match_type) for r in related] == [
            ("docs/b.md", 0.9, "semantic"),
            ("docs/sync.md", 0.85, "same-section"),
            ("docs/d.md", 0.65, "keyword"),
        ]

    def test_capped_and_snippet_truncated(self) -> None:
        engine = EnrichmentEngine(max_related_docs=2)
        docs = [doc(f"docs/{i}.md", 0.7 + i / 100, content="x" * 250) for i in range(4)]

        related = engine.find_related_docs(proposal(), docs)

        assert [r.page for r in related] == ["docs/3.md", "docs/2.md"]
        assert related[0].snippet == "x" * 200 + "..."


class TestCheckDuplication:
    text = "alpha beta gamma delta epsilon zeta"

    def test_threshold_is_strict(self) -> None:
        engine = EnrichmentEngine(duplication_threshold=50)
        docs = [doc("docs/a.md", 0.7, content="alpha beta gamma delta xi omicron pi rho")]

        warning = engine.check_duplication(proposal(self.text), docs)

        assert warning.overlap_percentage == 50
        assert not warning.detected
        assert warning.matching_page is None

    def test_detected_above_threshold(self) -> None:
        engine = EnrichmentEngine(duplication_threshold=50)
        docs = [
            doc("docs/a.md", 0.7, content="unrelated words here entirely"),
            doc("docs/b.md", 0.7, content="alpha beta gamma delta epsilon xi", title="Sync"),
        ]

        warning = engine.check_duplication(proposal(self.text), docs)

        assert warning == DuplicationWarning(
            detected=True, overlap_percentage=75, matching_page="docs/b.md", matching_section="Sync"
        )

    def test_delete_proposal_has_no_overlap(self) -> None:
        warning = EnrichmentEngine().check_duplication(
            proposal(None, update_type=UpdateType.DELETE), [doc("docs/a.md", 0.9, "text")]
        )
        assert warning == DuplicationWarning()


class TestStyleAndChange:
    def test_style_notes(self) -> None:
        target = "- Run `sync --now` to refresh.\n- Check the log."

        style = analyze_style(proposal("Refresh the cache from the settings page."), target)

        assert style.target_page_style.format_pattern == "bullets"
        assert style.proposal_style.format_pattern == "prose"
        assert (
            "Format mismatch: target uses bullets, proposal uses prose" in style.consistency_notes
        )
        assert "Target page uses code examples but proposal does not" in style.consistency_notes

    def test_no_target_no_notes(self) -> None:
        style = analyze_style(proposal("- bullet"), "")
        assert style.consistency_notes == []

    def test_change_percentage(self) -> None:
        update = calculate_change_context(proposal("x" * 100), "y" * 200, 3)
        assert update.change_percentage == 50
        assert update.target_section_char_count == 200
        assert update.proposal_char_count == 100
        assert update.other_pending_proposals == 3

        assert calculate_change_context(proposal("x" * 900), "y" * 100, 0).change_percentage == 100
        assert calculate_change_context(proposal(), "", 0).change_percentage == 0
        insert = proposal("new", update_type=UpdateType.INSERT)
        assert calculate_change_context(insert, "", 0).change_percentage == 100


class TestAnalyzeSource:
    def test_consensus_needs_two_authors_and_three_messages(
        self, make_message: Callable[..., Message]
    ) -> None:
        messages = [
            make_message(1, T0, "How do I set the interval?", author="alice"),
            make_message(2, T0 + timedelta(minutes=1), "Use sync.interval", author="bob"),
            make_message(3, T0 + timedelta(minutes=2), "Thanks", author="alice"),
        ]

        source = analyze_source(messages)

        assert source.message_count == 3
        assert source.unique_authors == 2
        assert source.thread_had_consensus
        assert source.conversation_summary.startswith("alice: How do I set the interval? | bob:")

        assert not analyze_source(messages[:2]).thread_had_consensus
        assert analyze_source([]).message_count == 0


class TestEnrich:
    def test_full_enrichment(self, make_message: Callable[..., Message]) -> None:
        engine = EnrichmentEngine()
        target = doc("docs/sync.md", 0.9, content="alpha beta gamma delta epsilon zeta eta")

        enrichment = engine.enrich(
            proposal(), [target], [make_message(1, T0)], pending_proposal_count=2
        )

        assert enrichment.related_docs[0].match_type == "same-section"
        assert enrichment.duplication_warning.detected
        assert enrichment.change_context.other_pending_proposals == 2
        assert enrichment.source_analysis.message_count == 1

    def test_failing_sub_analysis_uses_neutral_value(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        engine = EnrichmentEngine()

        def explode(*args: object) -> None:
            raise ZeroDivisionError

        monkeypatch.setattr(engine, "check_duplication", explode)

        enrichment = engine.enrich(proposal(), [doc("docs/sync.md", 0.9, "alpha")], [])

        assert enrichment.duplication_warning == DuplicationWarning()
        assert len(enrichment.related_docs) == 1
