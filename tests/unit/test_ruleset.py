"""Tests for ruleset parsing, review, caching and modification."""

from datetime import datetime, timedelta
from typing import Any

import pytest

from backend.docpipe.db.inmemory import InMemoryRulesetRepository
from backend.docpipe.models.common import UpdateType
from backend.docpipe.models.enrichment import (
    ChangeContext,
    DuplicationWarning,
    Enrichment,
    RelatedDoc,
    SourceAnalysis,
    StyleAnalysis,
)
from backend.docpipe.models.pipeline import Proposal
from backend.docpipe.models.ruleset import (
    ChangePercentageGate,
    ContainsPattern,
    MessageCountGate,
    OverlapThreshold,
    ParsedRuleset,
    PendingProposalsGate,
    SimilarityThreshold,
    StyleNotesGate,
    TechnicalDepthGate,
)
from backend.docpipe.prompts.registry import PromptRegistry
from backend.docpipe.review.cache import RulesetCache
from backend.docpipe.review.engine import RulesetReviewEngine
from backend.docpipe.review.modifier import ReviewModifier, summarize_enrichment
from backend.docpipe.review.parser import DEFAULT_RULESET_TEMPLATE, parse_ruleset

RULESET = """# Rules

## PROMPT_CONTEXT
<!-- injected into generation -->
- Prefer short sentences
* Mention the version

## Review Modifications
1. Match the target page format

## REJECTION_RULES
- If duplicationWarning.overlapPercentage > 70%, reject as duplicate
- Reject proposals mentioning "delete all docs"
- If any similarityScore > 0.9, reject as already documented
- Something the engine cannot understand

## QUALITY_GATES
- If styleAnalysis.consistencyNotes is not empty, flag for style review
- If changePercentage > 40%, flag as significant change
- If otherPendingProposals > 0, flag for coordination review
- If messageCount < 3, flag as limited evidence
- If technicalDepth mismatch, flag for depth review

## Unknown Section
- ignored
"""


def proposal(text: str = "Set retry_limit to 5.", page: str = "docs/sync.md") -> Proposal:
    return Proposal(update_type=UpdateType.UPDATE, page=page, suggested_text=text)


class TestParseRuleset:
    def test_sections_and_bullets(self) -> None:
        parsed = parse_ruleset(RULESET)

        assert parsed.prompt_context == ["Prefer short sentences", "Mention the version"]
        assert parsed.review_modifications == ["Match the target page format"]
        assert len(parsed.rejection_rules) == 4
        assert len(parsed.quality_gates) == 5

    def test_rules_compiled_once(self) -> None:
        parsed = parse_ruleset(RULESET)

        overlap, contains, similarity = parsed.compiled_rejection_rules
        assert isinstance(overlap, OverlapThreshold) and overlap.threshold == 70
        assert isinstance(contains, ContainsPattern) and contains.pattern == "delete all docs"
        assert isinstance(similarity, SimilarityThreshold) and similarity.threshold == 0.9

        assert [type(g) for g in parsed.compiled_quality_gates] == [
            StyleNotesGate,
            ChangePercentageGate,
            PendingProposalsGate,
            MessageCountGate,
            TechnicalDepthGate,
        ]
        assert parsed.compiled_quality_gates[1].threshold == 40  # type: ignore[union-attr]
        assert parsed.compiled_quality_gates[3].threshold == 3  # type: ignore[union-attr]

    def test_empty_and_default_template(self) -> None:
        assert parse_ruleset("").is_empty
        default = parse_ruleset(DEFAULT_RULESET_TEMPLATE)
        assert not default.is_empty
        assert default.compiled_rejection_rules[0].threshold == 80  # type: ignore[union-attr]

    def test_roundtrips_through_json(self) -> None:
        parsed = parse_ruleset(RULESET)
        assert ParsedRuleset.model_validate_json(parsed.model_dump_json()) == parsed


class TestRulesetReviewEngine:
    engine = RulesetReviewEngine()

    def test_contains_pattern_rejects_with_rule_text(self) -> None:
        ruleset = parse_ruleset(RULESET)

        result = self.engine.review(
            ruleset, proposal("Step 3: Delete All Docs and start over"), Enrichment()
        )

        assert result.rejected
        assert result.rejection_reason == 'Content matches rejection pattern: "delete all docs"'
        assert result.rejection_rule_text == 'Reject proposals mentioning "delete all docs"'

    def test_first_matching_rule_wins(self) -> None:
        ruleset = parse_ruleset(RULESET)
        enrichment = Enrichment(
            duplication_warning=DuplicationWarning(
                detected=True, overlap_percentage=90, matching_page="docs/sync.md"
            ),
            related_docs=[
                RelatedDoc(page="docs/sync.md", similarity_score=0.95, match_type="same-section")
            ],
        )

        result = self.engine.review(ruleset, proposal(), enrichment)

        assert result.rejection_reason == (
            "Duplicate content detected: 90% overlap with docs/sync.md"
        )

    def test_overlap_threshold_is_strict(self) -> None:
        ruleset = parse_ruleset(
            "## REJECTION_RULES\n- If duplicationWarning.overlapPercentage > 80%, reject\n"
        )
        at_threshold = Enrichment(
            duplication_warning=DuplicationWarning(detected=True, overlap_percentage=80)
        )
        assert not self.engine.review(ruleset, proposal(), at_threshold).rejected

    def test_similarity_threshold(self) -> None:
        ruleset = parse_ruleset(RULESET)
        enrichment = Enrichment(
            related_docs=[
                RelatedDoc(page="docs/other.md", similarity_score=0.93, match_type="semantic")
            ]
        )

        result = self.engine.review(ruleset, proposal(), enrichment)

        assert result.rejection_reason == (
            "High similarity with existing doc: 93% match with docs/other.md"
        )

    def test_quality_gates_flag_without_rejecting(self) -> None:
        ruleset = parse_ruleset(RULESET)
        enrichment = Enrichment(
            style_analysis=StyleAnalysis(
                consistency_notes=[
                    "Technical depth mismatch: target is beginner, proposal is advanced"
                ]
            ),
            change_context=ChangeContext(change_percentage=60, other_pending_proposals=2),
            source_analysis=SourceAnalysis(message_count=1),
        )

        result = self.engine.review(ruleset, proposal(), enrichment)

        assert not result.rejected
        assert result.quality_flags == [
            "Style review: Technical depth mismatch: target is beginner, proposal is advanced",
            "Significant change: 60% modification",
            "Coordination needed: 2 other pending proposals",
            "Limited evidence: only 1 messages",
            "Technical depth mismatch: target is beginner, proposal is advanced",
        ]
        assert result.original_content == "Set retry_limit to 5."

    def test_broken_rule_skipped(self, monkeypatch: pytest.MonkeyPatch) -> None:
        ruleset = parse_ruleset(RULESET)

        def explode(*args: Any) -> None:
            raise ValueError("boom")

        monkeypatch.setattr(self.engine, "evaluate_rejection", explode)

        result = self.engine.review(ruleset, proposal("delete all docs"), Enrichment())

        assert not result.rejected


class TestRulesetCache:
    @pytest.mark.asyncio
    async def test_ttl_and_version_aware_reload(self) -> None:
        repo = InMemoryRulesetRepository()
        v1 = datetime(2026, 3, 1, 12, 0)
        await repo.save_ruleset("acme", "## PROMPT_CONTEXT\n- one\n", updated_at=v1)

        now = [datetime(2026, 3, 1, 12, 0)]
        cache = RulesetCache(repo, ttl_seconds=60, clock=lambda: now[0])

        first = await cache.get("acme")
        assert first.version == v1
        assert first.ruleset.prompt_context == ["one"]

        # within TTL: no repository read
        await cache.get("acme")
        assert repo.load_count == 1

        # expired but unchanged: same parsed object
        now[0] += timedelta(seconds=61)
        again = await cache.get("acme")
        assert repo.load_count == 2
        assert again.ruleset is first.ruleset

        # updated ruleset is reparsed after expiry
        await repo.save_ruleset(
            "acme", "## PROMPT_CONTEXT\n- two\n", updated_at=v1 + timedelta(hours=1)
        )
        now[0] += timedelta(seconds=61)
        updated = await cache.get("acme")
        assert updated.ruleset.prompt_context == ["two"]

    @pytest.mark.asyncio
    async def test_missing_ruleset_is_empty(self) -> None:
        cache = RulesetCache(InMemoryRulesetRepository())

        snapshot = await cache.get("nobody")

        assert snapshot.version is None
        assert snapshot.ruleset.is_empty

    @pytest.mark.asyncio
    async def test_invalidate(self) -> None:
        repo = InMemoryRulesetRepository()
        cache = RulesetCache(repo, ttl_seconds=300)

        await cache.get("acme")
        cache.invalidate()
        await cache.get("acme")

        assert repo.load_count == 2


class TestReviewModifier:
    @pytest.mark.asyncio
    async def test_applies_modifications(self, scripted_llm: Any, prompts: PromptRegistry) -> None:
        ruleset = ParsedRuleset(review_modifications=["Use bullets"])
        scripted_llm.queue(
            "ruleset-modification",
            {
                "modified": True,
                "content": "- Set retry_limit to 5",
                "modifications_applied": ["bullets"],
            },
        )

        modified, applied = await ReviewModifier(scripted_llm, prompts, model="m").apply(
            ruleset, proposal(), Enrichment()
        )

        assert modified.suggested_text == "- Set retry_limit to 5"
        assert applied == ["bullets"]
        call = scripted_llm.calls[0]
        assert call.model == "m"
        assert "- Use bullets" in call.prompt.system + call.prompt.user

    @pytest.mark.asyncio
    async def test_no_rules_no_call(self, scripted_llm: Any, prompts: PromptRegistry) -> None:
        original = proposal()

        modified, applied = await ReviewModifier(scripted_llm, prompts).apply(
            ParsedRuleset(), original, Enrichment()
        )

        assert modified is original
        assert applied == []
        assert scripted_llm.calls == []

    @pytest.mark.asyncio
    async def test_failure_keeps_original(self, scripted_llm: Any, prompts: PromptRegistry) -> None:
        scripted_llm.queue("ruleset-modification", RuntimeError("timeout"))
        original = proposal()

        modified, applied = await ReviewModifier(scripted_llm, prompts).apply(
            ParsedRuleset(review_modifications=["x"]), original, Enrichment()
        )

        assert modified is original
        assert applied == []

    def test_summarize_enrichment(self) -> None:
        summary = summarize_enrichment(
            Enrichment(
                duplication_warning=DuplicationWarning(
                    detected=True, overlap_percentage=55, matching_page="docs/a.md"
                )
            )
        )
        assert "- Duplication: detected (55% overlap with docs/a.md)" in summary
        assert "- Related docs: none" in summary
