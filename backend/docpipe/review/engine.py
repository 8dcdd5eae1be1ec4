"""Ruleset review engine - applies compiled rejection rules and quality gates."""

import logging

from backend.docpipe.models.enrichment import Enrichment
from backend.docpipe.models.pipeline import Proposal
from backend.docpipe.models.ruleset import (
    ChangePercentageGate,
    ContainsPattern,
    MessageCountGate,
    OverlapThreshold,
    ParsedRuleset,
    PendingProposalsGate,
    QualityGate,
    RejectionRule,
    ReviewResult,
    SimilarityThreshold,
    StyleNotesGate,
    TechnicalDepthGate,
)
from backend.docpipe.review.parser import describe_rule

logger = logging.getLogger(__name__)


class RulesetReviewEngine:
    """Evaluates a parsed ruleset against a proposal and its enrichment.

    Rejection rules run in list order and the first match wins. Quality
    gates never reject and are all evaluated. Errors in a single rule are
    logged and the rule is skipped.
    """

    def review(
        self,
        ruleset: ParsedRuleset,
        proposal: Proposal,
        enrichment: Enrichment,
    ) -> ReviewResult:
        """Review one proposal.

        Args:
            ruleset: Parsed tenant ruleset
            proposal: Proposal under review
            enrichment: Enrichment computed for the proposal

        Returns:
            ReviewResult; rejection carries the matching rule's literal text
        """
        result = ReviewResult(original_content=proposal.suggested_text)

        for rule in ruleset.compiled_rejection_rules:
            try:
                reason = self.evaluate_rejection(rule, proposal, enrichment)
            except Exception:
                logger.exception(f"Rejection rule failed, skipping ({describe_rule(rule)})")
                continue
            if reason is not None:
                result.rejected = True
                result.rejection_reason = reason
                result.rejection_rule_text = rule.text
                break

        for gate in ruleset.compiled_quality_gates:
            try:
                flag = self.evaluate_gate(gate, enrichment)
            except Exception:
                logger.exception(f"Quality gate failed, skipping ({describe_rule(gate)})")
                continue
            if flag is not None:
                result.quality_flags.append(flag)

        return result

    def evaluate_rejection(
        self, rule: RejectionRule, proposal: Proposal, enrichment: Enrichment
    ) -> str | None:
        """Return a rejection reason if the rule matches, else None."""
        if isinstance(rule, OverlapThreshold):
            dup = enrichment.duplication_warning
            if dup.detected and dup.overlap_percentage > rule.threshold:
                return (
                    f"Duplicate content detected: {dup.overlap_percentage}% overlap "
                    f"with {dup.matching_page or 'existing docs'}"
                )
            return None

        if isinstance(rule, SimilarityThreshold):
            for doc in enrichment.related_docs:
                if doc.similarity_score > rule.threshold:
                    return (
                        f"High similarity with existing doc: "
                        f"{round(doc.similarity_score * 100)}% match with {doc.page}"
                    )
            return None

        if isinstance(rule, ContainsPattern):
            text = (proposal.suggested_text or "").lower()
            if rule.pattern.lower() in text:
                return f'Content matches rejection pattern: "{rule.pattern}"'
            return None

        return None

    def evaluate_gate(self, gate: QualityGate, enrichment: Enrichment) -> str | None:
        """Return a quality flag if the gate fires, else None."""
        if isinstance(gate, StyleNotesGate):
            notes = enrichment.style_analysis.consistency_notes
            return f"Style review: {'; '.join(notes)}" if notes else None

        if isinstance(gate, ChangePercentageGate):
            change = enrichment.change_context.change_percentage
            return f"Significant change: {change}% modification" if change > gate.threshold else None

        if isinstance(gate, PendingProposalsGate):
            pending = enrichment.change_context.other_pending_proposals
            return f"Coordination needed: {pending} other pending proposals" if pending > 0 else None

        if isinstance(gate, MessageCountGate):
            count = enrichment.source_analysis.message_count
            return f"Limited evidence: only {count} messages" if count < gate.threshold else None

        if isinstance(gate, TechnicalDepthGate):
            for note in enrichment.style_analysis.consistency_notes:
                if note.startswith("Technical depth mismatch"):
                    return note
            return None

        return None
