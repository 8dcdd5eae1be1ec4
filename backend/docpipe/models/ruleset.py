"""Ruleset models - parsed sections, compiled rule variants, review results."""

from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, Field


class OverlapThreshold(BaseModel):
    """Reject when detected duplication overlap exceeds a percentage."""

    kind: Literal["overlap_threshold"] = "overlap_threshold"
    text: str
    threshold: int = 80


class SimilarityThreshold(BaseModel):
    """Reject when any related doc similarity exceeds a score."""

    kind: Literal["similarity_threshold"] = "similarity_threshold"
    text: str
    threshold: float = 0.85


class ContainsPattern(BaseModel):
    """Reject when proposed text contains a literal pattern (case-insensitive)."""

    kind: Literal["contains_pattern"] = "contains_pattern"
    text: str
    pattern: str


RejectionRule = Annotated[
    OverlapThreshold | SimilarityThreshold | ContainsPattern, Field(discriminator="kind")
]


class StyleNotesGate(BaseModel):
    kind: Literal["style_notes"] = "style_notes"
    text: str


class ChangePercentageGate(BaseModel):
    kind: Literal["change_percentage"] = "change_percentage"
    text: str
    threshold: int = 50


class PendingProposalsGate(BaseModel):
    kind: Literal["pending_proposals"] = "pending_proposals"
    text: str


class MessageCountGate(BaseModel):
    kind: Literal["message_count"] = "message_count"
    text: str
    threshold: int = 2


class TechnicalDepthGate(BaseModel):
    kind: Literal["technical_depth"] = "technical_depth"
    text: str


QualityGate = Annotated[
    StyleNotesGate
    | ChangePercentageGate
    | PendingProposalsGate
    | MessageCountGate
    | TechnicalDepthGate,
    Field(discriminator="kind"),
]


class ParsedRuleset(BaseModel):
    """Tenant ruleset split into sections, with rules compiled once."""

    prompt_context: list[str] = Field(default_factory=list)
    review_modifications: list[str] = Field(default_factory=list)
    rejection_rules: list[str] = Field(default_factory=list)
    quality_gates: list[str] = Field(default_factory=list)
    compiled_rejection_rules: list[RejectionRule] = Field(default_factory=list)
    compiled_quality_gates: list[QualityGate] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (
            self.prompt_context
            or self.review_modifications
            or self.rejection_rules
            or self.quality_gates
        )


class TenantRuleset(BaseModel):
    """Stored ruleset text with its version timestamp."""

    tenant_id: str
    content: str
    updated_at: datetime


class ReviewResult(BaseModel):
    """Outcome of applying a ruleset to one proposal."""

    rejected: bool = False
    rejection_reason: str | None = None
    rejection_rule_text: str | None = None
    quality_flags: list[str] = Field(default_factory=list)
    modifications_applied: list[str] = Field(default_factory=list)
    original_content: str | None = None
