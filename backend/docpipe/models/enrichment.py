"""Enrichment value objects attached to proposals before review."""

from typing import Literal

from pydantic import BaseModel, Field

MatchType = Literal["same-section", "semantic", "keyword"]
FormatPattern = Literal["prose", "bullets", "mixed"]
TechnicalDepth = Literal["beginner", "intermediate", "advanced"]


class RelatedDoc(BaseModel):
    """Reference document related to a proposal."""

    page: str
    section: str | None = None
    similarity_score: float
    match_type: MatchType
    snippet: str = ""


class DuplicationWarning(BaseModel):
    """Overlap between proposed text and existing docs."""

    detected: bool = False
    overlap_percentage: int = 0
    matching_page: str | None = None
    matching_section: str | None = None


class StyleMetrics(BaseModel):
    """Heuristic style profile of a text."""

    avg_sentence_length: int = 0
    uses_code_examples: bool = False
    format_pattern: FormatPattern = "prose"
    technical_depth: TechnicalDepth = "intermediate"


class StyleAnalysis(BaseModel):
    """Style of target page vs proposal, plus divergence notes."""

    target_page_style: StyleMetrics = Field(default_factory=StyleMetrics)
    proposal_style: StyleMetrics = Field(default_factory=StyleMetrics)
    consistency_notes: list[str] = Field(default_factory=list)


class ChangeContext(BaseModel):
    """Size of the change and coordination signal."""

    target_section_char_count: int = 0
    proposal_char_count: int = 0
    change_percentage: int = 0
    other_pending_proposals: int = 0


class SourceAnalysis(BaseModel):
    """Quality of the conversation that produced the proposal."""

    message_count: int = 0
    unique_authors: int = 0
    thread_had_consensus: bool = False
    conversation_summary: str = ""


class Enrichment(BaseModel):
    """All computed metadata for one proposal."""

    related_docs: list[RelatedDoc] = Field(default_factory=list)
    duplication_warning: DuplicationWarning = Field(default_factory=DuplicationWarning)
    style_analysis: StyleAnalysis = Field(default_factory=StyleAnalysis)
    change_context: ChangeContext = Field(default_factory=ChangeContext)
    source_analysis: SourceAnalysis = Field(default_factory=SourceAnalysis)
