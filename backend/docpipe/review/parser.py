"""Ruleset parser - splits tenant rule text into sections and compiles rules.

Rule lines keep their free-text authoring form; known phrase shapes are
compiled once into tagged rule variants. Lines matching no known shape
compile to nothing.
"""

import logging
import re

from pydantic import BaseModel

from backend.docpipe.models.ruleset import (
    ChangePercentageGate,
    ContainsPattern,
    MessageCountGate,
    OverlapThreshold,
    ParsedRuleset,
    PendingProposalsGate,
    QualityGate,
    RejectionRule,
    SimilarityThreshold,
    StyleNotesGate,
    TechnicalDepthGate,
)

logger = logging.getLogger(__name__)

SECTION_KEYS = {
    "prompt_context": "prompt_context",
    "review_modifications": "review_modifications",
    "rejection_rules": "rejection_rules",
    "quality_gates": "quality_gates",
}

_SECTION_SPLIT = re.compile(r"^## ", re.MULTILINE)
_HTML_COMMENT = re.compile(r"<!--[\s\S]*?-->")
_RULE_LINE = re.compile(r"^\s*(?:[-*•]|\d+\.)\s+(.+?)\s*$")

_GREATER_INT = re.compile(r">\s*(\d+)")
_GREATER_FLOAT = re.compile(r">\s*(\d*\.?\d+)")
_LESS_INT = re.compile(r"<\s*(\d+)")
_PENDING_ABOVE_ZERO = re.compile(r">\s*0\b")
_PATTERN_PHRASE = re.compile(r"(?:mentioning|containing)\s+[\"']?([^\"']+)[\"']?", re.IGNORECASE)

DEFAULT_OVERLAP_THRESHOLD = 80
DEFAULT_SIMILARITY_THRESHOLD = 0.85
DEFAULT_CHANGE_THRESHOLD = 50
DEFAULT_MESSAGE_COUNT_THRESHOLD = 2

DEFAULT_RULESET_TEMPLATE = """# Documentation Ruleset

## PROMPT_CONTEXT
<!-- Injected into changeset generation prompt -->
- Follow the existing documentation style and tone
- Use technical terminology appropriate for the target audience

## REVIEW_MODIFICATIONS
<!-- Applied to proposals after enrichment, can reference enrichment data -->
- If styleAnalysis shows formatPattern mismatch, adjust to match target page
- If avgSentenceLength differs by >50% from target, adjust for consistency

## REJECTION_RULES
<!-- Auto-reject proposals matching these criteria -->
- If duplicationWarning.overlapPercentage > 80%, reject as duplicate content

## QUALITY_GATES
<!-- Flag for reviewer attention without rejecting -->
- If styleAnalysis.consistencyNotes is not empty, flag for style review
- If changePercentage > 50%, flag as significant change
- If otherPendingProposals > 0, flag for coordination review
"""


def parse_ruleset(content: str) -> ParsedRuleset:
    """Parse ruleset text into sections and compile rejection/quality rules.

    Section headers are matched case-insensitively and accept either
    underscores or spaces (``## QUALITY_GATES`` or ``## Quality Gates``).
    Unknown sections are ignored.
    """
    sections: dict[str, list[str]] = {key: [] for key in SECTION_KEYS.values()}

    for chunk in _SECTION_SPLIT.split(content or "")[1:]:
        header, _, body = chunk.partition("\n")
        key = _normalize_header(header)
        if key not in SECTION_KEYS:
            logger.debug(f"Ignoring unknown ruleset section: {header.strip()}")
            continue
        sections[SECTION_KEYS[key]].extend(extract_rules(body))

    return ParsedRuleset(
        **sections,
        compiled_rejection_rules=compile_rejection_rules(sections["rejection_rules"]),
        compiled_quality_gates=compile_quality_gates(sections["quality_gates"]),
    )


def extract_rules(body: str) -> list[str]:
    """Bullet and numbered lines of a section, HTML comments removed."""
    rules: list[str] = []
    for line in _HTML_COMMENT.sub("", body).splitlines():
        match = _RULE_LINE.match(line)
        if match and match.group(1).strip():
            rules.append(match.group(1).strip())
    return rules


def compile_rejection_rules(lines: list[str]) -> list[RejectionRule]:
    """Compile rejection rule lines, keeping list order."""
    compiled: list[RejectionRule] = []
    for line in lines:
        rule = compile_rejection_rule(line)
        if rule is None:
            logger.debug(f"Rejection rule not recognized, ignoring: {line}")
            continue
        compiled.append(rule)
    return compiled


def compile_rejection_rule(line: str) -> RejectionRule | None:
    """Recognize one rejection rule shape."""
    lower = line.lower()

    if "duplicationwarning" in lower and "overlappercentage" in lower:
        return OverlapThreshold(
            text=line, threshold=_int_match(_GREATER_INT, lower, DEFAULT_OVERLAP_THRESHOLD)
        )

    if "similarityscore" in lower:
        match = _GREATER_FLOAT.search(lower)
        threshold = float(match.group(1)) if match else DEFAULT_SIMILARITY_THRESHOLD
        return SimilarityThreshold(text=line, threshold=threshold)

    if "proposals mentioning" in lower or "containing" in lower:
        match = _PATTERN_PHRASE.search(line)
        if match and match.group(1).strip():
            return ContainsPattern(text=line, pattern=match.group(1).strip())

    return None


def compile_quality_gates(lines: list[str]) -> list[QualityGate]:
    """Compile quality gate lines, keeping list order."""
    compiled: list[QualityGate] = []
    for line in lines:
        gate = compile_quality_gate(line)
        if gate is None:
            logger.debug(f"Quality gate not recognized, ignoring: {line}")
            continue
        compiled.append(gate)
    return compiled


def compile_quality_gate(line: str) -> QualityGate | None:
    """Recognize one quality gate shape."""
    lower = line.lower()

    if "consistencynotes" in lower and "not empty" in lower:
        return StyleNotesGate(text=line)

    if "changepercentage" in lower:
        return ChangePercentageGate(
            text=line, threshold=_int_match(_GREATER_INT, lower, DEFAULT_CHANGE_THRESHOLD)
        )

    if "otherpendingproposals" in lower and _PENDING_ABOVE_ZERO.search(lower):
        return PendingProposalsGate(text=line)

    if "messagecount" in lower:
        return MessageCountGate(
            text=line,
            threshold=_int_match(_LESS_INT, lower, DEFAULT_MESSAGE_COUNT_THRESHOLD),
        )

    if "technicaldepth" in lower and "mismatch" in lower:
        return TechnicalDepthGate(text=line)

    return None


def describe_rule(rule: BaseModel) -> str:
    """Short label for logging a compiled rule."""
    return f"{getattr(rule, 'kind', type(rule).__name__)}: {getattr(rule, 'text', '')}"


def _normalize_header(header: str) -> str:
    return re.sub(r"[\s_]+", "_", header.strip().lower())


def _int_match(pattern: re.Pattern[str], text: str, default: int) -> int:
    match = pattern.search(text)
    return int(match.group(1)) if match else default
