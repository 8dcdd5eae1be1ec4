"""Text heuristics used by proposal enrichment."""

import re

from backend.docpipe.models.enrichment import FormatPattern, StyleMetrics, TechnicalDepth

ADVANCED_TERMS = (
    "algorithm",
    "complexity",
    "optimization",
    "architecture",
    "implementation details",
    "low-level",
    "internals",
    "bytecode",
    "assembly",
    "kernel",
    "syscall",
)

BEGINNER_TERMS = (
    "getting started",
    "introduction",
    "basic",
    "simple",
    "beginner",
    "first steps",
    "tutorial",
    "learn",
)

_SENTENCE_SPLIT = re.compile(r"[.!?]+")
_FENCED_CODE = re.compile(r"```[\s\S]*?```")
_INLINE_CODE = re.compile(r"`[^`]+`")
_CODE_KEYWORDS = re.compile(r"\b(function|const|let|var|import|export|class|def|return)\b")
_BULLET_LINE = re.compile(r"^\s*[-*•]\s", re.MULTILINE)
_NUMBERED_LINE = re.compile(r"^\s*\d+\.\s", re.MULTILINE)


def avg_sentence_length(text: str) -> int:
    """Average words per sentence, rounded."""
    if not text or not text.strip():
        return 0

    sentences = [s for s in _SENTENCE_SPLIT.split(text) if s.strip()]
    if not sentences:
        return 0

    total_words = sum(len(s.split()) for s in sentences)
    return round(total_words / len(sentences))


def has_code_examples(text: str) -> bool:
    """Detect fenced blocks, inline code, or common code keywords."""
    if not text:
        return False
    return bool(
        _FENCED_CODE.search(text) or _INLINE_CODE.search(text) or _CODE_KEYWORDS.search(text)
    )


def detect_format_pattern(text: str) -> FormatPattern:
    """Classify text as prose, bullets, or a mix of lists and paragraphs."""
    has_list = bool(_BULLET_LINE.search(text) or _NUMBERED_LINE.search(text))
    has_paragraphs = "\n\n" in text

    if has_list and has_paragraphs:
        return "mixed"
    if has_list:
        return "bullets"
    return "prose"


def estimate_technical_depth(text: str) -> TechnicalDepth:
    """Estimate depth by counting advanced vs beginner vocabulary."""
    lower = text.lower()
    advanced = sum(1 for term in ADVANCED_TERMS if term in lower)
    beginner = sum(1 for term in BEGINNER_TERMS if term in lower)

    if advanced > 2:
        return "advanced"
    if beginner > 2:
        return "beginner"
    return "intermediate"


def style_metrics(text: str) -> StyleMetrics:
    """Compute the full style profile of a text."""
    return StyleMetrics(
        avg_sentence_length=avg_sentence_length(text),
        uses_code_examples=has_code_examples(text),
        format_pattern=detect_format_pattern(text),
        technical_depth=estimate_technical_depth(text),
    )


def ngram_overlap(text1: str, text2: str, n: int = 3) -> int:
    """Percentage of shared word n-grams relative to the smaller n-gram set."""
    if not text1 or not text2:
        return 0

    ngrams1 = _ngrams(text1, n)
    ngrams2 = _ngrams(text2, n)

    if not ngrams1 or not ngrams2:
        return 0

    overlap = len(ngrams1 & ngrams2)
    return round(overlap / min(len(ngrams1), len(ngrams2)) * 100)


def _ngrams(text: str, n: int) -> set[str]:
    words = text.lower().split()
    return {" ".join(words[i : i + n]) for i in range(len(words) - n + 1)}
