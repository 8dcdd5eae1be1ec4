"""Suggested-text cleanup for generated proposals.

Markdown targets get simple HTML-to-markdown conversion, whitespace
normalization and an unterminated code fence closed. HTML that has no
simple markdown equivalent is left in place and reported as a warning.
"""

import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

MARKDOWN_EXTENSIONS = {"md", "mdx", "markdown"}

_FENCE_BLOCK = re.compile(r"(^```.*?^```[^\n]*$)", re.MULTILINE | re.DOTALL)
_FENCE_LINE = re.compile(r"^```", re.MULTILINE)
_TRAILING_WS = re.compile(r"[ \t]+$", re.MULTILINE)
_BLANK_RUN = re.compile(r"\n{3,}")
_REMAINING_TAG = re.compile(r"</?([a-z][a-z0-9]*)(?:\s[^>]*)?/?>", re.IGNORECASE)


def _heading(match: re.Match[str]) -> str:
    return f"\n{'#' * int(match.group(1))} {match.group(2).strip()}\n"


_HTML_CONVERSIONS: list[tuple[re.Pattern[str], str | Callable[[re.Match[str]], str]]] = [
    (re.compile(r"<br\s*/?>", re.IGNORECASE), "\n"),
    (re.compile(r"<h([1-6])[^>]*>(.*?)</h\1>", re.IGNORECASE | re.DOTALL), _heading),
    (re.compile(r"<(strong|b)>(.*?)</\1>", re.IGNORECASE | re.DOTALL), r"**\2**"),
    (re.compile(r"<(em|i)>(.*?)</\1>", re.IGNORECASE | re.DOTALL), r"*\2*"),
    (re.compile(r"<code>(.*?)</code>", re.IGNORECASE | re.DOTALL), r"`\1`"),
    (
        re.compile(r"<a\s+[^>]*href=[\"']([^\"']+)[\"'][^>]*>(.*?)</a>", re.IGNORECASE | re.DOTALL),
        r"[\2](\1)",
    ),
    (re.compile(r"<li[^>]*>(.*?)</li>", re.IGNORECASE | re.DOTALL), r"- \1\n"),
    (re.compile(r"</?(ul|ol)[^>]*>", re.IGNORECASE), "\n"),
    (re.compile(r"</?p[^>]*>", re.IGNORECASE), "\n"),
]

_COMPLEX_HTML: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(r"<table[\s\S]*?</table>", re.IGNORECASE),
        "Contains HTML table - manual conversion to markdown table may be needed",
    ),
    (re.compile(r"<svg[\s\S]*?</svg>", re.IGNORECASE), "Contains SVG element - needs manual review"),
    (re.compile(r"<iframe[\s\S]*?</iframe>", re.IGNORECASE), "Contains iframe - needs manual review"),
    (
        re.compile(r"<script[\s\S]*?</script>", re.IGNORECASE),
        "Contains script tag - should be removed or converted",
    ),
    (re.compile(r"<style[\s\S]*?</style>", re.IGNORECASE), "Contains style tag - should be removed"),
    (re.compile(r"style=[\"'][^\"']+[\"']", re.IGNORECASE), "Contains inline styles - may need cleanup"),
    (re.compile(r"<form[\s\S]*?</form>", re.IGNORECASE), "Contains form element - needs manual review"),
    (re.compile(r"<sub[^>]*>.*?</sub>", re.IGNORECASE), "Contains subscript - no markdown equivalent"),
    (re.compile(r"<sup[^>]*>.*?</sup>", re.IGNORECASE), "Contains superscript - no markdown equivalent"),
]


@dataclass
class PostProcessResult:
    """Cleaned text plus warnings for manual review."""

    text: str
    warnings: list[str] = field(default_factory=list)
    was_modified: bool = False


def is_markdown_file(path: str) -> bool:
    return path.lower().rsplit(".", 1)[-1] in MARKDOWN_EXTENSIONS


def close_unterminated_fence(text: str) -> str:
    """Append a closing ``` when the text has an odd number of fence lines."""
    if len(_FENCE_LINE.findall(text)) % 2 == 1:
        return text.rstrip("\n") + "\n```"
    return text


def convert_html_to_markdown(text: str) -> str:
    """Convert simple inline and block HTML outside fenced code blocks."""
    return _map_prose(text, _convert_prose)


def detect_complex_html(text: str) -> list[str]:
    """Warnings for HTML outside code blocks that needs manual conversion."""
    prose = "\n".join(part for part, is_code in _split_code(text) if not is_code)
    warnings = [message for pattern, message in _COMPLEX_HTML if pattern.search(prose)]

    tags = sorted({match.group(1).lower() for match in _REMAINING_TAG.finditer(prose)})
    if tags:
        warnings.append(f"Contains unconverted HTML elements: {', '.join(tags)}")
    return warnings


def normalize_whitespace(text: str) -> str:
    """Strip trailing spaces per line and collapse runs of blank lines."""
    text = _TRAILING_WS.sub("", text)
    return _BLANK_RUN.sub("\n\n", text).strip("\n")


def post_process_proposal(text: str | None, page: str) -> PostProcessResult:
    """Clean a proposal's suggested text for its target page.

    Args:
        text: Suggested text from the LLM
        page: Target file path; only markdown pages are rewritten

    Returns:
        PostProcessResult with cleaned text and warnings
    """
    if not text:
        return PostProcessResult(text="")

    if not is_markdown_file(page):
        return PostProcessResult(text=text)

    cleaned = close_unterminated_fence(text)
    cleaned = convert_html_to_markdown(cleaned)
    cleaned = normalize_whitespace(cleaned)
    warnings = detect_complex_html(cleaned)

    modified = cleaned != text
    if modified:
        logger.debug(f"Post-processing modified suggested text for {page}")
    return PostProcessResult(text=cleaned, warnings=warnings, was_modified=modified)


def _split_code(text: str) -> list[tuple[str, bool]]:
    parts: list[tuple[str, bool]] = []
    for i, part in enumerate(_FENCE_BLOCK.split(text)):
        if part:
            parts.append((part, i % 2 == 1))
    return parts


def _map_prose(text: str, fn: Callable[[str], str]) -> str:
    return "".join(part if is_code else fn(part) for part, is_code in _split_code(text))


def _convert_prose(text: str) -> str:
    for pattern, replacement in _HTML_CONVERSIONS:
        text = pattern.sub(replacement, text)
    return text
