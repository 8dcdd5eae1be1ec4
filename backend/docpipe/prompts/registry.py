"""Prompt registry - markdown templates with YAML frontmatter.

Template layout::

    ---
    id: thread-classification
    version: "1.0.0"
    metadata:
      required_variables: [messages_to_analyze, categories]
    ---
    # System Prompt
    ...
    # User Prompt
    ... {{messages_to_analyze}} ...
"""

import json
import logging
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

DEFAULT_TEMPLATES_DIR = Path(__file__).parent / "templates"

_VARIABLE = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_FRONTMATTER = re.compile(r"\A---\s*\n(.*?)\n---\s*\n?", re.DOTALL)
_SECTION = re.compile(r"^#\s+(System|User)\s+Prompt\s*$", re.MULTILINE | re.IGNORECASE)


class PromptNotFoundError(Exception):
    """Requested template id is not registered."""

    pass


class PromptRenderError(Exception):
    """Template file could not be parsed."""

    pass


class RenderedPrompt(BaseModel):
    """System and user prompt pair ready to send."""

    system: str
    user: str


class PromptTemplate(BaseModel):
    """Parsed prompt template."""

    id: str
    version: str = "1.0.0"
    description: str = ""
    required_variables: list[str] = Field(default_factory=list)
    system: str
    user: str
    source: str | None = None

    def variables(self) -> set[str]:
        """Variable names referenced in either section."""
        return set(_VARIABLE.findall(self.system)) | set(_VARIABLE.findall(self.user))


class TemplateValidation(BaseModel):
    """Mismatch between declared and used variables."""

    template_id: str
    undeclared: list[str] = Field(default_factory=list)
    unused: list[str] = Field(default_factory=list)

    @property
    def valid(self) -> bool:
        return not self.undeclared and not self.unused


def parse_template(text: str, source: str | None = None) -> PromptTemplate:
    """Parse one markdown template.

    Raises:
        PromptRenderError: Missing frontmatter, id, or prompt sections
    """
    match = _FRONTMATTER.match(text)
    if not match:
        raise PromptRenderError(f"Template {source or '<string>'} has no frontmatter")

    try:
        meta = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError as e:
        raise PromptRenderError(f"Invalid frontmatter in {source or '<string>'}") from e

    if not isinstance(meta, dict) or not meta.get("id"):
        raise PromptRenderError(f"Template {source or '<string>'} has no id")

    sections: dict[str, str] = {}
    body = text[match.end() :]
    headers = list(_SECTION.finditer(body))
    for i, header in enumerate(headers):
        end = headers[i + 1].start() if i + 1 < len(headers) else len(body)
        sections[header.group(1).lower()] = body[header.end() : end].strip()

    if "system" not in sections or "user" not in sections:
        raise PromptRenderError(
            f"Template {meta['id']} must define '# System Prompt' and '# User Prompt'"
        )

    metadata = meta.get("metadata") or {}
    return PromptTemplate(
        id=str(meta["id"]),
        version=str(meta.get("version", "1.0.0")),
        description=str(meta.get("description", "")),
        required_variables=list(metadata.get("required_variables") or []),
        system=sections["system"],
        user=sections["user"],
        source=source,
    )


class PromptRegistry:
    """Loads default templates and optional overrides, renders by id."""

    def __init__(
        self,
        defaults_dir: Path | str = DEFAULT_TEMPLATES_DIR,
        overrides_dir: Path | str | None = None,
    ) -> None:
        self._defaults_dir = Path(defaults_dir)
        self._overrides_dir = Path(overrides_dir) if overrides_dir else None
        self._templates: dict[str, PromptTemplate] = {}

    def load(self) -> "PromptRegistry":
        """Load defaults, then overrides (same id replaces the default).

        Raises:
            PromptRenderError: If the defaults directory is missing or a file is invalid
        """
        if not self._defaults_dir.is_dir():
            raise PromptRenderError(f"Prompt directory not found: {self._defaults_dir}")

        self._load_dir(self._defaults_dir)

        if self._overrides_dir is not None:
            if self._overrides_dir.is_dir():
                self._load_dir(self._overrides_dir)
            else:
                logger.warning(f"Prompt override directory not found: {self._overrides_dir}")

        logger.info(f"Loaded {len(self._templates)} prompt templates")
        return self

    def _load_dir(self, directory: Path) -> None:
        for path in sorted(directory.glob("*.md")):
            template = parse_template(path.read_text(encoding="utf-8"), source=str(path))
            if template.id in self._templates:
                logger.info(f"Prompt template {template.id} overridden by {path}")
            self._templates[template.id] = template

    def register(self, template: PromptTemplate) -> None:
        """Register or replace a template."""
        self._templates[template.id] = template

    def get(self, template_id: str) -> PromptTemplate:
        """Get a template by id.

        Raises:
            PromptNotFoundError: If no template has this id
        """
        template = self._templates.get(template_id)
        if template is None:
            raise PromptNotFoundError(f"Prompt template not found: {template_id}")
        return template

    def has(self, template_id: str) -> bool:
        return template_id in self._templates

    def list_templates(self) -> list[str]:
        """Registered template ids, sorted."""
        return sorted(self._templates)

    def render(self, template_id: str, variables: dict[str, Any]) -> RenderedPrompt:
        """Substitute ``{{name}}`` placeholders.

        Missing variables stay visible as ``{{name}}`` and are logged.

        Raises:
            PromptNotFoundError: If no template has this id
        """
        template = self.get(template_id)
        missing = sorted(template.variables() - set(variables))
        if missing:
            logger.warning(
                f"Prompt {template_id} rendered with missing variables: {', '.join(missing)}"
            )

        return RenderedPrompt(
            system=_substitute(template.system, variables),
            user=_substitute(template.user, variables),
        )

    def validate(self, template_id: str) -> TemplateValidation:
        """Compare declared required variables with the ones actually used."""
        template = self.get(template_id)
        used = template.variables()
        declared = set(template.required_variables)
        return TemplateValidation(
            template_id=template_id,
            undeclared=sorted(used - declared),
            unused=sorted(declared - used),
        )


def _substitute(text: str, variables: dict[str, Any]) -> str:
    def replace(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in variables:
            return match.group(0)
        return _format_value(variables[name])

    return _VARIABLE.sub(replace, text)


def _format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (list, dict)):
        return json.dumps(value, indent=2, default=str)
    return str(value)
