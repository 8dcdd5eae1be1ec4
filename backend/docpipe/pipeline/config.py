"""Pipeline and domain configuration loading (JSON or YAML files)."""

import json
import logging
from pathlib import Path
from typing import Any, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from backend.docpipe.config import Settings
from backend.docpipe.models.config import (
    DEFAULT_DOMAIN_CONFIG,
    DEFAULT_PIPELINE_CONFIG,
    DomainConfig,
    ErrorHandlingConfig,
    PipelineConfig,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


class ConfigurationError(Exception):
    """Pipeline or domain configuration is invalid."""

    pass


def load_pipeline_config(
    path: str | Path | None = None, settings: Settings | None = None
) -> PipelineConfig:
    """Load pipeline config, falling back to defaults.

    A file may override any subset of fields. A "steps" list in the file
    defines step order; entries whose step_id matches a default are merged
    onto that default. Error-handling values from settings apply when the
    file does not set them.

    Raises:
        ConfigurationError: If the file cannot be read or validated
    """
    base = DEFAULT_PIPELINE_CONFIG.model_dump(mode="json")

    if settings is not None:
        base["error_handling"] = ErrorHandlingConfig(
            stop_on_error=settings.stop_on_error,
            retry_attempts=settings.retry_attempts,
            retry_delay_ms=settings.retry_delay_ms,
            backoff_multiplier=settings.retry_backoff_multiplier,
        ).model_dump(mode="json")
        for step in base["steps"]:
            if step["step_type"] == "enrich":
                step["config"].update(
                    {"top_k": settings.rag_top_k, "min_similarity": settings.rag_min_similarity}
                )

    if path is None:
        return _validate(PipelineConfig, base, "default pipeline config")

    override = _read_file(Path(path))
    steps_override = override.pop("steps", None)
    merged = deep_merge(base, override)
    if steps_override is not None:
        if not isinstance(steps_override, list) or not all(
            isinstance(step, dict) for step in steps_override
        ):
            raise ConfigurationError(f'"steps" in {path} must be a list of mappings')
        merged["steps"] = _merge_steps(base["steps"], steps_override)

    return _validate(PipelineConfig, merged, str(path))


def load_domain_config(path: str | Path | None = None) -> DomainConfig:
    """Load domain config, falling back to defaults.

    Raises:
        ConfigurationError: If the file cannot be read or validated
    """
    if path is None:
        return DEFAULT_DOMAIN_CONFIG.model_copy(deep=True)

    base = DEFAULT_DOMAIN_CONFIG.model_dump(mode="json")
    override = _read_file(Path(path))
    merged = deep_merge(base, override)
    # Categories replace rather than merge
    if "categories" in override:
        merged["categories"] = override["categories"]
    return _validate(DomainConfig, merged, str(path))


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``."""
    result = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _merge_steps(
    base_steps: list[dict[str, Any]], override_steps: list[dict[str, Any]]
) -> list[dict[str, Any]]:
    by_id = {step["step_id"]: step for step in base_steps}
    merged: list[dict[str, Any]] = []
    for step in override_steps:
        step_id = step.get("step_id")
        if step_id in by_id:
            merged.append(deep_merge(by_id[step_id], step))
        else:
            merged.append(step)
    return merged


def _read_file(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Cannot read config file {path}") from e

    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(text) or {}
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot parse config file {path}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return data


def _validate(model: type[M], data: dict[str, Any], source: str) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration in {source}: {e}") from e
