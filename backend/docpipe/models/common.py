"""Common types and helpers shared across all models."""

from datetime import datetime, timezone
from enum import Enum

NO_DOC_VALUE = "no-doc-value"


def utc_now() -> datetime:
    """Current UTC time as a naive datetime (matches stored timestamps)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_epoch_ms(value: datetime) -> int:
    """Convert a naive UTC datetime to epoch milliseconds."""
    return int(value.replace(tzinfo=timezone.utc).timestamp() * 1000)


class UpdateType(str, Enum):
    """Kind of documentation change."""

    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    NONE = "NONE"


class StepType(str, Enum):
    """Pipeline step kind."""

    FILTER = "filter"
    CLASSIFY = "classify"
    ENRICH = "enrich"
    GENERATE = "generate"
    VALIDATE = "validate"
    CONDENSE = "condense"


class StepStatus(str, Enum):
    """Per-step execution state."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
