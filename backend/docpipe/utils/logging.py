"""Structured logging for pipeline and batch execution."""

import logging
from typing import Any

logger = logging.getLogger(__name__)


class StructuredPipelineLogger:
    """Structured logger for step attempts, batch windows and review decisions."""

    def log_step_attempt(
        self,
        batch_id: str,
        step_id: str,
        attempt: int,
        outcome: str,
        latency_ms: float,
        error_reason: str | None = None,
    ) -> None:
        """Log one pipeline step attempt."""
        log_data: dict[str, Any] = {
            "batch_id": batch_id,
            "step": step_id,
            "attempt": attempt,
            "outcome": outcome,
            "latency_ms": round(latency_ms, 2),
        }

        if error_reason:
            log_data["error_reason"] = error_reason

        log_msg = f"Pipeline step: {step_id} - {outcome}"

        if outcome in ("success", "skipped"):
            logger.info(log_msg, extra={"structured": log_data})
        else:
            logger.warning(log_msg, extra={"structured": log_data})

    def log_window(
        self,
        stream_id: str,
        batch_id: str,
        event: str,
        *,
        message_count: int = 0,
        window_start: str | None = None,
        window_end: str | None = None,
    ) -> None:
        """Log a batch window lifecycle event (started/advanced/held/skipped)."""
        log_data: dict[str, Any] = {
            "stream_id": stream_id,
            "batch_id": batch_id,
            "event": event,
            "message_count": message_count,
            "window_start": window_start,
            "window_end": window_end,
        }

        log_msg = f"Batch window {batch_id}: {event}"

        if event == "held":
            logger.warning(log_msg, extra={"structured": log_data})
        else:
            logger.info(log_msg, extra={"structured": log_data})

    def log_review(
        self,
        thread_id: str,
        page: str,
        rejected: bool,
        *,
        reason: str | None = None,
        quality_flags: list[str] | None = None,
    ) -> None:
        """Log the ruleset review decision for one proposal."""
        log_data: dict[str, Any] = {
            "thread_id": thread_id,
            "page": page,
            "rejected": rejected,
            "quality_flags": quality_flags or [],
        }

        if reason:
            log_data["rejection_reason"] = reason

        outcome = "rejected" if rejected else "accepted"
        logger.info(f"Proposal review: {page} - {outcome}", extra={"structured": log_data})
