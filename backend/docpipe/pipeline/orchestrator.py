"""Pipeline orchestrator - runs configured steps with retries.

Each step runs against a snapshot of the context. The snapshot is adopted
only when the step succeeds; a step that exhausts its retries leaves the
context exactly as it was before the step.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable

from backend.docpipe.db.repositories import RunLogRepository
from backend.docpipe.models.common import NO_DOC_VALUE, StepStatus
from backend.docpipe.models.config import PipelineConfig
from backend.docpipe.models.pipeline import PipelineError, PipelineResult, StepLog
from backend.docpipe.pipeline.context import PipelineContext
from backend.docpipe.pipeline.steps.base import PipelineStep
from backend.docpipe.utils.logging import StructuredPipelineLogger
from backend.docpipe.utils.metrics import PrometheusPipelineMetrics

logger = logging.getLogger(__name__)


class PipelineOrchestrator:
    """Executes steps in order and collects step logs, errors and metrics."""

    def __init__(
        self,
        config: PipelineConfig,
        steps: list[PipelineStep],
        *,
        sleep_fn: Callable[[float], Awaitable[None]] | None = None,
        structured_logger: StructuredPipelineLogger | None = None,
        metrics: PrometheusPipelineMetrics | None = None,
        run_log: RunLogRepository | None = None,
        instance_id: str = "default",
    ) -> None:
        """Initialize orchestrator.

        Args:
            config: Pipeline config (error handling policy, pipeline id)
            steps: Steps in execution order
            sleep_fn: Injectable async sleep taking seconds (default: asyncio.sleep)
            structured_logger: Step attempt logger (optional)
            metrics: Metrics recorder (optional)
            run_log: Run log storage (optional; failures there are never fatal)
            instance_id: Tenant/instance id recorded in run logs
        """
        self._config = config
        self._steps = list(steps)
        self._sleep = sleep_fn or asyncio.sleep
        self._log = structured_logger or StructuredPipelineLogger()
        self._metrics = metrics or PrometheusPipelineMetrics()
        self._run_log = run_log
        self._instance_id = instance_id

    @property
    def steps(self) -> list[PipelineStep]:
        return list(self._steps)

    async def execute(self, context: PipelineContext) -> PipelineResult:
        """Run all steps against ``context``.

        Returns:
            PipelineResult built from the final adopted context
        """
        started = time.monotonic()
        run_id = await self._start_run(context)

        errors: list[PipelineError] = []
        step_logs: list[StepLog] = []

        for step in self._steps:
            input_count = step.input_count(context) if step.enabled else 0
            if not step.enabled or input_count == 0:
                step_logs.append(
                    StepLog(step_id=step.step_id, step_type=step.step_type, status=StepStatus.SKIPPED)
                )
                self._log.log_step_attempt(context.batch_id, step.step_id, 0, "skipped", 0.0)
                continue

            context, step_log = await self._run_step(step, context, input_count)
            step_logs.append(step_log)
            context.metrics.step_durations[step.step_id] = step_log.duration_ms

            if step_log.status == StepStatus.FAILED:
                errors.append(
                    PipelineError(
                        step_id=step.step_id,
                        message=f"Step execution failed: {step_log.error}",
                    )
                )
                if self._config.error_handling.stop_on_error:
                    logger.error(f"Stopping pipeline after {step.step_id} failed (stop_on_error)")
                    break

        context.metrics.total_duration_ms = int((time.monotonic() - started) * 1000)

        has_output = any(context.proposals.values()) or any(
            t.category == NO_DOC_VALUE for t in context.threads
        )
        result = PipelineResult(
            success=not errors and has_output,
            threads=context.threads,
            rag_results=context.rag_results,
            proposals=context.proposals,
            errors=errors,
            metrics=context.metrics,
            step_logs=step_logs,
        )

        await self._finish_run(run_id, result)
        logger.info(f"Pipeline finished for batch {context.batch_id}: {result.summary()}")
        return result

    async def _run_step(
        self, step: PipelineStep, context: PipelineContext, input_count: int
    ) -> tuple[PipelineContext, StepLog]:
        policy = self._config.error_handling
        started = time.monotonic()
        last_error: Exception | None = None
        attempts = 0

        for attempt in range(policy.retry_attempts + 1):
            attempts = attempt + 1
            attempt_start = time.monotonic()
            attempt_context = context.snapshot()
            try:
                updated = await step.execute(attempt_context)
            except Exception as e:
                last_error = e
                # LLM usage of a discarded attempt still counts
                self._keep_llm_usage(context, attempt_context)
                elapsed_ms = (time.monotonic() - attempt_start) * 1000
                reason = type(e).__name__
                self._metrics.record_step(step.step_id, "error", elapsed_ms)
                self._metrics.inc_step_error(step.step_id, reason)
                self._log.log_step_attempt(
                    context.batch_id, step.step_id, attempts, "error", elapsed_ms, str(e)
                )

                if attempt < policy.retry_attempts:
                    delay_ms = policy.retry_delay_ms * (policy.backoff_multiplier**attempt)
                    logger.warning(
                        f"Step {step.step_id} failed, retrying in {delay_ms:.0f}ms "
                        f"(attempt {attempts}/{policy.retry_attempts + 1})"
                    )
                    await self._sleep(delay_ms / 1000)
                continue

            elapsed_ms = (time.monotonic() - attempt_start) * 1000
            self._metrics.record_step(step.step_id, "success", elapsed_ms)
            self._log.log_step_attempt(context.batch_id, step.step_id, attempts, "success", elapsed_ms)
            return updated, StepLog(
                step_id=step.step_id,
                step_type=step.step_type,
                status=StepStatus.SUCCEEDED,
                duration_ms=int((time.monotonic() - started) * 1000),
                input_count=input_count,
                output_count=step.output_count(updated),
                attempts=attempts,
            )

        logger.error(f"Step {step.step_id} failed after {attempts} attempts: {last_error}")
        return context, StepLog(
            step_id=step.step_id,
            step_type=step.step_type,
            status=StepStatus.FAILED,
            duration_ms=int((time.monotonic() - started) * 1000),
            input_count=input_count,
            attempts=attempts,
            error=str(last_error),
        )

    @staticmethod
    def _keep_llm_usage(context: PipelineContext, attempt: PipelineContext) -> None:
        context.metrics.llm_calls = attempt.metrics.llm_calls
        context.metrics.llm_tokens_used = attempt.metrics.llm_tokens_used

    async def _start_run(self, context: PipelineContext) -> int | None:
        if self._run_log is None:
            return None
        try:
            return await self._run_log.start_run(
                self._instance_id,
                context.batch_id,
                self._config.pipeline_id,
                len(context.messages),
            )
        except Exception as e:
            logger.warning(f"Failed to create pipeline run log for {context.batch_id}: {e}")
            return None

    async def _finish_run(self, run_id: int | None, result: PipelineResult) -> None:
        if self._run_log is None or run_id is None:
            return
        try:
            await self._run_log.finish_run(
                run_id,
                status="completed" if result.success else "failed",
                steps=[log.model_dump(mode="json") for log in result.step_logs],
                output_threads=len(result.threads),
                output_proposals=result.proposal_count,
                total_duration_ms=result.metrics.total_duration_ms,
                llm_calls=result.metrics.llm_calls,
                llm_tokens_used=result.metrics.llm_tokens_used,
                error_message="; ".join(e.message for e in result.errors) or None,
            )
        except Exception as e:
            logger.warning(f"Failed to update pipeline run log {run_id}: {e}")
