"""Batch message processor - top-level incremental processing loop.

For each stream with PENDING messages: compute the next window, run the
pipeline over chunks of the window, store results per thread, mark stored
messages COMPLETED and advance the watermark only when the whole window
succeeded. A failed window keeps its watermark and is retried next run.
"""

import asyncio
import logging
from collections.abc import Sequence

from backend.docpipe.batch.scheduler import BatchWindowScheduler
from backend.docpipe.batch.storage import PipelineResultWriter
from backend.docpipe.db.repositories import MessageRepository, ResultRepository
from backend.docpipe.models.common import StepStatus, StepType, to_epoch_ms
from backend.docpipe.models.messages import BatchWindow
from backend.docpipe.models.pipeline import PipelineResult
from backend.docpipe.pipeline.builder import BuiltPipeline, PipelineBuilder
from backend.docpipe.pipeline.context import PipelineContext
from backend.docpipe.review.cache import RulesetCache, RulesetSnapshot
from backend.docpipe.utils.logging import StructuredPipelineLogger
from backend.docpipe.utils.metrics import PrometheusBatchMetrics

logger = logging.getLogger(__name__)

# A failure in one of these steps leaves the window unusable
FATAL_STEP_TYPES = {StepType.CLASSIFY, StepType.GENERATE}


def make_batch_id(stream_id: str, window: BatchWindow) -> str:
    return f"{stream_id[:10]}_{to_epoch_ms(window.start)}"


def is_fatal(result: PipelineResult) -> bool:
    """True when classification or generation failed, or nothing was classified."""
    if not result.threads:
        return True
    return any(
        log.status == StepStatus.FAILED and log.step_type in FATAL_STEP_TYPES
        for log in result.step_logs
    )


class BatchMessageProcessor:
    """Runs batches for all streams, one stream and one window at a time.

    Only one run per processor instance is active at a time; a concurrent
    call returns 0 immediately.
    """

    def __init__(
        self,
        *,
        scheduler: BatchWindowScheduler,
        messages: MessageRepository,
        results: ResultRepository,
        writer: PipelineResultWriter,
        pipeline_builder: PipelineBuilder,
        ruleset_cache: RulesetCache,
        tenant_id: str = "default",
        excluded_stream_ids: Sequence[str] = ("pipeline-test",),
        structured_logger: StructuredPipelineLogger | None = None,
        metrics: PrometheusBatchMetrics | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._messages = messages
        self._results = results
        self._writer = writer
        self._builder = pipeline_builder
        self._ruleset_cache = ruleset_cache
        self._tenant_id = tenant_id
        self._excluded = list(excluded_stream_ids)
        self._log = structured_logger or StructuredPipelineLogger()
        self._metrics = metrics or PrometheusBatchMetrics()
        self._lock = asyncio.Lock()
        self._pipeline: BuiltPipeline | None = None

    @property
    def is_processing(self) -> bool:
        return self._lock.locked()

    def reset_pipeline(self) -> None:
        """Drop the built pipeline and cached rulesets (config hot-reload)."""
        self._pipeline = None
        self._ruleset_cache.invalidate()
        logger.info("Pipeline cache cleared")

    def get_pipeline(self) -> BuiltPipeline:
        """Build the pipeline on first use."""
        if self._pipeline is None:
            self._pipeline = self._builder.build()
        return self._pipeline

    async def process_batch(self, stream_id_filter: str | None = None) -> int:
        """Process all pending work.

        Args:
            stream_id_filter: Only process this stream (excluded streams allowed)

        Returns:
            Number of messages marked COMPLETED; 0 if a run is already active
        """
        if self._lock.locked():
            logger.warning("Batch processing already running, skipping")
            return 0

        async with self._lock:
            pipeline = self.get_pipeline()

            if stream_id_filter is not None:
                streams = [stream_id_filter]
            else:
                streams = await self._messages.list_streams_with_pending(exclude=self._excluded)

            if not streams:
                logger.debug("No pending messages found across any streams")
                return 0

            logger.info(f"Starting batch processing for {len(streams)} streams")
            total = 0
            for stream_id in streams:
                total += await self.process_stream(stream_id, pipeline)

            logger.info(f"Batch processing complete: {total} messages completed")
            return total

    async def process_stream(self, stream_id: str, pipeline: BuiltPipeline) -> int:
        """Process windows for one stream until none has work or one fails."""
        completed = 0
        while True:
            window = await self._scheduler.next_window(stream_id)
            if not window.has_work:
                break

            window_completed, succeeded = await self.process_window(stream_id, window, pipeline)
            completed += window_completed
            if not succeeded:
                break

        logger.info(f"Stream {stream_id} processing complete: {completed} messages")
        return completed

    async def process_window(
        self, stream_id: str, window: BatchWindow, pipeline: BuiltPipeline
    ) -> tuple[int, bool]:
        """Process one window in chunks.

        Returns:
            (messages completed, whether every message in the window succeeded)
        """
        batch_id = make_batch_id(stream_id, window)
        context_messages = await self._scheduler.fetch_context_messages(stream_id, window)
        ruleset = await self._load_ruleset()

        self._log.log_window(
            stream_id,
            batch_id,
            "started",
            window_start=window.start.isoformat(),
            window_end=window.end.isoformat(),
        )

        completed = 0
        failed = False
        while True:
            messages = await self._scheduler.fetch_batch_messages(stream_id, window)
            if not messages:
                break

            context = PipelineContext(
                batch_id=batch_id,
                stream_id=stream_id,
                messages=messages,
                domain_config=pipeline.domain_config,
                context_messages=context_messages,
                ruleset=ruleset.ruleset,
            )
            result = await pipeline.orchestrator.execute(context)

            if is_fatal(result):
                logger.error(f"Pipeline failed for batch {batch_id}, window will be retried")
                failed = True
                break

            outcome = await self._writer.store(batch_id, result, messages, ruleset)
            stored = sorted(outcome.processed_message_ids)
            if stored:
                await self._messages.mark_completed(stored)
                self._metrics.inc_completed(stream_id, len(stored))
            completed += len(stored)

            failed_ids = [m.id for m in messages if m.id not in outcome.processed_message_ids]
            if failed_ids:
                await self._results.delete_classifications(failed_ids)
                logger.warning(
                    f"{len(failed_ids)} messages in batch {batch_id} remain PENDING "
                    "(classifications removed for retry)"
                )
                failed = True
                break

            logger.info(
                f"Batch {batch_id}: {len(stored)}/{len(messages)} messages stored, "
                f"{len(result.threads)} threads, {outcome.proposals_created} proposals "
                f"({outcome.proposals_rejected} rejected)"
            )

        if failed:
            self._metrics.inc_watermark(stream_id, "held")
            self._log.log_window(
                stream_id,
                batch_id,
                "held",
                message_count=completed,
                window_start=window.start.isoformat(),
                window_end=window.end.isoformat(),
            )
            return completed, False

        await self._scheduler.advance(stream_id, window)
        self._log.log_window(
            stream_id,
            batch_id,
            "advanced",
            message_count=completed,
            window_start=window.start.isoformat(),
            window_end=window.end.isoformat(),
        )
        return completed, True

    async def _load_ruleset(self) -> RulesetSnapshot:
        try:
            return await self._ruleset_cache.get(self._tenant_id)
        except Exception as e:
            logger.warning(f"Failed to load ruleset for tenant {self._tenant_id}: {e}")
            return RulesetSnapshot()
