"""Watermark-driven batch windows per stream."""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from backend.docpipe.db.repositories import MessageRepository, WatermarkRepository
from backend.docpipe.models.common import utc_now
from backend.docpipe.models.messages import BatchWindow, Message
from backend.docpipe.utils.logging import StructuredPipelineLogger
from backend.docpipe.utils.metrics import PrometheusBatchMetrics

logger = logging.getLogger(__name__)


class BatchWindowScheduler:
    """Computes the next [start, end) window of PENDING messages for a stream.

    The window starts at the earliest PENDING message at or after the
    watermark and ends at ``start + batch_window_hours``, capped at now.
    """

    def __init__(
        self,
        messages: MessageRepository,
        watermarks: WatermarkRepository,
        *,
        batch_window_hours: int = 24,
        context_window_hours: int = 24,
        max_batch_size: int = 30,
        max_context_messages: int = 100,
        fallback_lookback_days: int = 7,
        clock: Callable[[], datetime] | None = None,
        structured_logger: StructuredPipelineLogger | None = None,
        metrics: PrometheusBatchMetrics | None = None,
    ) -> None:
        self._messages = messages
        self._watermarks = watermarks
        self.batch_window = timedelta(hours=batch_window_hours)
        self.context_window = timedelta(hours=context_window_hours)
        self.max_batch_size = max_batch_size
        self.max_context_messages = max_context_messages
        self.fallback_lookback = timedelta(days=fallback_lookback_days)
        self._clock = clock or utc_now
        self._log = structured_logger or StructuredPipelineLogger()
        self._metrics = metrics or PrometheusBatchMetrics()

    def now(self) -> datetime:
        return self._clock()

    async def get_watermark(self, stream_id: str) -> datetime:
        """Current watermark, created on first touch of the stream.

        A new watermark starts at the stream's earliest message, or at
        now minus the fallback lookback when the stream has no messages.
        """
        existing = await self._watermarks.get(stream_id)
        if existing is not None:
            return existing.watermark_time

        earliest = await self._messages.get_earliest_message_time(stream_id)
        initial = earliest if earliest is not None else self.now() - self.fallback_lookback
        created = await self._watermarks.create(stream_id, initial)
        logger.info(f"Initialized watermark for stream {stream_id} at {initial.isoformat()}")
        return created.watermark_time

    async def next_window(self, stream_id: str) -> BatchWindow:
        """Next window with work, skipping empty windows.

        Returns:
            BatchWindow with has_work=False when nothing is pending
        """
        while True:
            watermark = await self.get_watermark(stream_id)
            start = await self._messages.find_earliest_pending(stream_id, watermark)
            if start is None:
                return BatchWindow(start=watermark, end=watermark, has_work=False)

            end = min(start + self.batch_window, self.now())
            if end <= start:
                # Earliest pending message is not in the past yet
                return BatchWindow(start=start, end=start, has_work=False)

            if await self._messages.count_pending_in_window(stream_id, start, end) > 0:
                return BatchWindow(start=start, end=end, has_work=True)

            # Re-check from the watermark right before skipping, so a message
            # that landed in the gap is not jumped over.
            if await self._messages.count_pending_in_window(stream_id, watermark, end) > 0:
                continue

            logger.debug(f"Stream {stream_id}: empty window, moving watermark to {end.isoformat()}")
            await self._watermarks.advance(stream_id, end, processed_at=self.now())
            self._metrics.inc_watermark(stream_id, "skipped")
            self._log.log_window(
                stream_id,
                "",
                "skipped",
                window_start=start.isoformat(),
                window_end=end.isoformat(),
            )

    async def fetch_batch_messages(self, stream_id: str, window: BatchWindow) -> list[Message]:
        """Next chunk of PENDING messages in the window, oldest first."""
        return await self._messages.fetch_pending_in_window(
            stream_id, window.start, window.end, self.max_batch_size
        )

    async def fetch_context_messages(self, stream_id: str, window: BatchWindow) -> list[Message]:
        """History preceding the window (any status), for the classifier only."""
        return await self._messages.fetch_context_messages(
            stream_id,
            window.start - self.context_window,
            window.start,
            self.max_context_messages,
        )

    async def advance(self, stream_id: str, window: BatchWindow) -> None:
        """Move the stream's watermark to the window end."""
        await self._watermarks.advance(stream_id, window.end, processed_at=self.now())
        self._metrics.inc_watermark(stream_id, "advanced")
