"""Tests for watermark-driven batch windows."""

from collections.abc import Callable
from datetime import datetime, timedelta

import pytest

from backend.docpipe.batch.scheduler import BatchWindowScheduler
from backend.docpipe.db.inmemory import InMemoryMessageRepository, InMemoryWatermarkRepository
from backend.docpipe.models.messages import BatchWindow, Message, ProcessingStatus

T = datetime(2026, 3, 1, 9, 0)


class StaleEarliestRepository(InMemoryMessageRepository):
    """Returns a stale earliest-pending time once, as if a message was completed meanwhile."""

    def __init__(self, stale: datetime, messages: list[Message]) -> None:
        super().__init__(messages)
        self._stale: datetime | None = stale

    async def find_earliest_pending(self, stream_id: str, since: datetime) -> datetime | None:
        if self._stale is not None:
            stale, self._stale = self._stale, None
            return stale
        return await super().find_earliest_pending(stream_id, since)


def completed(message: Message) -> Message:
    return message.model_copy(update={"processing_status": ProcessingStatus.COMPLETED})


def make_scheduler(
    messages: InMemoryMessageRepository,
    watermarks: InMemoryWatermarkRepository,
    now: datetime,
    **kwargs: int,
) -> BatchWindowScheduler:
    return BatchWindowScheduler(messages, watermarks, clock=lambda: now, **kwargs)


class TestWatermark:
    @pytest.mark.asyncio
    async def test_initialized_at_earliest_message(
        self, make_message: Callable[..., Message]
    ) -> None:
        messages = InMemoryMessageRepository(
            [completed(make_message(1, T)), make_message(2, T + timedelta(hours=2))]
        )
        watermarks = InMemoryWatermarkRepository()
        scheduler = make_scheduler(messages, watermarks, T + timedelta(days=3))

        assert await scheduler.get_watermark("s1") == T
        assert await scheduler.get_watermark("s1") == T
        assert watermarks.history == [("s1", T)]

    @pytest.mark.asyncio
    async def test_empty_stream_uses_fallback_lookback(self) -> None:
        now = T + timedelta(days=30)
        scheduler = make_scheduler(
            InMemoryMessageRepository(), InMemoryWatermarkRepository(), now
        )

        assert await scheduler.get_watermark("empty") == now - timedelta(days=7)


class TestNextWindow:
    @pytest.mark.asyncio
    async def test_full_window(self, make_message: Callable[..., Message]) -> None:
        messages = InMemoryMessageRepository(
            [make_message(i, T + timedelta(minutes=i)) for i in range(3)]
        )
        scheduler = make_scheduler(
            messages, InMemoryWatermarkRepository(), T + timedelta(hours=25)
        )

        window = await scheduler.next_window("s1")

        assert window == BatchWindow(start=T, end=T + timedelta(hours=24), has_work=True)

    @pytest.mark.asyncio
    async def test_window_capped_at_now(self, make_message: Callable[..., Message]) -> None:
        now = T + timedelta(hours=1)
        messages = InMemoryMessageRepository([make_message(1, T)])
        scheduler = make_scheduler(messages, InMemoryWatermarkRepository(), now)

        window = await scheduler.next_window("s1")

        assert window.end == now
        assert window.has_work

    @pytest.mark.asyncio
    async def test_message_at_now_has_no_work_yet(
        self, make_message: Callable[..., Message]
    ) -> None:
        messages = InMemoryMessageRepository([make_message(1, T)])
        scheduler = make_scheduler(messages, InMemoryWatermarkRepository(), T)

        window = await scheduler.next_window("s1")

        assert not window.has_work

    @pytest.mark.asyncio
    async def test_nothing_pending(self, make_message: Callable[..., Message]) -> None:
        messages = InMemoryMessageRepository([completed(make_message(1, T))])
        scheduler = make_scheduler(
            messages, InMemoryWatermarkRepository(), T + timedelta(days=2)
        )

        window = await scheduler.next_window("s1")

        assert window == BatchWindow(start=T, end=T, has_work=False)

    @pytest.mark.asyncio
    async def test_empty_window_skipped(self, make_message: Callable[..., Message]) -> None:
        later = T + timedelta(hours=30)
        messages = StaleEarliestRepository(
            T + timedelta(hours=1), [completed(make_message(1, T)), make_message(2, later)]
        )
        watermarks = InMemoryWatermarkRepository()
        scheduler = make_scheduler(messages, watermarks, T + timedelta(days=5))

        window = await scheduler.next_window("s1")

        assert window == BatchWindow(start=later, end=later + timedelta(hours=24), has_work=True)
        assert watermarks.history == [("s1", T), ("s1", T + timedelta(hours=25))]

    @pytest.mark.asyncio
    async def test_skip_rechecks_from_watermark(
        self, make_message: Callable[..., Message]
    ) -> None:
        messages = StaleEarliestRepository(T + timedelta(hours=1), [make_message(1, T)])
        watermarks = InMemoryWatermarkRepository()
        scheduler = make_scheduler(messages, watermarks, T + timedelta(days=5))

        window = await scheduler.next_window("s1")

        assert window.start == T
        assert window.has_work
        # the pending message at the watermark was not jumped over
        assert watermarks.history == [("s1", T)]


class TestFetchAndAdvance:
    @pytest.mark.asyncio
    async def test_batch_capped_oldest_first(self, make_message: Callable[..., Message]) -> None:
        messages = InMemoryMessageRepository(
            [make_message(i, T + timedelta(minutes=i)) for i in range(5)]
        )
        scheduler = make_scheduler(
            messages, InMemoryWatermarkRepository(), T + timedelta(days=2), max_batch_size=3
        )
        window = BatchWindow(start=T, end=T + timedelta(hours=24), has_work=True)

        batch = await scheduler.fetch_batch_messages("s1", window)

        assert [m.id for m in batch] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_context_is_most_recent_history(
        self, make_message: Callable[..., Message]
    ) -> None:
        history = [
            completed(make_message(i, T - timedelta(hours=i))) for i in range(1, 5)
        ]
        history.append(make_message(10, T - timedelta(hours=30)))
        messages = InMemoryMessageRepository([*history, make_message(20, T)])
        scheduler = make_scheduler(
            messages,
            InMemoryWatermarkRepository(),
            T + timedelta(days=2),
            max_context_messages=2,
        )
        window = BatchWindow(start=T, end=T + timedelta(hours=1), has_work=True)

        context = await scheduler.fetch_context_messages("s1", window)

        # 4h and 30h ago fall outside the cap and the 24h context window
        assert [m.id for m in context] == [2, 1]

    @pytest.mark.asyncio
    async def test_advance_is_monotonic(self) -> None:
        watermarks = InMemoryWatermarkRepository()
        scheduler = make_scheduler(
            InMemoryMessageRepository(), watermarks, T + timedelta(days=2)
        )
        await watermarks.create("s1", T + timedelta(hours=10))

        await scheduler.advance(
            "s1", BatchWindow(start=T, end=T + timedelta(hours=5), has_work=True)
        )
        stored = await watermarks.get("s1")

        assert stored is not None
        assert stored.watermark_time == T + timedelta(hours=10)
        assert stored.last_processed_batch_at == T + timedelta(days=2)
