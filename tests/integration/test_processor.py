"""End-to-end batch processing over in-memory repositories."""

import asyncio
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import pytest
from pydantic import BaseModel

from backend.docpipe.batch.processor import BatchMessageProcessor, make_batch_id
from backend.docpipe.batch.scheduler import BatchWindowScheduler
from backend.docpipe.batch.storage import PipelineResultWriter
from backend.docpipe.config import Settings
from backend.docpipe.db.inmemory import (
    InMemoryMessageRepository,
    InMemoryResultRepository,
    InMemoryRulesetRepository,
    InMemoryRunLogRepository,
    InMemoryWatermarkRepository,
)
from backend.docpipe.db.repositories import PersistenceError, ThreadResult
from backend.docpipe.llm.client import LLMResponse
from backend.docpipe.models.common import NO_DOC_VALUE
from backend.docpipe.models.messages import BatchWindow, Message, ProcessingStatus
from backend.docpipe.models.ruleset import TenantRuleset
from backend.docpipe.pipeline.builder import PipelineBuilder
from backend.docpipe.prompts.registry import PromptRegistry, RenderedPrompt
from backend.docpipe.rag.service import KeywordRagService, ReferenceDoc
from backend.docpipe.review.cache import RulesetCache
from backend.docpipe.review.modifier import ReviewModifier

T = datetime(2026, 3, 1, 9, 0)

HOW_TO_THEN_NOISE = {
    "threads": [
        {
            "category": "how-to",
            "messages": [0, 1],
            "summary": "Configuring the sync interval",
            "doc_value_reason": "Answered configuration question",
            "rag_search_criteria": {"keywords": ["sync"], "semantic_query": "sync interval"},
        },
        {"category": NO_DOC_VALUE, "messages": [2], "summary": "Thanks"},
    ]
}


def proposal_reply(text: str = "Set `sync.interval` in settings.") -> dict[str, Any]:
    return {
        "proposals": [
            {
                "update_type": "UPDATE",
                "page": "docs/sync.md",
                "section": "Interval",
                "suggested_text": text,
                "reasoning": "Thread answered it",
                "source_messages": [1],
            }
        ]
    }


class FailOnceResultRepository(InMemoryResultRepository):
    """Rejects the first write of a thread with the given category."""

    def __init__(self, category: str) -> None:
        super().__init__()
        self.category = category
        self.failures_left = 1

    async def store_thread(self, result: ThreadResult) -> list[int]:
        if result.thread.category == self.category and self.failures_left:
            self.failures_left -= 1
            raise PersistenceError("connection reset")
        return await super().store_thread(result)


class BrokenRulesetRepository(InMemoryRulesetRepository):
    async def get_ruleset(self, tenant_id: str) -> TenantRuleset | None:
        raise RuntimeError("rulesets table missing")


class GatedLLM:
    """Delegating handler that waits for a gate before every request."""

    def __init__(self, inner: Any, gate: asyncio.Event) -> None:
        self.inner = inner
        self.gate = gate

    async def request_json(
        self, prompt: RenderedPrompt, schema: type[BaseModel], purpose: str, **kwargs: Any
    ) -> LLMResponse[Any]:
        await self.gate.wait()
        return await self.inner.request_json(prompt, schema, purpose, **kwargs)


class Harness:
    """Processor wired to in-memory repositories and a fixed clock."""

    def __init__(
        self,
        messages: list[Message],
        llm: Any,
        now: datetime,
        *,
        results: InMemoryResultRepository | None = None,
        rulesets: InMemoryRulesetRepository | None = None,
        rag: KeywordRagService | None = None,
    ) -> None:
        self.now = now
        self.settings = Settings(_env_file=None, tenant_id="acme", retry_attempts=0)
        self.messages = InMemoryMessageRepository(messages)
        self.watermarks = InMemoryWatermarkRepository()
        self.results = results or InMemoryResultRepository()
        self.rulesets = rulesets or InMemoryRulesetRepository()
        self.run_log = InMemoryRunLogRepository()

        prompts = PromptRegistry().load()
        self.processor = BatchMessageProcessor(
            scheduler=BatchWindowScheduler(self.messages, self.watermarks, clock=self.clock),
            messages=self.messages,
            results=self.results,
            writer=PipelineResultWriter(
                self.results, modifier=ReviewModifier(llm, prompts)
            ),
            pipeline_builder=PipelineBuilder(
                self.settings,
                llm=llm,
                rag=rag or KeywordRagService(),
                prompts=prompts,
                run_log=self.run_log,
            ),
            ruleset_cache=RulesetCache(self.rulesets, clock=self.clock),
            tenant_id="acme",
        )

    def clock(self) -> datetime:
        return self.now

    def status(self, message_id: int) -> ProcessingStatus:
        message = self.messages.get(message_id)
        assert message is not None
        return message.processing_status

    async def watermark(self, stream_id: str = "s1") -> datetime:
        stored = await self.watermarks.get(stream_id)
        assert stored is not None
        return stored.watermark_time


@pytest.fixture
def three_messages(make_message: Callable[..., Message]) -> list[Message]:
    return [
        make_message(1, T, "How do I change how often sync runs?"),
        make_message(2, T + timedelta(minutes=1), "Set sync.interval in settings", author="bob"),
        make_message(3, T + timedelta(minutes=2), "Thanks!"),
    ]


@pytest.mark.asyncio
async def test_window_processed_and_watermark_advanced(
    three_messages: list[Message], scripted_llm: Any
) -> None:
    scripted_llm.queue("classification", HOW_TO_THEN_NOISE)
    scripted_llm.queue("proposal", proposal_reply())
    rag = KeywordRagService(
        [
            ReferenceDoc(
                id="sync",
                file_path="docs/sync.md",
                title="Sync",
                content="# Sync\n\nSync runs every hour. Change the interval in settings.",
            )
        ]
    )
    harness = Harness(three_messages, scripted_llm, T + timedelta(hours=25), rag=rag)

    completed = await harness.processor.process_batch()

    assert completed == 3
    assert all(harness.status(i) == ProcessingStatus.COMPLETED for i in (1, 2, 3))
    assert await harness.watermark() == T + timedelta(hours=24)

    proposals = await harness.results.list_proposals()
    assert [(p.page, p.suggested_text) for p in proposals] == [
        ("docs/sync.md", "Set `sync.interval` in settings.")
    ]
    batch_id = make_batch_id(
        "s1", BatchWindow(start=T, end=T + timedelta(hours=24), has_work=True)
    )
    assert proposals[0].batch_id == batch_id
    assert len(harness.results.classifications) == 3

    rag_contexts = harness.results.rag_contexts
    assert sorted(r.rejected is True for r in rag_contexts.values()) == [False, True]
    retrieved = next(r for r in rag_contexts.values() if not r.rejected).retrieved_docs
    assert [d["file_path"] for d in retrieved] == ["docs/sync.md"]

    runs = await harness.run_log.list_runs("acme")
    assert [r.status for r in runs] == ["completed"]

    # nothing left: no LLM traffic on the next run
    calls = len(scripted_llm.calls)
    assert await harness.processor.process_batch() == 0
    assert len(scripted_llm.calls) == calls


@pytest.mark.asyncio
async def test_only_noise_completes_without_generation(
    three_messages: list[Message], scripted_llm: Any
) -> None:
    scripted_llm.queue(
        "classification", {"threads": [{"category": NO_DOC_VALUE, "messages": [0, 1, 2]}]}
    )
    harness = Harness(three_messages, scripted_llm, T + timedelta(hours=25))

    assert await harness.processor.process_batch() == 3

    assert scripted_llm.calls_for("proposal") == []
    assert await harness.results.list_proposals() == []
    (rag_context,) = harness.results.rag_contexts.values()
    assert rag_context.rejected
    assert await harness.watermark() == T + timedelta(hours=24)


@pytest.mark.asyncio
async def test_ruleset_rejection_still_completes_messages(
    three_messages: list[Message], scripted_llm: Any
) -> None:
    rulesets = InMemoryRulesetRepository()
    await rulesets.save_ruleset(
        "acme",
        "## PROMPT_CONTEXT\n- Keep it short\n\n"
        '## REJECTION_RULES\n- Reject proposals mentioning "delete all docs"\n',
        updated_at=T - timedelta(days=1),
    )
    scripted_llm.queue("classification", HOW_TO_THEN_NOISE)
    scripted_llm.queue("proposal", proposal_reply("To reset, delete all docs and re-sync."))
    harness = Harness(three_messages, scripted_llm, T + timedelta(hours=25), rulesets=rulesets)

    assert await harness.processor.process_batch() == 3

    assert await harness.results.list_proposals() == []
    (log,) = harness.results.review_logs
    assert log.review.rejected
    assert log.proposal_id is None
    assert log.ruleset_version == T - timedelta(days=1)
    # prompt context reaches generation
    (generation,) = scripted_llm.calls_for("proposal")
    assert "- Keep it short" in generation.prompt.system


@pytest.mark.asyncio
async def test_classification_failure_holds_watermark_then_retries(
    three_messages: list[Message], scripted_llm: Any
) -> None:
    scripted_llm.queue("classification", RuntimeError("rate limited"))
    harness = Harness(three_messages, scripted_llm, T + timedelta(hours=25))

    assert await harness.processor.process_batch() == 0

    assert all(harness.status(i) == ProcessingStatus.PENDING for i in (1, 2, 3))
    assert harness.watermarks.history == [("s1", T)]
    runs = await harness.run_log.list_runs("acme")
    assert runs[0].status == "failed"

    scripted_llm.queue("classification", HOW_TO_THEN_NOISE)
    scripted_llm.queue("proposal", proposal_reply())

    assert await harness.processor.process_batch() == 3
    assert await harness.watermark() == T + timedelta(hours=24)


@pytest.mark.asyncio
async def test_partial_store_failure_keeps_failed_messages_pending(
    three_messages: list[Message], scripted_llm: Any
) -> None:
    results = FailOnceResultRepository(category="how-to")
    scripted_llm.queue("classification", HOW_TO_THEN_NOISE)
    scripted_llm.queue("proposal", proposal_reply())
    harness = Harness(three_messages, scripted_llm, T + timedelta(hours=25), results=results)

    assert await harness.processor.process_batch() == 1

    assert harness.status(1) == ProcessingStatus.PENDING
    assert harness.status(2) == ProcessingStatus.PENDING
    assert harness.status(3) == ProcessingStatus.COMPLETED
    assert set(results.classifications) == {3}
    assert harness.watermarks.history == [("s1", T)]

    scripted_llm.queue(
        "classification",
        {"threads": [{"category": "how-to", "messages": [0, 1], "summary": "Sync interval"}]},
    )
    scripted_llm.queue("proposal", proposal_reply())

    assert await harness.processor.process_batch() == 2
    assert await harness.watermark() == T + timedelta(hours=24)
    assert len(await results.list_proposals()) == 1


@pytest.mark.asyncio
async def test_multiple_windows_in_one_run(
    make_message: Callable[..., Message], scripted_llm: Any
) -> None:
    later = T + timedelta(hours=30)
    scripted_llm.default(
        "classification", {"threads": [{"category": "concept", "messages": [0]}]}
    )
    scripted_llm.default("proposal", {"proposals": []})
    harness = Harness(
        [make_message(1, T), make_message(2, later)], scripted_llm, T + timedelta(days=3)
    )

    assert await harness.processor.process_batch() == 2

    assert len(scripted_llm.calls_for("classification")) == 2
    assert await harness.watermark() == later + timedelta(hours=24)
    watermark_times = [t for _, t in harness.watermarks.history]
    assert watermark_times == sorted(watermark_times)


@pytest.mark.asyncio
async def test_excluded_streams_only_run_when_requested(
    make_message: Callable[..., Message], scripted_llm: Any
) -> None:
    scripted_llm.default(
        "classification", {"threads": [{"category": NO_DOC_VALUE, "messages": [0]}]}
    )
    harness = Harness(
        [make_message(1, T, stream_id="pipeline-test")], scripted_llm, T + timedelta(hours=2)
    )

    assert await harness.processor.process_batch() == 0
    assert scripted_llm.calls == []

    assert await harness.processor.process_batch("pipeline-test") == 1
    assert harness.status(1) == ProcessingStatus.COMPLETED


@pytest.mark.asyncio
async def test_ruleset_load_failure_uses_empty_ruleset(
    three_messages: list[Message], scripted_llm: Any
) -> None:
    scripted_llm.queue("classification", HOW_TO_THEN_NOISE)
    scripted_llm.queue("proposal", proposal_reply("delete all docs"))
    harness = Harness(
        three_messages,
        scripted_llm,
        T + timedelta(hours=25),
        rulesets=BrokenRulesetRepository(),
    )

    assert await harness.processor.process_batch() == 3
    assert len(await harness.results.list_proposals()) == 1
    assert harness.results.review_logs == []


@pytest.mark.asyncio
async def test_concurrent_run_is_skipped(
    three_messages: list[Message], scripted_llm: Any
) -> None:
    scripted_llm.queue("classification", HOW_TO_THEN_NOISE)
    scripted_llm.queue("proposal", proposal_reply())
    gate = asyncio.Event()
    harness = Harness(three_messages, GatedLLM(scripted_llm, gate), T + timedelta(hours=25))

    first = asyncio.create_task(harness.processor.process_batch())
    while not harness.processor.is_processing:
        await asyncio.sleep(0)

    assert await harness.processor.process_batch() == 0

    gate.set()
    assert await first == 3
    assert not harness.processor.is_processing
