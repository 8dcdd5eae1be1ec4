"""Tests for the keyword filter and batch classification steps."""

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import pytest

from backend.docpipe.llm.client import LLMResponseError
from backend.docpipe.models.common import NO_DOC_VALUE, StepType
from backend.docpipe.models.config import DEFAULT_DOMAIN_CONFIG, KeywordConfig, StepConfig
from backend.docpipe.models.messages import Message
from backend.docpipe.pipeline.context import PipelineContext
from backend.docpipe.pipeline.steps.classify import (
    FILTERED_REASON,
    UNASSIGNED_REASON,
    BatchClassifyStep,
    format_messages,
)
from backend.docpipe.pipeline.steps.filter import KeywordFilterStep, matches_keywords
from backend.docpipe.prompts.registry import PromptRegistry

T0 = datetime(2026, 3, 1, 9, 0)


@pytest.fixture
def messages(make_message: Callable[..., Message]) -> list[Message]:
    return [
        make_message(1, T0, "Sync fails with error 42 after upgrade"),
        make_message(2, T0 + timedelta(minutes=1), "Set retry_limit to 5, fixed it", "bob"),
        make_message(3, T0 + timedelta(minutes=2), "good morning everyone", "carol"),
    ]


@pytest.fixture
def context(messages: list[Message]) -> PipelineContext:
    return PipelineContext(
        batch_id="s1_1",
        stream_id="s1",
        messages=messages,
        domain_config=DEFAULT_DOMAIN_CONFIG.model_copy(deep=True),
        filtered_messages=list(messages),
    )


class TestMatchesKeywords:
    def test_no_keywords_matches_everything(self) -> None:
        assert matches_keywords("anything", KeywordConfig())

    def test_exclude_wins_over_include(self) -> None:
        keywords = KeywordConfig(include=["sync"], exclude=["spam"])
        assert not matches_keywords("sync spam", keywords)

    def test_include_required_when_set(self) -> None:
        keywords = KeywordConfig(include=["sync"])
        assert matches_keywords("The SYNC failed", keywords)
        assert not matches_keywords("hello", keywords)

    def test_case_sensitive(self) -> None:
        keywords = KeywordConfig(include=["Sync"], case_sensitive=True)
        assert matches_keywords("Sync now", keywords)
        assert not matches_keywords("sync now", keywords)


class TestKeywordFilterStep:
    @pytest.mark.asyncio
    async def test_step_options_override_domain_keywords(self, context: PipelineContext) -> None:
        context.domain_config.keywords = KeywordConfig(include=["morning"])
        step = KeywordFilterStep(
            StepConfig(
                step_id="keyword-filter",
                step_type=StepType.FILTER,
                config={"exclude_keywords": ["morning"]},
            )
        )

        result = await step.execute(context)

        # include comes from the domain, exclude from the step: exclude wins
        assert result.filtered_messages == []

    @pytest.mark.asyncio
    async def test_keeps_matching_messages_in_order(self, context: PipelineContext) -> None:
        step = KeywordFilterStep(
            StepConfig(
                step_id="keyword-filter",
                step_type=StepType.FILTER,
                config={"exclude_keywords": ["good morning"]},
            )
        )

        result = await step.execute(context)

        assert [m.id for m in result.filtered_messages] == [1, 2]
        assert step.output_count(result) == 2


class TestFormatMessages:
    def test_empty(self) -> None:
        assert format_messages([]) == "(No messages)"

    def test_indexed_lines(self, messages: list[Message]) -> None:
        text = format_messages(messages[:2])
        assert text.startswith("[0] [2026-03-01T09:00:00] alice: Sync fails")
        assert "\n\n[1] [2026-03-01T09:01:00] bob:" in text

    def test_unindexed_lines(self, messages: list[Message]) -> None:
        assert format_messages(messages[:1], indexed=False).startswith("[2026-03-01T09:00:00]")


class TestBatchClassifyStep:
    def make_step(self, llm: Any, prompts: PromptRegistry) -> BatchClassifyStep:
        return BatchClassifyStep(
            StepConfig(step_id="batch-classify", step_type=StepType.CLASSIFY),
            llm=llm,
            prompts=prompts,
        )

    @pytest.mark.asyncio
    async def test_threads_resolved_to_message_ids(
        self, context: PipelineContext, scripted_llm: Any, prompts: PromptRegistry
    ) -> None:
        scripted_llm.queue(
            "classification",
            {
                "threads": [
                    {
                        "category": "troubleshooting",
                        "messages": [0, 1],
                        "summary": "Sync error 42",
                        "doc_value_reason": "Resolution for a common error",
                        "rag_search_criteria": {
                            "keywords": ["sync"],
                            "semantic_query": "sync error",
                        },
                    },
                    {"category": NO_DOC_VALUE, "messages": [2], "summary": "Greeting"},
                ]
            },
        )

        result = await self.make_step(scripted_llm, prompts).execute(context)

        assert len(result.threads) == 2
        first, second = result.threads
        assert first.id.startswith("thread_s1_1_0_")
        assert first.message_ids == [1, 2]
        assert first.rag_search_criteria is not None
        assert second.category == NO_DOC_VALUE
        assert second.message_ids == [3]
        assert second.rag_search_criteria is None
        assert result.metrics.llm_calls == 1

        call = scripted_llm.calls_for("classification")[0]
        assert call.temperature == 0.2
        assert call.max_tokens == 32768
        assert "[2] [2026-03-01T09:02:00] carol: good morning everyone" in call.prompt.user

    @pytest.mark.asyncio
    async def test_invalid_and_duplicate_indices_dropped(
        self, context: PipelineContext, scripted_llm: Any, prompts: PromptRegistry
    ) -> None:
        scripted_llm.queue(
            "classification",
            {
                "threads": [
                    {"category": "how-to", "messages": [0, 7, 0]},
                    {"category": "concept", "messages": [0, 99]},
                ]
            },
        )

        result = await self.make_step(scripted_llm, prompts).execute(context)

        real = [t for t in result.threads if not t.id.endswith("_unassigned")]
        assert len(real) == 1
        assert real[0].message_ids == [1]

        unassigned = result.threads[-1]
        assert unassigned.id == "thread_s1_1_unassigned"
        assert unassigned.category == NO_DOC_VALUE
        assert unassigned.message_ids == [2, 3]
        assert unassigned.doc_value_reason == UNASSIGNED_REASON

    @pytest.mark.asyncio
    async def test_filtered_messages_collected(
        self, context: PipelineContext, scripted_llm: Any, prompts: PromptRegistry
    ) -> None:
        context.filtered_messages = context.messages[:2]
        scripted_llm.queue(
            "classification", {"threads": [{"category": "how-to", "messages": [0, 1]}]}
        )

        result = await self.make_step(scripted_llm, prompts).execute(context)

        filtered = result.threads[-1]
        assert filtered.id == "thread_s1_1_filtered"
        assert filtered.message_ids == [3]
        assert filtered.doc_value_reason == FILTERED_REASON

        all_ids = sorted(i for t in result.threads for i in t.message_ids)
        assert all_ids == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_no_llm_call_when_everything_filtered(
        self, context: PipelineContext, scripted_llm: Any, prompts: PromptRegistry
    ) -> None:
        context.filtered_messages = []

        result = await self.make_step(scripted_llm, prompts).execute(context)

        assert scripted_llm.calls == []
        assert [t.id for t in result.threads] == ["thread_s1_1_filtered"]
        assert self.make_step(scripted_llm, prompts).input_count(result) == 3

    @pytest.mark.asyncio
    async def test_llm_error_propagates(
        self, context: PipelineContext, scripted_llm: Any, prompts: PromptRegistry
    ) -> None:
        scripted_llm.queue("classification", LLMResponseError("bad json"))

        with pytest.raises(LLMResponseError):
            await self.make_step(scripted_llm, prompts).execute(context)
