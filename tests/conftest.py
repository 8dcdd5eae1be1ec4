"""Shared pytest fixtures for all test suites."""

import os
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from backend.docpipe.db.models import Base
from backend.docpipe.llm.client import LLMResponse, LLMResponseError
from backend.docpipe.models.messages import Message
from backend.docpipe.prompts.registry import PromptRegistry, RenderedPrompt

Reply = dict[str, Any] | Exception | Callable[[RenderedPrompt], dict[str, Any]]


@dataclass
class LLMCall:
    """One recorded request to the scripted handler."""

    purpose: str
    prompt: RenderedPrompt
    model: str | None
    temperature: float
    max_tokens: int


class ScriptedLLMHandler:
    """LLM handler answering from per-purpose reply queues.

    Queued replies are consumed in order; when a purpose's queue is empty
    its default reply is used. A reply may be a dict (validated against the
    requested schema), an exception (raised) or a callable taking the
    rendered prompt and returning a dict.
    """

    def __init__(self, tokens_per_call: int = 10) -> None:
        self.tokens_per_call = tokens_per_call
        self.calls: list[LLMCall] = []
        self._queues: dict[str, list[Reply]] = {}
        self._defaults: dict[str, Reply] = {}

    def queue(self, purpose: str, *replies: Reply) -> "ScriptedLLMHandler":
        self._queues.setdefault(purpose, []).extend(replies)
        return self

    def default(self, purpose: str, reply: Reply) -> "ScriptedLLMHandler":
        self._defaults[purpose] = reply
        return self

    def calls_for(self, purpose: str) -> list[LLMCall]:
        return [c for c in self.calls if c.purpose == purpose]

    async def request_json(
        self,
        prompt: RenderedPrompt,
        schema: type[BaseModel],
        purpose: str,
        *,
        model: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 8192,
    ) -> LLMResponse[Any]:
        self.calls.append(LLMCall(purpose, prompt, model, temperature, max_tokens))

        queue = self._queues.get(purpose)
        if queue:
            reply = queue.pop(0)
        elif purpose in self._defaults:
            reply = self._defaults[purpose]
        else:
            raise LLMResponseError(f"No scripted reply for {purpose}")

        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            reply = reply(prompt)
        return LLMResponse(data=schema.model_validate(reply), tokens_used=self.tokens_per_call)


@pytest.fixture
def scripted_llm() -> ScriptedLLMHandler:
    """Fresh scripted LLM handler."""
    return ScriptedLLMHandler()


@pytest.fixture
def prompts() -> PromptRegistry:
    """Registry loaded with the packaged default templates."""
    return PromptRegistry().load()


@pytest.fixture
def make_message() -> Callable[..., Message]:
    """Factory for PENDING messages on stream s1."""

    def _make(
        message_id: int,
        timestamp: datetime,
        content: str = "How do I configure the sync interval?",
        author: str = "alice",
        stream_id: str = "s1",
    ) -> Message:
        return Message(
            id=message_id,
            stream_id=stream_id,
            timestamp=timestamp,
            author=author,
            content=content,
        )

    return _make


class RecordingSleep:
    """Async sleep replacement that records requested delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def no_sleep() -> RecordingSleep:
    """Sleep that returns immediately."""
    return RecordingSleep()


@pytest_asyncio.fixture
async def sqlite_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """Async engine on a file-backed SQLite database with all tables created."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path}/test.db",
        poolclass=NullPool,
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(sqlite_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the SQLite test engine."""
    return async_sessionmaker(sqlite_engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def postgres_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create async engine for PostgreSQL integration tests.

    Requires DATABASE_URL to be set to a real PostgreSQL connection string.
    Tests using this fixture should be marked with @pytest.mark.postgres.
    """
    database_url = os.getenv("DATABASE_URL")
    if not database_url:
        pytest.skip("DATABASE_URL not set - skipping postgres test")

    if not database_url.startswith(("postgresql://", "postgresql+asyncpg://")):
        pytest.skip(f"DATABASE_URL is not PostgreSQL: {database_url}")

    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+asyncpg://", 1)

    engine = create_async_engine(database_url, poolclass=NullPool, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()
