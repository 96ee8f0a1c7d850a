"""Shared test fixtures for the Code Review Agent."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import aiosqlite
import pytest

from code_review_agent.agent import CodeReviewAgent
from code_review_agent.config_schema import AgentConfig
from code_review_agent.db import AppContext, ensure_schema
from code_review_agent.inference import InferenceError
from code_review_agent.registry import AgentRegistry

DOCSTRING_REVIEW = "Issue: missing docstring. Issue: no return type annotation."


@dataclass
class StubInference:
    """Scripted stand-in for the text-generation service.

    Returns ``responses`` in order, repeating the last one. Records every
    prompt and tracks how many generations overlap.
    """

    responses: list[str] = field(default_factory=lambda: [DOCSTRING_REVIEW])
    error: Exception | None = None
    delay: float = 0.0
    prompts: list[str] = field(default_factory=list)
    max_tokens: list[int] = field(default_factory=list)
    active: int = 0
    max_active: int = 0

    async def generate(self, prompt: str, max_tokens: int) -> str:
        self.prompts.append(prompt)
        self.max_tokens.append(max_tokens)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.error is not None:
                raise self.error
            index = min(len(self.prompts) - 1, len(self.responses) - 1)
            return self.responses[index]
        finally:
            self.active -= 1


async def open_memory_db(identity: str = "") -> aiosqlite.Connection:
    del identity
    conn = await aiosqlite.connect(":memory:", isolation_level=None)
    conn.row_factory = aiosqlite.Row
    await ensure_schema(conn)
    return conn


@dataclass
class _MockFastMCP:
    """Stands in for the FastMCP instance so ctx.fastmcp._lifespan_result works."""

    _lifespan_result: AppContext


@dataclass
class MockContext:
    """Minimal mock for fastmcp.Context that provides fastmcp._lifespan_result."""

    fastmcp: _MockFastMCP

    @property
    def lifespan_context(self) -> AppContext:
        return self.fastmcp._lifespan_result


@pytest.fixture
async def db() -> AsyncIterator[aiosqlite.Connection]:
    """In-memory SQLite database for tests."""
    conn = await open_memory_db()
    yield conn
    await conn.close()


@pytest.fixture
def inference() -> StubInference:
    return StubInference()


@pytest.fixture
def config() -> AgentConfig:
    return AgentConfig(inference_timeout_seconds=2.0)


@pytest.fixture
async def agent(
    db: aiosqlite.Connection,
    inference: StubInference,
    config: AgentConfig,
) -> CodeReviewAgent:
    return await CodeReviewAgent.load("alice", db, inference, config)


@pytest.fixture
def failing_inference() -> StubInference:
    return StubInference(error=InferenceError("model unavailable"))


@pytest.fixture
async def registry(
    inference: StubInference,
    config: AgentConfig,
) -> AsyncIterator[AgentRegistry]:
    reg = AgentRegistry(open_memory_db, inference, config)
    yield reg
    await reg.close_all()


@pytest.fixture
def ctx(registry: AgentRegistry, config: AgentConfig) -> MockContext:
    """Create a MockContext wrapping an in-memory agent registry."""
    app = AppContext(registry=registry, config=config)
    return MockContext(fastmcp=_MockFastMCP(_lifespan_result=app))
