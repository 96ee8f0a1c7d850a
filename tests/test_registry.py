"""Tests for the identity -> agent registry."""

from __future__ import annotations

import asyncio

import aiosqlite
import pytest

from code_review_agent.config_schema import AgentConfig
from code_review_agent.registry import AgentRegistry

from conftest import StubInference, open_memory_db


class TestGetOrCreate:
    async def test_same_identity_same_agent(self, registry: AgentRegistry) -> None:
        first = await registry.get_or_create("alice")
        second = await registry.get_or_create("alice")
        assert first is second
        assert "alice" in registry
        assert len(registry) == 1

    async def test_identities_isolated(self, registry: AgentRegistry) -> None:
        alice = await registry.get_or_create("alice")
        bob = await registry.get_or_create("bob")

        await alice.review_code("x = 1")
        await alice.update_preferences({"language": "rust"})

        assert alice.db is not bob.db
        assert alice._lock is not bob._lock
        assert (await bob.get_stats())["totalReviews"] == 0
        assert bob.state.preferences.language == "python"
        assert registry.identities() == ["alice", "bob"]

    async def test_concurrent_first_access_loads_once(
        self, inference: StubInference, config: AgentConfig
    ) -> None:
        opened: list[str] = []

        async def slow_open(identity: str) -> aiosqlite.Connection:
            opened.append(identity)
            await asyncio.sleep(0.01)
            return await open_memory_db(identity)

        reg = AgentRegistry(slow_open, inference, config)
        try:
            agents = await asyncio.gather(*(reg.get_or_create("alice") for _ in range(5)))
            assert opened == ["alice"]
            assert all(a is agents[0] for a in agents)
        finally:
            await reg.close_all()

    @pytest.mark.parametrize("identity", ["", "   "])
    async def test_blank_identity_rejected(self, registry: AgentRegistry, identity: str) -> None:
        with pytest.raises(ValueError):
            await registry.get_or_create(identity)

    async def test_failed_open_can_retry(
        self, inference: StubInference, config: AgentConfig
    ) -> None:
        attempts = 0

        async def flaky_open(identity: str) -> aiosqlite.Connection:
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise aiosqlite.OperationalError("disk I/O error")
            return await open_memory_db(identity)

        reg = AgentRegistry(flaky_open, inference, config)
        try:
            with pytest.raises(aiosqlite.OperationalError):
                await reg.get_or_create("alice")
            assert "alice" not in reg
            agent = await reg.get_or_create("alice")
            assert agent.identity == "alice"
        finally:
            await reg.close_all()


async def test_configured_default_preferences(inference: StubInference) -> None:
    config = AgentConfig(default_preferences={"language": "go", "styleGuide": "Effective Go"})
    reg = AgentRegistry(open_memory_db, inference, config)
    try:
        agent = await reg.get_or_create("carol")
        assert agent.state.preferences.language == "go"
        assert agent.state.preferences.style_guide == "Effective Go"
    finally:
        await reg.close_all()


async def test_close_all(inference: StubInference, config: AgentConfig) -> None:
    reg = AgentRegistry(open_memory_db, inference, config)
    agent = await reg.get_or_create("alice")
    await reg.close_all()
    assert len(reg) == 0
    with pytest.raises(ValueError):
        await agent.db.execute("SELECT 1")


async def test_close_all_sweeps_pending_load(
    inference: StubInference, config: AgentConfig
) -> None:
    opened = asyncio.Event()

    async def slow_open(identity: str) -> aiosqlite.Connection:
        conn = await open_memory_db(identity)
        opened.set()
        await asyncio.sleep(0.02)
        return conn

    reg = AgentRegistry(slow_open, inference, config)
    loading = asyncio.create_task(reg.get_or_create("alice"))
    await opened.wait()

    await reg.close_all()

    agent = await loading
    assert len(reg) == 0
    with pytest.raises(ValueError):
        await agent.db.execute("SELECT 1")
