"""Keyed registry mapping identity -> live CodeReviewAgent."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

import aiosqlite

from code_review_agent.agent import CodeReviewAgent
from code_review_agent.config_schema import AgentConfig
from code_review_agent.inference import InferenceClient

logger = logging.getLogger("code_review_agent")

DatabaseOpener = Callable[[str], Awaitable[aiosqlite.Connection]]


class AgentRegistry:
    """Creates each identity's agent on first access and keeps it for reuse.

    ``open_db(identity)`` must return a connection whose schema is already in
    place. Identities never share a connection or a lock.
    """

    def __init__(
        self,
        open_db: DatabaseOpener,
        inference: InferenceClient,
        config: AgentConfig,
    ) -> None:
        self._open_db = open_db
        self.inference = inference
        self.config = config
        self._agents: dict[str, CodeReviewAgent] = {}
        self._loading: dict[str, asyncio.Future[CodeReviewAgent]] = {}

    def __contains__(self, identity: object) -> bool:
        return identity in self._agents

    def __len__(self) -> int:
        return len(self._agents)

    def identities(self) -> list[str]:
        return sorted(self._agents)

    async def get_or_create(self, identity: str) -> CodeReviewAgent:
        """Return the agent for ``identity``, loading it on first access.

        Concurrent first calls for the same identity share one load.
        """
        if identity is None or identity.strip() == "":
            raise ValueError("identity is required")

        agent = self._agents.get(identity)
        if agent is not None:
            return agent

        pending = self._loading.get(identity)
        if pending is None:
            pending = asyncio.ensure_future(self._load(identity))
            self._loading[identity] = pending
            pending.add_done_callback(lambda _fut, key=identity: self._loading.pop(key, None))
        return await asyncio.shield(pending)

    async def _load(self, identity: str) -> CodeReviewAgent:
        db = await self._open_db(identity)
        try:
            agent = await CodeReviewAgent.load(identity, db, self.inference, self.config)
        except Exception:
            await db.close()
            raise
        self._agents[identity] = agent
        logger.info(
            "agent ready -> %s history=%s",
            identity,
            len(agent.state.review_history),
        )
        return agent

    async def close_all(self) -> None:
        """Close every agent's database connection and forget the agents.

        Loads still in progress are awaited first so their connections are
        swept too; a load that fails has already closed its own connection.
        """
        pending = list(self._loading.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        agents = list(self._agents.values())
        self._agents.clear()
        for agent in agents:
            await agent.aclose()
        logger.info("registry closed -> %s agent(s)", len(agents))
