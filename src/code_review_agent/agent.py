"""Per-identity code review agent and its operation table."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from contextlib import suppress
from dataclasses import dataclass
from typing import Any

import aiosqlite

from code_review_agent.config_schema import AgentConfig
from code_review_agent.inference import InferenceClient, InferenceError, generate_with_timeout
from code_review_agent.learning import count_issues, learn_from_review
from code_review_agent.models import AgentState, PatternType, ReviewRecord
from code_review_agent.patterns import (
    count_snippets,
    insert_pattern,
    insert_snippet,
    mark_snippet_helpful,
    top_patterns,
)
from code_review_agent.prompts import build_review_prompt
from code_review_agent.state import (
    apply_feedback,
    initial_state,
    load_snapshot,
    merge_preferences,
    push_review,
    refresh_common_issues,
    save_snapshot,
)

logger = logging.getLogger("code_review_agent")

NEGATIVE_FEEDBACK = "negative"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _missing(value: str | None) -> bool:
    """Treat None/empty/whitespace-only as missing."""
    return value is None or value.strip() == ""


def _clip(value: str, max_len: int = 72) -> str:
    """Clamp long text for compact log lines."""
    if len(value) <= max_len:
        return value
    return value[: max_len - 3] + "..."


async def _rollback_quietly(db: aiosqlite.Connection) -> None:
    with suppress(Exception):
        await db.execute("ROLLBACK")


class CodeReviewAgent:
    """Serialized actor owning one identity's state and pattern store.

    Every operation runs through ``invoke``, which holds the agent's lock for
    the whole call, including time spent waiting on inference or the database.
    ``asyncio.Lock`` wakes waiters in arrival order, so calls for one identity
    run one at a time in FIFO order.
    """

    def __init__(
        self,
        state: AgentState,
        db: aiosqlite.Connection,
        inference: InferenceClient,
        config: AgentConfig,
    ) -> None:
        self.state = state
        self.db = db
        self.inference = inference
        self.config = config
        self._lock = asyncio.Lock()

    @property
    def identity(self) -> str:
        return self.state.identity

    @classmethod
    async def load(
        cls,
        identity: str,
        db: aiosqlite.Connection,
        inference: InferenceClient,
        config: AgentConfig,
    ) -> CodeReviewAgent:
        """Restore the persisted snapshot, or start from configured defaults."""
        state = await load_snapshot(db, identity)
        if state is None:
            state = initial_state(identity, config.default_preferences)
        return cls(state, db, inference, config)

    async def invoke(self, operation: str, **arguments: Any) -> dict:
        """Run a named operation from OPERATIONS under this agent's lock."""
        op = OPERATIONS.get(operation)
        if op is None:
            raise KeyError(f"Unknown operation: {operation}")
        async with self._lock:
            return await op.handler(self, **arguments)

    async def review_code(self, code: str, language: str | None = None) -> dict:
        return await self.invoke("review_code", code=code, language=language)

    async def update_preferences(self, preferences: Mapping[str, Any]) -> dict:
        return await self.invoke("update_preferences", preferences=preferences)

    async def provide_feedback(
        self,
        review_id: str,
        helpful: bool,
        comments: str | None = None,
    ) -> dict:
        return await self.invoke(
            "provide_feedback",
            review_id=review_id,
            helpful=helpful,
            comments=comments,
        )

    async def get_stats(self) -> dict:
        return await self.invoke("get_stats")

    async def aclose(self) -> None:
        """Close the database once any in-flight operation has finished."""
        async with self._lock:
            await self.db.close()

    # ---- Operation handlers (caller holds self._lock) ----

    async def _review_code(self, code: str, language: str | None = None) -> dict:
        language = language or self.state.preferences.language
        known = await top_patterns(self.db, PatternType.DETECTED_ISSUE, self.config.top_patterns)
        prompt = build_review_prompt(
            code,
            language,
            self.state.preferences,
            [record.pattern for record in known],
        )

        try:
            review = await generate_with_timeout(
                self.inference,
                prompt,
                max_tokens=self.config.max_tokens,
                timeout=self.config.inference_timeout_seconds,
            )
        except InferenceError as exc:
            logger.warning("review_code -> inference failed: %s", exc)
            return {
                "success": False,
                "error": f"Failed to generate review: {exc}",
                "timestamp": _now_ms(),
            }

        timestamp = _now_ms()
        record = ReviewRecord(id=str(uuid.uuid4()), code=code, review=review, timestamp=timestamp)
        issues_found = count_issues(review)
        try:
            await self.db.execute("BEGIN IMMEDIATE")
            await insert_snippet(
                self.db,
                code=code,
                language=language,
                review=review,
                issues_found=issues_found,
                review_id=record.id,
            )
            learned = await learn_from_review(self.db, review)
            common = await top_patterns(self.db, PatternType.DETECTED_ISSUE, self.config.top_patterns)
            next_state = refresh_common_issues(
                push_review(self.state, record),
                [pattern.pattern for pattern in common],
            )
            await save_snapshot(self.db, next_state)
            await self.db.execute("COMMIT")
        except Exception:
            await _rollback_quietly(self.db)
            raise
        self.state = next_state

        logger.info(
            "review_code -> %s language=%s issues=%s learned=%s",
            record.id[:8],
            language,
            issues_found,
            len(learned),
        )
        return {
            "success": True,
            "review": review,
            "language": language,
            "timestamp": timestamp,
            "reviewId": record.id,
        }

    async def _update_preferences(self, preferences: Mapping[str, Any]) -> dict:
        next_state = merge_preferences(self.state, preferences)
        try:
            await self.db.execute("BEGIN IMMEDIATE")
            await save_snapshot(self.db, next_state)
            await self.db.execute("COMMIT")
        except Exception:
            await _rollback_quietly(self.db)
            raise
        self.state = next_state

        logger.info("update_preferences -> %s", ", ".join(sorted(preferences)) or "no fields")
        return {
            "success": True,
            "preferences": self.state.preferences.model_dump(by_alias=True, mode="json"),
        }

    async def _provide_feedback(
        self,
        review_id: str,
        helpful: bool,
        comments: str | None = None,
    ) -> dict:
        next_state, found = apply_feedback(self.state, review_id, helpful)
        if not found:
            logger.info("provide_feedback -> %s not in history, ignored", _clip(review_id, 16))
            return {"success": True, "found": False}

        record_negative = helpful is False and not _missing(comments)
        try:
            await self.db.execute("BEGIN IMMEDIATE")
            await save_snapshot(self.db, next_state)
            await mark_snippet_helpful(self.db, review_id, helpful)
            if record_negative:
                await insert_pattern(
                    self.db,
                    PatternType.USER_PREFERENCE,
                    comments,
                    user_feedback=NEGATIVE_FEEDBACK,
                )
            await self.db.execute("COMMIT")
        except Exception:
            await _rollback_quietly(self.db)
            raise
        self.state = next_state

        logger.info(
            "provide_feedback -> %s helpful=%s%s",
            review_id[:8],
            helpful,
            f" comment={_clip(comments)!r}" if record_negative else "",
        )
        return {"success": True, "found": True}

    async def _get_stats(self) -> dict:
        total = await count_snippets(self.db)
        common = await top_patterns(self.db, PatternType.DETECTED_ISSUE, self.config.top_patterns)
        return {
            "totalReviews": total,
            "commonIssues": [
                {"pattern": record.pattern, "frequency": record.frequency} for record in common
            ],
            "preferences": self.state.preferences.model_dump(by_alias=True, mode="json"),
            "recentReviews": len(self.state.review_history),
        }


@dataclass(frozen=True)
class Operation:
    """An agent operation reachable from both the tool surface and the message protocol."""

    name: str
    handler: Callable[..., Awaitable[dict]]


OPERATIONS: dict[str, Operation] = {
    op.name: op
    for op in (
        Operation("review_code", CodeReviewAgent._review_code),
        Operation("update_preferences", CodeReviewAgent._update_preferences),
        Operation("provide_feedback", CodeReviewAgent._provide_feedback),
        Operation("get_stats", CodeReviewAgent._get_stats),
    )
}
