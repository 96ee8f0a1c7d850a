"""Snapshot reducers and persistence for per-identity agent state.

Every write produces a new ``AgentState``; nothing mutates a snapshot in place.
The agent persists the new snapshot and only then swaps it in.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

import aiosqlite

from code_review_agent.models import AgentState, Preferences, ReviewRecord

HISTORY_LIMIT = 10

# Accept both wire (camelCase) and Python (snake_case) preference keys.
PREFERENCE_KEYS: dict[str, str] = {
    **{name: name for name in Preferences.model_fields},
    **{
        field.alias: name
        for name, field in Preferences.model_fields.items()
        if field.alias is not None
    },
}


def initial_state(identity: str, preferences: Preferences | None = None) -> AgentState:
    return AgentState(identity=identity, preferences=preferences or Preferences())


def push_review(state: AgentState, record: ReviewRecord) -> AgentState:
    """Prepend a review, evicting the oldest beyond HISTORY_LIMIT."""
    history = (record, *state.review_history)[:HISTORY_LIMIT]
    return state.model_copy(update={"review_history": history})


def merge_preferences(state: AgentState, partial: Mapping[str, Any]) -> AgentState:
    """Shallow-merge known preference fields; unknown keys are ignored.

    Values are not checked against the Strictness enum.
    Raises pydantic ValidationError when a value has the wrong type.
    """
    updates = {PREFERENCE_KEYS[key]: value for key, value in partial.items() if key in PREFERENCE_KEYS}
    merged = Preferences.model_validate({**state.preferences.model_dump(), **updates})
    return state.model_copy(update={"preferences": merged})


def apply_feedback(state: AgentState, review_id: str, helpful: bool) -> tuple[AgentState, bool]:
    """Set ``accepted`` on the matching history entry.

    Returns the new state and whether the review was found. A miss returns
    the input state unchanged.
    """
    for index, record in enumerate(state.review_history):
        if record.id == review_id:
            updated = record.model_copy(update={"accepted": helpful})
            history = (*state.review_history[:index], updated, *state.review_history[index + 1:])
            return state.model_copy(update={"review_history": history}), True
    return state, False


def refresh_common_issues(state: AgentState, issues: Sequence[str]) -> AgentState:
    summary = state.patterns_summary.model_copy(update={"common_issues": tuple(issues)})
    return state.model_copy(update={"patterns_summary": summary})


async def load_snapshot(db: aiosqlite.Connection, identity: str) -> AgentState | None:
    cursor = await db.execute(
        "SELECT snapshot FROM agent_state WHERE identity = ?",
        (identity,),
    )
    row = await cursor.fetchone()
    if row is None:
        return None
    return AgentState.model_validate_json(row["snapshot"])


async def save_snapshot(db: aiosqlite.Connection, state: AgentState) -> None:
    """Replace the stored snapshot for ``state.identity``.

    Must be called INSIDE an existing BEGIN IMMEDIATE...COMMIT block.
    """
    await db.execute(
        """INSERT INTO agent_state (identity, snapshot, updated_at)
           VALUES (?, ?, strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
           ON CONFLICT(identity) DO UPDATE SET
               snapshot = excluded.snapshot,
               updated_at = excluded.updated_at""",
        (state.identity, state.model_dump_json(by_alias=True)),
    )
