"""MCP tool definitions for the Code Review Agent.

Each tool resolves the caller's agent by identity and runs the matching entry
of ``OPERATIONS``, the same table the WebSocket protocol dispatches through.
"""

from __future__ import annotations

import logging
from typing import Any

from fastmcp import Context

from code_review_agent.agent import CodeReviewAgent
from code_review_agent.db import AppContext
from code_review_agent.server import current_identity, mcp

logger = logging.getLogger("code_review_agent")


def mcp_tool(*args, **kwargs):
    """FastMCP tool decorator with legacy `.fn` compatibility for tests/internal calls."""
    raw_tool = mcp.tool

    # Bare decorator usage: @mcp_tool
    if args and callable(args[0]) and len(args) == 1 and not kwargs:
        fn = args[0]
        registered = raw_tool(fn)
        if not hasattr(registered, "fn"):
            registered.fn = registered
        return registered

    decorator = raw_tool(*args, **kwargs)

    def _decorate(fn):
        registered = decorator(fn)
        if not hasattr(registered, "fn"):
            registered.fn = registered
        return registered

    return _decorate


def _app_ctx(ctx: Context) -> AppContext:
    """Resolve the agent AppContext from a FastMCP Context, across versions."""
    if ctx is None:
        raise RuntimeError("Missing MCP context")
    if hasattr(ctx, "lifespan_context"):
        return ctx.lifespan_context
    rc = getattr(ctx, "request_context", None)
    if rc is not None and hasattr(rc, "lifespan_context"):
        return rc.lifespan_context
    fm = getattr(ctx, "fastmcp", None)
    if fm is not None and hasattr(fm, "_lifespan_result"):
        return fm._lifespan_result
    raise RuntimeError("Unable to resolve agent lifespan context")


async def _agent_for(ctx: Context, identity: str) -> CodeReviewAgent:
    current_identity.set(identity)
    app: AppContext = _app_ctx(ctx)
    return await app.registry.get_or_create(identity)


@mcp_tool
async def review_code(
    identity: str,
    code: str,
    language: str | None = None,
    ctx: Context = None,
) -> dict:
    """Review code and provide feedback.

    `language` defaults to the identity's preferred language. The result
    carries `reviewId`, which `provide_feedback` accepts while the review is
    among the identity's 10 most recent. On generation failure the result is
    `{success: false, error}` and nothing is stored.
    """
    agent = await _agent_for(ctx, identity)
    return await agent.invoke("review_code", code=code, language=language)


@mcp_tool
async def update_preferences(
    identity: str,
    preferences: dict[str, Any],
    ctx: Context = None,
) -> dict:
    """Update review preferences.

    Shallow-merges `language`, `styleGuide`, `strictness`, and `focusAreas`
    (snake_case also accepted). Fields not supplied keep their values and
    unknown keys are ignored. Any strictness string is accepted, but values of
    the wrong type (a non-string `strictness`, a bare string for `focusAreas`)
    are rejected and nothing changes.
    """
    agent = await _agent_for(ctx, identity)
    return await agent.invoke("update_preferences", preferences=preferences)


@mcp_tool
async def provide_feedback(
    identity: str,
    review_id: str,
    helpful: bool,
    comments: str | None = None,
    ctx: Context = None,
) -> dict:
    """Provide feedback on a review.

    Unhelpful feedback with comments is remembered as a user preference.
    Feedback on a review no longer in recent history succeeds with
    `found: false` and changes nothing.
    """
    agent = await _agent_for(ctx, identity)
    return await agent.invoke(
        "provide_feedback",
        review_id=review_id,
        helpful=helpful,
        comments=comments,
    )


@mcp_tool
async def get_stats(identity: str, ctx: Context = None) -> dict:
    """Get review statistics: total reviews, top recurring issues, preferences, history size."""
    agent = await _agent_for(ctx, identity)
    result = await agent.invoke("get_stats")
    logger.info(
        "get_stats -> total=%s recent=%s",
        result["totalReviews"],
        result["recentReviews"],
    )
    return result
