"""Tagged JSON message protocol spoken over an identity's persistent connection.

Inbound ``type`` -> agent operation -> outbound ``type``:

    review              -> review_code         -> review-result
    update-preferences  -> update_preferences  -> preferences-updated
    feedback            -> provide_feedback    -> feedback-received
    get-stats           -> get_stats           -> stats

Anything else, or a frame that is not a JSON object, is answered with an
``error`` message. A bad message never ends the conversation.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from code_review_agent.agent import CodeReviewAgent

logger = logging.getLogger("code_review_agent")


class _Inbound(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    def to_arguments(self) -> dict[str, Any]:
        return {}


class ReviewMessage(_Inbound):
    type: Literal["review"]
    code: str
    language: str | None = None

    def to_arguments(self) -> dict[str, Any]:
        return {"code": self.code, "language": self.language}


class UpdatePreferencesMessage(_Inbound):
    type: Literal["update-preferences"]
    preferences: dict[str, Any]

    def to_arguments(self) -> dict[str, Any]:
        return {"preferences": self.preferences}


class FeedbackMessage(_Inbound):
    type: Literal["feedback"]
    review_id: str = Field(alias="reviewId")
    helpful: bool
    comments: str | None = None

    def to_arguments(self) -> dict[str, Any]:
        return {"review_id": self.review_id, "helpful": self.helpful, "comments": self.comments}


class GetStatsMessage(_Inbound):
    type: Literal["get-stats"]


@dataclass(frozen=True)
class Route:
    operation: str
    reply_type: str
    model: type[_Inbound]


MESSAGE_ROUTES: dict[str, Route] = {
    "review": Route("review_code", "review-result", ReviewMessage),
    "update-preferences": Route("update_preferences", "preferences-updated", UpdatePreferencesMessage),
    "feedback": Route("provide_feedback", "feedback-received", FeedbackMessage),
    "get-stats": Route("get_stats", "stats", GetStatsMessage),
}


def error_message(message: str, exc: Exception | None = None) -> dict:
    payload: dict[str, Any] = {"type": "error", "message": message}
    if exc is not None:
        payload["error"] = str(exc)
    return payload


class MessageDispatcher:
    """Routes one connection's inbound messages to its identity's agent."""

    def __init__(self, agent: CodeReviewAgent) -> None:
        self.agent = agent

    async def on_connect(self) -> dict:
        """Greeting sent as soon as the connection is established."""
        logger.info("connection established -> %s", self.agent.identity)
        stats = await self.agent.invoke("get_stats")
        return {"type": "stats", **stats}

    async def handle(self, raw: str | bytes) -> dict:
        """Answer one inbound frame with exactly one outbound message."""
        try:
            data = json.loads(raw)
        except (ValueError, RecursionError) as exc:
            # Also covers oversized int literals and pathological nesting.
            logger.info("message -> unparseable frame: %s", exc)
            return error_message("Failed to process message", exc)
        if not isinstance(data, dict):
            return error_message("Message must be a JSON object")

        msg_type = data.get("type")
        route = MESSAGE_ROUTES.get(msg_type) if isinstance(msg_type, str) else None
        if route is None:
            logger.info("message -> unknown type %r", msg_type)
            return error_message(f"Unknown command: {msg_type}")

        try:
            message = route.model.model_validate(data)
        except ValidationError as exc:
            logger.info("message -> invalid %s: %s", msg_type, exc.error_count())
            return error_message(f"Invalid {msg_type} message", exc)

        try:
            result = await self.agent.invoke(route.operation, **message.to_arguments())
        except Exception as exc:
            logger.exception("message -> %s failed", route.operation)
            return error_message("Failed to process message", exc)
        return {"type": route.reply_type, **result}

    def on_close(self, code: int, reason: str = "") -> None:
        """Connection closure is only logged; agent state outlives connections."""
        logger.info(
            "connection closed -> %s code=%s reason=%s",
            self.agent.identity,
            code,
            reason or "-",
        )
