"""Per-identity WebSocket endpoint and HTTP stats route."""

from __future__ import annotations

import json
import logging

from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import WebSocketRoute
from starlette.websockets import WebSocket, WebSocketDisconnect

from code_review_agent.db import AppContext
from code_review_agent.protocol import MessageDispatcher
from code_review_agent.server import current_identity, mcp

logger = logging.getLogger("code_review_agent")

AGENT_ROUTE_PATH = "/agents/code-review-agent/{identity}"

# WebSocket close code for "server is not ready" (RFC 6455 internal error).
_CLOSE_UNAVAILABLE = 1011

# Module-level AppContext, set by agent_lifespan via set_app_context().
_app_ctx: AppContext | None = None


def set_app_context(ctx: AppContext | None) -> None:
    """Store the AppContext for route handlers to access."""
    global _app_ctx
    _app_ctx = ctx


async def agent_websocket(websocket: WebSocket) -> None:
    """Speak the tagged message protocol with one identity's agent.

    The first frame sent is a ``stats`` snapshot. Each inbound frame gets
    exactly one reply. Closing the socket leaves the agent untouched.
    """
    identity = websocket.path_params["identity"]
    current_identity.set(identity)
    if _app_ctx is None:
        logger.warning("websocket -> rejected, agent registry not ready")
        await websocket.close(code=_CLOSE_UNAVAILABLE)
        return

    agent = await _app_ctx.registry.get_or_create(identity)
    dispatcher = MessageDispatcher(agent)
    await websocket.accept()
    await websocket.send_text(json.dumps(await dispatcher.on_connect()))

    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                dispatcher.on_close(message.get("code", 1000), message.get("reason") or "")
                return
            raw = message.get("text")
            if raw is None:
                raw = message.get("bytes") or b""
            reply = await dispatcher.handle(raw)
            await websocket.send_text(json.dumps(reply))
    except WebSocketDisconnect as exc:
        # Peer left while a reply was being produced or sent.
        dispatcher.on_close(exc.code, exc.reason or "")


def agent_websocket_route() -> WebSocketRoute:
    return WebSocketRoute(AGENT_ROUTE_PATH, agent_websocket, name="agent_websocket")


@mcp.custom_route(f"{AGENT_ROUTE_PATH}/stats", methods=["GET"])
async def agent_stats_api(request: Request) -> Response:
    """JSON endpoint returning the same payload as the ``stats`` message."""
    identity = request.path_params["identity"]
    current_identity.set(identity)
    if _app_ctx is None:
        return JSONResponse({"error": "agent registry not ready"}, status_code=503)
    agent = await _app_ctx.registry.get_or_create(identity)
    stats = await agent.invoke("get_stats")
    return JSONResponse({"type": "stats", **stats})
