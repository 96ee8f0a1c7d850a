"""Tests for the per-identity WebSocket endpoint and HTTP stats route."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

import pytest
from starlette.applications import Starlette
from starlette.routing import Route
from starlette.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from code_review_agent import server
from code_review_agent.config_schema import AgentConfig
from code_review_agent.connections import (
    AGENT_ROUTE_PATH,
    agent_stats_api,
    agent_websocket,
    agent_websocket_route,
    set_app_context,
)
from code_review_agent.db import AppContext
from code_review_agent.registry import AgentRegistry

from conftest import DOCSTRING_REVIEW, StubInference, open_memory_db


def _build_app(inference: StubInference) -> Starlette:
    """Bare app with the agent routes and an in-memory registry."""

    @asynccontextmanager
    async def lifespan(app):
        config = AgentConfig(inference_timeout_seconds=2.0)
        registry = AgentRegistry(open_memory_db, inference, config)
        set_app_context(AppContext(registry=registry, config=config))
        try:
            yield
        finally:
            set_app_context(None)
            await registry.close_all()

    return Starlette(
        routes=[
            agent_websocket_route(),
            Route(f"{AGENT_ROUTE_PATH}/stats", agent_stats_api, methods=["GET"]),
        ],
        lifespan=lifespan,
    )


@pytest.fixture()
def client():
    with TestClient(_build_app(StubInference())) as test_client:
        yield test_client


def test_greeting_is_stats(client: TestClient) -> None:
    with client.websocket_connect("/agents/code-review-agent/alice") as ws:
        greeting = ws.receive_json()
    assert greeting["type"] == "stats"
    assert greeting["totalReviews"] == 0
    assert greeting["preferences"]["language"] == "python"


def test_review_then_stats(client: TestClient) -> None:
    with client.websocket_connect("/agents/code-review-agent/alice") as ws:
        ws.receive_json()
        ws.send_json({"type": "review", "code": "def f(): pass"})
        reply = ws.receive_json()
        assert reply["type"] == "review-result"
        assert reply["review"] == DOCSTRING_REVIEW

        ws.send_json({"type": "feedback", "reviewId": reply["reviewId"], "helpful": True})
        assert ws.receive_json() == {"type": "feedback-received", "success": True, "found": True}

        ws.send_json({"type": "get-stats"})
        stats = ws.receive_json()
    assert stats["totalReviews"] == 1


def test_bad_frame_keeps_connection(client: TestClient) -> None:
    with client.websocket_connect("/agents/code-review-agent/alice") as ws:
        ws.receive_json()
        ws.send_text("{broken")
        assert ws.receive_json()["message"] == "Failed to process message"
        ws.send_json({"type": "explode"})
        assert ws.receive_json()["message"] == "Unknown command: explode"
        ws.send_json({"type": "get-stats"})
        assert ws.receive_json()["type"] == "stats"


def test_state_survives_reconnect(client: TestClient) -> None:
    with client.websocket_connect("/agents/code-review-agent/alice") as ws:
        ws.receive_json()
        ws.send_json({"type": "update-preferences", "preferences": {"language": "rust"}})
        ws.receive_json()

    with client.websocket_connect("/agents/code-review-agent/alice") as ws:
        greeting = ws.receive_json()
    assert greeting["preferences"]["language"] == "rust"


def test_identities_are_separate_agents(client: TestClient) -> None:
    with client.websocket_connect("/agents/code-review-agent/alice") as ws:
        ws.receive_json()
        ws.send_json({"type": "review", "code": "x = 1"})
        ws.receive_json()

    with client.websocket_connect("/agents/code-review-agent/bob") as ws:
        assert ws.receive_json()["totalReviews"] == 0


def test_stats_route(client: TestClient) -> None:
    with client.websocket_connect("/agents/code-review-agent/alice") as ws:
        ws.receive_json()
        ws.send_json({"type": "review", "code": "x = 1"})
        ws.receive_json()

    resp = client.get("/agents/code-review-agent/alice/stats")
    assert resp.status_code == 200
    body = resp.json()
    assert body["type"] == "stats"
    assert body["totalReviews"] == 1
    assert body["recentReviews"] == 1


def test_not_ready_rejects_connections() -> None:
    app = Starlette(
        routes=[
            agent_websocket_route(),
            Route(f"{AGENT_ROUTE_PATH}/stats", agent_stats_api, methods=["GET"]),
        ]
    )
    set_app_context(None)
    client = TestClient(app)
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/agents/code-review-agent/alice"):
            pass
    assert exc_info.value.code == 1011
    assert client.get("/agents/code-review-agent/alice/stats").status_code == 503


def test_http_app_mounts_agent_routes() -> None:
    app = server.create_http_app()
    paths = [getattr(route, "path", None) for route in app.router.routes]
    assert paths[0] == AGENT_ROUTE_PATH
    assert f"{AGENT_ROUTE_PATH}/stats" in paths


def test_oversized_number_keeps_connection(client: TestClient) -> None:
    with client.websocket_connect("/agents/code-review-agent/alice") as ws:
        ws.receive_json()
        ws.send_text('{"type":"get-stats","x":' + "9" * 5000 + "}")
        reply = ws.receive_json()
        assert reply["type"] == "error"
        assert reply["message"] == "Failed to process message"
        ws.send_text("[" * 100000)
        assert ws.receive_json()["type"] == "error"
        ws.send_json({"type": "get-stats"})
        assert ws.receive_json()["type"] == "stats"


class _DroppingWebSocket:
    """Accepts the greeting, then fails every later send as a vanished peer would."""

    path_params = {"identity": "alice"}

    def __init__(self, frames: list[str]) -> None:
        self.frames = list(frames)
        self.sent: list[str] = []

    async def accept(self) -> None:
        return None

    async def receive(self) -> dict:
        if self.frames:
            return {"type": "websocket.receive", "text": self.frames.pop(0)}
        return {"type": "websocket.disconnect", "code": 1000}

    async def send_text(self, data: str) -> None:
        if self.sent:
            raise WebSocketDisconnect(code=1006)
        self.sent.append(data)


async def test_close_logged_when_peer_drops_mid_reply(
    registry: AgentRegistry, config: AgentConfig, caplog
) -> None:
    set_app_context(AppContext(registry=registry, config=config))
    socket = _DroppingWebSocket(['{"type": "review", "code": "x = 1"}'])
    try:
        with caplog.at_level(logging.INFO, logger="code_review_agent"):
            await agent_websocket(socket)
    finally:
        set_app_context(None)

    assert len(socket.sent) == 1
    assert "connection closed -> alice code=1006" in caplog.text
    agent = await registry.get_or_create("alice")
    assert len(agent.state.review_history) == 1
