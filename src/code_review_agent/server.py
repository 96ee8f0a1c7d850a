"""FastMCP server entry point for the Code Review Agent."""

from __future__ import annotations

import contextvars
import json
import logging
import os
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path

import uvicorn
from fastmcp import FastMCP
from starlette.applications import Starlette

from code_review_agent.db import agent_lifespan, user_config_dir

LOGGER_NAME = "code_review_agent"
LOG_FILENAME = "agent.jsonl"
AGENT_LOG_DIR_ENV_VAR = "REVIEW_AGENT_LOG_DIR"
AGENT_LOG_LEVEL_ENV_VAR = "REVIEW_AGENT_LOG_LEVEL"
AGENT_LOG_MAX_BYTES_ENV_VAR = "REVIEW_AGENT_LOG_MAX_BYTES"
AGENT_LOG_BACKUPS_ENV_VAR = "REVIEW_AGENT_LOG_BACKUPS"
DEFAULT_AGENT_LOG_MAX_BYTES = 5 * 1024 * 1024
DEFAULT_AGENT_LOG_BACKUPS = 5
DEFAULT_PORT = 8787

mcp = FastMCP(
    "code-review-agent",
    instructions=(
        "Per-user code review agent. Reviews code with a text-generation model, "
        "remembers recurring issues, and learns from feedback."
    ),
    lifespan=agent_lifespan,
)

# Identity whose agent is being served; "agent" for startup and shutdown lines.
current_identity: contextvars.ContextVar[str] = contextvars.ContextVar(
    "current_identity", default="agent"
)

# Import tools and routes to register them with the server.
# These imports MUST come AFTER mcp is created to avoid circular imports.
from code_review_agent import connections, tools  # noqa: F401, E402


class _IdentityFilter(logging.Filter):
    """Stamps ``record.identity`` so every handler sees the same value."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "identity"):
            record.identity = current_identity.get()  # type: ignore[attr-defined]
        return True


class _JsonFormatter(logging.Formatter):
    """One JSON object per line for the rotating agent logfile."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "identity": getattr(record, "identity", current_identity.get()),
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, separators=(",", ":"))


def _resolve_agent_log_dir() -> Path:
    override = os.environ.get(AGENT_LOG_DIR_ENV_VAR)
    if override:
        return Path(override).expanduser()
    return user_config_dir() / "agent-logs"


def _read_positive_int_env(name: str, default: int, minimum: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value < minimum:
        return default
    return value


def _resolve_log_level() -> int:
    level = logging.getLevelName(os.environ.get(AGENT_LOG_LEVEL_ENV_VAR, "INFO").upper())
    return level if isinstance(level, int) else logging.INFO


def _console_handler() -> logging.Handler:
    handler = logging.StreamHandler()
    handler.setFormatter(
        logging.Formatter("%(asctime)s [%(identity)s] %(levelname)s %(message)s", "%H:%M:%S")
    )
    return handler


def _file_handler() -> logging.Handler:
    log_dir = _resolve_agent_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        log_dir / LOG_FILENAME,
        maxBytes=_read_positive_int_env(
            AGENT_LOG_MAX_BYTES_ENV_VAR, DEFAULT_AGENT_LOG_MAX_BYTES, 1024
        ),
        backupCount=_read_positive_int_env(
            AGENT_LOG_BACKUPS_ENV_VAR, DEFAULT_AGENT_LOG_BACKUPS, 1
        ),
        encoding="utf-8",
    )
    handler.setFormatter(_JsonFormatter())
    return handler


def _configure_logging() -> None:
    """Install the console and JSONL file handlers once; later calls only reset the level.

    Importing this module installs nothing; ``main()`` calls this.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(_resolve_log_level())
    logger.propagate = False

    installed = {getattr(handler, "_review_agent_handler", None) for handler in logger.handlers}
    for kind, build in (("console", _console_handler), ("file", _file_handler)):
        if kind in installed:
            continue
        handler = build()
        handler._review_agent_handler = kind  # type: ignore[attr-defined]
        handler.addFilter(_IdentityFilter())
        logger.addHandler(handler)


def create_http_app() -> Starlette:
    """Build the ASGI app: MCP tools at /mcp plus the per-identity WebSocket route."""
    app = mcp.http_app(transport="streamable-http", stateless_http=True)
    app.router.routes.insert(0, connections.agent_websocket_route())
    return app


def main() -> None:
    """Run the agent server on port 8787.

    Set REVIEW_AGENT_HOST / REVIEW_AGENT_PORT to override the bind address.

    Storage:
    - One SQLite database per identity under the user config dir:
      Linux: ~/.config/code-review-agent/agents/
      macOS: ~/Library/Application Support/code-review-agent/agents/
      Windows: %APPDATA%/code-review-agent/agents/
    - Set REVIEW_AGENT_DATA_DIR to override the directory.
    """
    _configure_logging()
    host = os.environ.get("REVIEW_AGENT_HOST", "0.0.0.0")
    port = _read_positive_int_env("REVIEW_AGENT_PORT", DEFAULT_PORT, 1)
    uvicorn_log_level = os.environ.get("REVIEW_AGENT_UVICORN_LOG_LEVEL", "warning")
    uvicorn.run(create_http_app(), host=host, port=port, log_level=uvicorn_log_level)


if __name__ == "__main__":
    main()
