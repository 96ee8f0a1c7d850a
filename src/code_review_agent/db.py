"""Database connection, schema management, and lifespan for the Code Review Agent."""

from __future__ import annotations

import hashlib
import logging
import os
import re
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

import aiosqlite
from fastmcp import FastMCP

from code_review_agent.config_schema import AgentConfig, load_agent_config
from code_review_agent.inference import build_inference_client
from code_review_agent.registry import AgentRegistry

DB_SUFFIX = ".sqlite3"
USER_CONFIG_DIRNAME = "code-review-agent"
DATA_DIR_ENV_VAR = "REVIEW_AGENT_DATA_DIR"
CONFIG_PATH_ENV_VAR = "REVIEW_AGENT_CONFIG_PATH"
logger = logging.getLogger("code_review_agent")

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS review_patterns (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    pattern_type    TEXT NOT NULL,
    pattern         TEXT NOT NULL,
    frequency       INTEGER NOT NULL DEFAULT 1 CHECK(frequency >= 1),
    last_seen       TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    user_feedback   TEXT
);
CREATE INDEX IF NOT EXISTS idx_patterns_type_freq ON review_patterns(pattern_type, frequency);
CREATE INDEX IF NOT EXISTS idx_patterns_type_text ON review_patterns(pattern_type, pattern);

CREATE TABLE IF NOT EXISTS code_snippets (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    code            TEXT NOT NULL,
    language        TEXT,
    review          TEXT,
    issues_found    INTEGER NOT NULL DEFAULT 0,
    timestamp       TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    helpful         INTEGER CHECK(helpful IN (0, 1))
);

CREATE TABLE IF NOT EXISTS agent_state (
    identity        TEXT PRIMARY KEY,
    snapshot        TEXT NOT NULL,
    updated_at      TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

SCHEMA_MIGRATIONS: list[str] = [
    # Snippet -> history linkage for feedback
    "ALTER TABLE code_snippets ADD COLUMN review_id TEXT",
    "CREATE INDEX IF NOT EXISTS idx_snippets_review ON code_snippets(review_id)",
]


@dataclass
class AppContext:
    """Application context holding the agent registry."""

    registry: AgentRegistry
    config: AgentConfig
    data_dir: Path | None = None


async def ensure_schema(db: aiosqlite.Connection) -> None:
    """Create tables and indexes if they don't exist, then apply migrations."""
    await db.executescript(SCHEMA_SQL)
    for migration in SCHEMA_MIGRATIONS:
        try:
            await db.execute(migration)
        except aiosqlite.OperationalError as exc:
            # Idempotent migration: ignore only duplicate-column errors.
            if "duplicate column name" not in str(exc).lower():
                raise


async def connect_agent_db(path: str | Path) -> aiosqlite.Connection:
    """Open one identity's database with WAL mode and an up-to-date schema."""
    db = await aiosqlite.connect(
        str(path),
        isolation_level=None,  # CRITICAL: enables manual BEGIN IMMEDIATE
    )
    db.row_factory = aiosqlite.Row
    try:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA busy_timeout=5000")
        await db.execute("PRAGMA synchronous=NORMAL")
        await ensure_schema(db)
    except Exception:
        await db.close()
        raise
    return db


def user_config_dir() -> Path:
    """Cross-platform user config directory holding databases, config and logs."""
    xdg_config_home = os.environ.get("XDG_CONFIG_HOME")
    if xdg_config_home:
        return Path(xdg_config_home).expanduser() / USER_CONFIG_DIRNAME

    if os.name == "nt":
        appdata = os.environ.get("APPDATA")
        if appdata:
            return Path(appdata).expanduser() / USER_CONFIG_DIRNAME
        return Path.home() / "AppData" / "Roaming" / USER_CONFIG_DIRNAME

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / USER_CONFIG_DIRNAME

    return Path.home() / ".config" / USER_CONFIG_DIRNAME


def resolve_data_dir() -> Path:
    """Resolve the directory holding per-identity databases.

    Priority:
    1) Explicit REVIEW_AGENT_DATA_DIR environment variable
    2) ``agents/`` under the standard user config directory
    """
    configured = os.environ.get(DATA_DIR_ENV_VAR)
    if configured:
        return Path(configured).expanduser()
    return user_config_dir() / "agents"


def resolve_config_path() -> Path:
    configured = os.environ.get(CONFIG_PATH_ENV_VAR)
    if configured:
        return Path(configured).expanduser()
    return user_config_dir() / "config.json"


def identity_db_path(data_dir: Path, identity: str) -> Path:
    """Map an opaque identity to a stable, filesystem-safe database path.

    The readable prefix is for humans; the digest keeps distinct identities
    from colliding after sanitizing.
    """
    slug = re.sub(r"[^A-Za-z0-9_-]+", "-", identity).strip("-")[:40] or "identity"
    digest = hashlib.sha256(identity.encode("utf-8")).hexdigest()[:12]
    return data_dir / f"{slug}-{digest}{DB_SUFFIX}"


def _load_config() -> AgentConfig:
    config_path = resolve_config_path()
    try:
        config = load_agent_config(config_path)
    except FileNotFoundError:
        logger.info("No config file, using defaults (%s)", config_path)
    except Exception as exc:
        logger.warning("Failed to load review_agent config; using defaults: %s", exc)
    else:
        if config is not None:
            return config
        logger.info("No review_agent config section, using defaults")
    return AgentConfig()


@asynccontextmanager
async def agent_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Build the agent registry at server startup, close every agent on shutdown."""
    del server
    from code_review_agent.connections import set_app_context  # local import avoids cycle

    data_dir = resolve_data_dir()
    data_dir.mkdir(parents=True, exist_ok=True)
    config = _load_config()
    inference = build_inference_client(config)

    async def open_db(identity: str) -> aiosqlite.Connection:
        return await connect_agent_db(identity_db_path(data_dir, identity))

    registry = AgentRegistry(open_db, inference, config)
    ctx = AppContext(registry=registry, config=config, data_dir=data_dir)
    set_app_context(ctx)
    logger.info("Agent server ready - data=%s model=%s", data_dir, config.model)
    try:
        yield ctx
    finally:
        set_app_context(None)
        await registry.close_all()
        aclose = getattr(inference, "aclose", None)
        if aclose is not None:
            await aclose()
