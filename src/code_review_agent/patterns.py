"""Pattern and snippet persistence helpers.

All writers here must run INSIDE an existing BEGIN IMMEDIATE...COMMIT block.
The caller is responsible for transaction management and for serializing
access per identity.
"""

from __future__ import annotations

import aiosqlite

from code_review_agent.models import PatternRecord


def _row_to_pattern(row: aiosqlite.Row) -> PatternRecord:
    return PatternRecord(
        id=row["id"],
        pattern_type=row["pattern_type"],
        pattern=row["pattern"],
        frequency=row["frequency"],
        last_seen=row["last_seen"],
        user_feedback=row["user_feedback"],
    )


async def top_patterns(
    db: aiosqlite.Connection,
    pattern_type: str,
    limit: int = 5,
) -> list[PatternRecord]:
    """Return the most frequent patterns of a type, ties broken by insertion order."""
    cursor = await db.execute(
        """SELECT id, pattern_type, pattern, frequency, last_seen, user_feedback
           FROM review_patterns
           WHERE pattern_type = ?
           ORDER BY frequency DESC, id ASC
           LIMIT ?""",
        (pattern_type, limit),
    )
    rows = await cursor.fetchall()
    return [_row_to_pattern(row) for row in rows]


async def upsert_pattern(db: aiosqlite.Connection, pattern_type: str, pattern: str) -> int:
    """Insert a pattern or bump its frequency. Returns the resulting frequency.

    Keyed by exact, case-sensitive ``pattern`` text within ``pattern_type``.
    """
    cursor = await db.execute(
        """SELECT id, frequency FROM review_patterns
           WHERE pattern_type = ? AND pattern = ?
           ORDER BY id ASC
           LIMIT 1""",
        (pattern_type, pattern),
    )
    row = await cursor.fetchone()
    if row is None:
        await db.execute(
            """INSERT INTO review_patterns (pattern_type, pattern, frequency, last_seen)
               VALUES (?, ?, 1, strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))""",
            (pattern_type, pattern),
        )
        return 1

    await db.execute(
        """UPDATE review_patterns
           SET frequency = frequency + 1,
               last_seen = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
           WHERE id = ?""",
        (row["id"],),
    )
    return row["frequency"] + 1


async def insert_pattern(
    db: aiosqlite.Connection,
    pattern_type: str,
    pattern: str,
    user_feedback: str | None = None,
) -> int:
    """Always insert a new pattern row, even if an identical one exists."""
    cursor = await db.execute(
        """INSERT INTO review_patterns (pattern_type, pattern, frequency, last_seen, user_feedback)
           VALUES (?, ?, 1, strftime('%Y-%m-%dT%H:%M:%fZ', 'now'), ?)""",
        (pattern_type, pattern, user_feedback),
    )
    return cursor.lastrowid


async def insert_snippet(
    db: aiosqlite.Connection,
    *,
    code: str,
    language: str,
    review: str,
    issues_found: int,
    review_id: str | None = None,
) -> int:
    cursor = await db.execute(
        """INSERT INTO code_snippets (code, language, review, issues_found, review_id, timestamp)
           VALUES (?, ?, ?, ?, ?, strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))""",
        (code, language, review, issues_found, review_id),
    )
    return cursor.lastrowid


async def count_snippets(db: aiosqlite.Connection) -> int:
    cursor = await db.execute("SELECT COUNT(*) AS n FROM code_snippets")
    row = await cursor.fetchone()
    return int(row["n"]) if row is not None else 0


async def mark_snippet_helpful(db: aiosqlite.Connection, review_id: str, helpful: bool) -> bool:
    """Record feedback on the snippet produced by ``review_id``. Returns True if a row changed."""
    cursor = await db.execute(
        "UPDATE code_snippets SET helpful = ? WHERE review_id = ?",
        (int(helpful), review_id),
    )
    return cursor.rowcount > 0
