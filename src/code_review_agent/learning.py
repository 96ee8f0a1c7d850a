"""Issue counting and pattern learning from generated review text."""

from __future__ import annotations

import re

import aiosqlite

from code_review_agent.models import PatternType
from code_review_agent.patterns import upsert_pattern

ISSUE_KEYWORDS: tuple[str, ...] = ("issue", "problem", "error", "warning", "concern")

# Substring matches: "issues" and "errors" count too.
_ISSUE_KEYWORD_RE = re.compile("|".join(ISSUE_KEYWORDS), re.IGNORECASE)

# "Issue:" up to the next sentence terminator or line break.
_ISSUE_PHRASE_RE = re.compile(r"Issue:[^.!?\n]+")


def count_issues(review: str) -> int:
    """Count case-insensitive issue keyword occurrences in a review."""
    return len(_ISSUE_KEYWORD_RE.findall(review))


def extract_issue_phrases(review: str) -> list[str]:
    """Return every ``Issue: ...`` phrase in order of appearance.

    Phrases are returned verbatim, including the ``Issue:`` prefix, so that
    near-duplicate wording stays distinct. Phrases with no text after the
    colon are skipped.
    """
    return [
        match.group(0)
        for match in _ISSUE_PHRASE_RE.finditer(review)
        if match.group(0)[len("Issue:"):].strip()
    ]


async def learn_from_review(db: aiosqlite.Connection, review: str) -> list[str]:
    """Fold extracted issue phrases into review_patterns.

    Must be called INSIDE an existing BEGIN IMMEDIATE...COMMIT block.
    Returns the phrases that were upserted.
    """
    phrases = extract_issue_phrases(review)
    for phrase in phrases:
        await upsert_pattern(db, PatternType.DETECTED_ISSUE, phrase)
    return phrases
