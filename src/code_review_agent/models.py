"""Pydantic models and enums for the Code Review Agent."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Strictness(StrEnum):
    """Review tone levels. Stored preferences are not restricted to these."""

    LENIENT = "lenient"
    MODERATE = "moderate"
    STRICT = "strict"


class PatternType(StrEnum):
    """Kinds of rows kept in the review_patterns table."""

    DETECTED_ISSUE = "detected_issue"
    USER_PREFERENCE = "user_preference"


class _Snapshot(BaseModel):
    """Immutable, camelCase-on-the-wire base for the per-identity snapshot."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class Preferences(_Snapshot):
    """Per-identity review preferences."""

    language: str = "python"
    style_guide: str = "PEP8"
    strictness: str = Strictness.MODERATE.value
    focus_areas: tuple[str, ...] = ("readability", "performance", "security")


class ReviewRecord(_Snapshot):
    """One entry of the bounded in-memory review history.

    ``accepted`` is None until feedback arrives for this review.
    """

    id: str
    code: str
    review: str
    timestamp: int = Field(description="Unix epoch milliseconds")
    accepted: bool | None = None


class PatternsSummary(_Snapshot):
    """Cached view of recurring patterns; review_patterns is authoritative."""

    common_issues: tuple[str, ...] = ()
    ignored_rules: tuple[str, ...] = ()
    custom_rules: tuple[str, ...] = ()


class AgentState(_Snapshot):
    """Whole-snapshot state for one identity, replaced on every write."""

    identity: str
    preferences: Preferences = Field(default_factory=Preferences)
    review_history: tuple[ReviewRecord, ...] = ()
    patterns_summary: PatternsSummary = Field(default_factory=PatternsSummary)


class PatternRecord(BaseModel):
    """A row of the review_patterns table."""

    id: int
    pattern_type: str
    pattern: str
    frequency: int = 1
    last_seen: str | None = None
    user_feedback: str | None = None

