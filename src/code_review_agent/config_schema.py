"""Agent configuration schema."""

from __future__ import annotations

import json
from pathlib import Path

from pydantic import BaseModel, Field, field_validator

from code_review_agent.models import Preferences

DEFAULT_MODEL = "@cf/meta/llama-3.1-8b-instruct"
DEFAULT_INFERENCE_BASE_URL = "https://api.cloudflare.com/client/v4"


class AgentConfig(BaseModel):
    """Validated runtime configuration shared by every identity's agent."""

    model: str = Field(default=DEFAULT_MODEL)
    inference_base_url: str = Field(default=DEFAULT_INFERENCE_BASE_URL)
    max_tokens: int = Field(default=1000, ge=1, le=8192)
    inference_timeout_seconds: float = Field(default=60.0, gt=0.0)
    top_patterns: int = Field(default=5, ge=1, le=50)
    default_preferences: Preferences = Field(default_factory=Preferences)

    @field_validator("model")
    @classmethod
    def _validate_model(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("model must not be empty")
        return value

    @field_validator("inference_base_url")
    @classmethod
    def _validate_base_url(cls, value: str) -> str:
        if not value.startswith(("http://", "https://")):
            raise ValueError(f"inference_base_url must be an http(s) URL: {value!r}")
        return value.rstrip("/")


def load_agent_config(config_path: str | Path) -> AgentConfig | None:
    """Load agent config from the ``review_agent`` section of a JSON file.

    Returns:
    - None when the review_agent section is missing.
    - AgentConfig when the section exists and validates.
    Raises:
    - FileNotFoundError if config file is missing.
    - pydantic ValidationError on invalid review_agent values.
    - json.JSONDecodeError for malformed JSON.
    """

    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(path)

    payload = json.loads(path.read_text(encoding="utf-8"))
    section = payload.get("review_agent") if isinstance(payload, dict) else None
    if section is None:
        return None
    if not isinstance(section, dict):
        raise ValueError("review_agent must be an object when provided")

    return AgentConfig.model_validate(section)
