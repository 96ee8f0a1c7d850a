"""Review prompt construction."""

from __future__ import annotations

from collections.abc import Sequence

from code_review_agent.models import Preferences

RESPONSE_STRUCTURE = """\
Provide a structured review with:
1. Issues found (if any)
2. Suggestions for improvement
3. Good practices observed
4. Security concerns (if any)

Be constructive and educational."""


def build_review_prompt(
    code: str,
    language: str,
    preferences: Preferences,
    known_patterns: Sequence[str] = (),
) -> str:
    """Build the review prompt. Pure: depends only on its arguments."""
    sections = [
        f"You are an expert {language} code reviewer.\n"
        f"Review the following code with {preferences.strictness} strictness.\n"
        f"Focus on: {', '.join(preferences.focus_areas)}.\n"
        f"Style guide: {preferences.style_guide}."
    ]
    if known_patterns:
        sections.append(f"Common issues to check: {', '.join(known_patterns)}")
    sections.append(f"Code to review:\n```{language}\n{code}\n```")
    sections.append(RESPONSE_STRUCTURE)
    return "\n\n".join(sections)
