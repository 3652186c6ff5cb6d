"""Helpers for the out-of-band chat title summarization request."""

from __future__ import annotations

from collections.abc import Sequence
import re

FALLBACK_TITLE = "Chat"
MAX_TITLE_WORDS = 8
RESPONSE_EXCERPT_CHARS = 200

_STRIP_CHARS = re.compile(r"[\"'\n\r]")
_TITLE_PREFIX = re.compile(r"^title:", re.IGNORECASE)


def build_title_prompt(user_prompt: str, assistant_response: str) -> str:
    excerpt = assistant_response[:RESPONSE_EXCERPT_CHARS]
    return (
        "Generate a very concise title (3-6 words max) for this conversation:\n\n"
        f"User: {user_prompt}\nAssistant: {excerpt}..."
    )


def clean_title(raw: str) -> str:
    """Trim, strip quotes and newlines, drop a ``Title:`` prefix, cap at 8 words."""
    title = _STRIP_CHARS.sub("", raw.strip())
    title = _TITLE_PREFIX.sub("", title).strip()
    words = title.split(" ")
    if len(words) > MAX_TITLE_WORDS:
        title = " ".join(words[:MAX_TITLE_WORDS]) + "..."
    return title or FALLBACK_TITLE


def pick_title_model(
    available_models: Sequence[str], active_model: str, hints: Sequence[str]
) -> str:
    """Prefer a small model matching one of ``hints``; fall back to the active one."""
    for name in available_models:
        if any(hint in name for hint in hints):
            return name
    return active_model
