from __future__ import annotations

import json
import re
from typing import Any

OMISSION = "..."

STOP_WORDS = frozenset(
    """
    the a an and of in to with on for is are am be was were it this that
    at by from as if or but so not into out about then
    """.split()
)

_WORD = re.compile(r"\w+")
_FENCED_BLOCK = re.compile(r"\n\s*```(\w*).*?\n\s*```\s*\n", re.DOTALL)


def estimate_tokens(text: str) -> int:
    cleaned = text.strip()
    if not cleaned:
        return 0
    return max(1, int(len(cleaned) / 4))


def truncate(text: str, limit: int) -> str:
    """Cut ``text`` to at most ``limit`` characters, ending with an ellipsis."""
    if len(text) <= limit:
        return text
    if limit <= len(OMISSION):
        return text[:limit]
    return text[: limit - len(OMISSION)] + OMISSION


def truncate_middle(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    if limit <= len(OMISSION):
        return text[:limit]
    keep = limit - len(OMISSION)
    head = keep - keep // 2
    tail = keep // 2
    return text[:head] + OMISSION + (text[-tail:] if tail else "")


def expire_code_blocks(text: str) -> str:
    return _FENCED_BLOCK.sub(lambda match: f"```{match.group(1)}[CONTENT EXPIRED]```", text)


def tokenize(text: Any) -> set[str]:
    if not isinstance(text, str):
        return set()
    return set(_WORD.findall(text.lower())) - STOP_WORDS


def compact_repr(value: Any) -> str:
    """Render a value as JSON without quote characters, for tool history lines."""
    if isinstance(value, str):
        return value
    try:
        rendered = json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        rendered = str(value)
    return rendered.replace('"', "")
