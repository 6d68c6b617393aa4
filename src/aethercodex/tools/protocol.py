from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Mapping

from loguru import logger

TOOL_CALL_ALIASES: dict[str, str] = {
    "toolcalls": "tool_calls",
    "tools": "tool_calls",
    "tool_name": "name",
    "toolname": "name",
    "args": "arguments",
    "params": "arguments",
    "parameters": "arguments",
}

_JSON_BLOCK = re.compile(r"^\s*```json\s*\n(.*?)^\s*```", re.MULTILINE | re.DOTALL)


@dataclass(frozen=True)
class ToolCall:
    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def as_message_call(self) -> dict[str, Any]:
        """OpenAI-style ``tool_calls`` entry for the assistant message."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": json.dumps(self.arguments, default=str)},
        }


def canonical_keys(mapping: Mapping[str, Any]) -> dict[str, Any]:
    """Rename aliased keys; a canonical key already present wins over its alias."""
    normalized: dict[str, Any] = {}
    for key, value in mapping.items():
        canonical = TOOL_CALL_ALIASES.get(key, key)
        if canonical in normalized and canonical != key:
            continue
        normalized[canonical] = value
    return normalized


def _ensure_arguments(raw: Any) -> dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return {str(key): value for key, value in raw.items()}
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return {"error": raw}
        return _ensure_arguments(parsed) if isinstance(parsed, Mapping) else {"error": raw}
    return {"error": str(raw)}


def extract_name(call: Mapping[str, Any]) -> str | None:
    flat = canonical_keys(call)
    name = flat.get("name")
    if not name and isinstance(flat.get("function"), Mapping):
        name = canonical_keys(flat["function"]).get("name")
    return str(name) if name else None


def extract_arguments(call: Mapping[str, Any]) -> dict[str, Any]:
    flat = canonical_keys(call)
    raw = flat.get("arguments")
    if raw is None and isinstance(flat.get("function"), Mapping):
        raw = canonical_keys(flat["function"]).get("arguments")
    return _ensure_arguments(raw)


def normalize_call(call: Mapping[str, Any]) -> ToolCall | None:
    """Reduce any supported call shape to a ``ToolCall``; ``None`` when it names no tool."""
    name = extract_name(call)
    if not name:
        return None
    call_id = call.get("id")
    return ToolCall(
        id=str(call_id) if call_id else f"call_{uuid.uuid4().hex[:12]}",
        name=name,
        arguments=extract_arguments(call),
    )


def _calls_from_object(parsed: Any) -> list[ToolCall]:
    if not isinstance(parsed, Mapping):
        return []
    flat = canonical_keys(parsed)
    if isinstance(flat.get("tool_calls"), list):
        candidates = [item for item in flat["tool_calls"] if isinstance(item, Mapping)]
    elif "name" in flat or "function" in flat:
        candidates = [flat]
    else:
        return []
    calls = [normalize_call(item) for item in candidates]
    return [call for call in calls if call is not None]


def extract_from_content(text: str | None) -> list[ToolCall]:
    """Tool calls embedded in ```json fenced blocks, all blocks in document order."""
    if not text or not text.strip():
        return []
    calls: list[ToolCall] = []
    for match in _JSON_BLOCK.finditer(text):
        try:
            parsed = json.loads(match.group(1))
        except json.JSONDecodeError:
            logger.debug("Skipping unparsable json block in model content")
            continue
        calls.extend(_calls_from_object(parsed))
    return calls
