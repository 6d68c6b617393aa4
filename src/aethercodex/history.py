from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Callable

from aethercodex.models import ConversationEntry
from aethercodex.text import compact_repr, truncate, truncate_middle

BEGIN_MARKER = "=== BEGIN TOOL HISTORY ==="
END_MARKER = "=== END TOOL HISTORY ==="


@dataclass(frozen=True)
class TruncationLimits:
    args: int
    result: int
    content: int


def tier_limits(tool_priority: int, combined: float) -> TruncationLimits:
    """Character limits for one tool call, picked by its declared priority tier."""
    if tool_priority == 1:
        return TruncationLimits(
            max(50, int(combined * 25)), max(0, int(combined * 50)), max(50, int(combined * 25))
        )
    if 2 <= tool_priority <= 4:
        return TruncationLimits(
            max(100, int(combined * 50)), max(200, int(combined * 100)), max(100, int(combined * 50))
        )
    if 5 <= tool_priority <= 9:
        return TruncationLimits(
            max(200, int(combined * 100)), max(400, int(combined * 200)), max(200, int(combined * 100))
        )
    if tool_priority >= 10:
        return TruncationLimits(
            max(500, int(combined * 200)), max(1000, int(combined * 400)), max(500, int(combined * 200))
        )
    return TruncationLimits(50, 0, 100)


def history_limits(
    index: int, tool_index: int, total: int, tool_priority: int
) -> TruncationLimits:
    """Limits for the ``tool_index``-th of ``total`` calls in the entry ``index`` turns back.

    Detail decays exponentially with distance from the present and shrinks
    when an entry holds many calls; later calls in the latest entry get a boost.
    """
    base_priority = math.exp(-float(index)) * 3
    density = max(1.0, total / 5.0)
    position = 1.0 + (tool_index / total) * 0.5 if index == 0 and total else 1.0
    combined = (base_priority + tool_priority) * position / density
    limits = tier_limits(tool_priority, combined)
    if index == 0:
        limits = TruncationLimits(
            int(limits.args * 1.5), int(limits.result * 1.5), int(limits.content * 1.5)
        )
    return limits


def format_history_tool_calls(
    tool_calls: list[dict[str, Any]],
    index: int,
    priority_of: Callable[[str], int],
) -> str:
    lines: list[str] = []
    total = len(tool_calls)
    for tool_index, call in enumerate(tool_calls):
        request = call.get("request") if isinstance(call.get("request"), dict) else {}
        name = request.get("tool")
        if name is None and call.get("content") is None:
            lines.append("")
            continue
        limits = history_limits(index, tool_index, total, priority_of(str(name)) if name else 0)
        args = ""
        if limits.args > 20:
            args = " " + truncate_middle(compact_repr(request.get("args") or {}), limits.args)
        if limits.result > 30:
            result = " → " + truncate_middle(compact_repr(call.get("result")), limits.result) + "\n"
        else:
            result = " # result omitted"
        content = ""
        if call.get("content") is not None:
            content = f"{END_MARKER}\n{truncate(str(call['content']), limits.content)}\n{BEGIN_MARKER}\n"
        lines.append(f"{name or ''}{args}{result}{content}")
    return f"{BEGIN_MARKER}\n" + "\n".join(lines) + f"\n{END_MARKER}"


def format_history_entry(
    entry: ConversationEntry,
    index: int,
    priority_of: Callable[[str], int],
) -> list[dict[str, str]]:
    """Render one stored exchange as a user/assistant message pair."""
    answer = entry.answer
    if entry.tool_calls:
        answer = format_history_tool_calls(entry.tool_calls, index, priority_of) + "\n" + answer
    return [
        {"role": "user", "content": entry.prompt},
        {"role": "assistant", "content": answer},
    ]
