from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping

INTERRUPT_KEY = "__divine_interrupt"


class TaskStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class ConversationEntry:
    id: int
    prompt: str
    answer: str
    tags: list[str]
    file: str | None
    selection: str | None
    execution_time: float
    tool_call_count: int
    tool_calls: list[dict[str, Any]]
    created_at: str


@dataclass(frozen=True)
class Note:
    id: int
    content: str
    tags: str
    links: str
    created_at: str
    updated_at: str | None = None
    score: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "content": self.content,
            "tags": self.tags,
            "links": self.links,
            "created_at": self.created_at,
            "score": self.score,
        }


@dataclass(frozen=True)
class Task:
    id: int
    title: str
    plan: str
    status: TaskStatus
    current_step: int
    workflow_type: str
    step_results: dict[str, Any] = field(default_factory=dict)
    tool_calls: dict[str, list[Any]] = field(default_factory=dict)
    parent_task_id: int | None = None
    subtask_results: dict[str, Any] = field(default_factory=dict)
    logs: list[dict[str, Any]] = field(default_factory=list)
    updates: list[dict[str, Any]] = field(default_factory=list)
    created_at: str | None = None
    updated_at: str | None = None


@dataclass(frozen=True)
class AegisState:
    tags: list[str] = field(default_factory=list)
    summary: str = ""
    temperature: float = 1.0
    created_at: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {"tags": list(self.tags), "summary": self.summary, "temperature": self.temperature}


@dataclass(frozen=True)
class DivineInterrupt:
    """Marker a tool returns to hand control back to the task engine."""

    kind: str
    reason: str | None = None
    result: Any = None
    restart_from_step: int | None = None

    @classmethod
    def from_result(cls, result: Any) -> "DivineInterrupt | None":
        if not isinstance(result, Mapping) or INTERRUPT_KEY not in result:
            return None
        restart = result.get("restart_from_step")
        return cls(
            kind=str(result[INTERRUPT_KEY]),
            reason=result.get("reason"),
            result=result.get("result"),
            restart_from_step=int(restart) if restart is not None else None,
        )

    def to_marker(self) -> dict[str, Any]:
        marker: dict[str, Any] = {INTERRUPT_KEY: self.kind}
        if self.reason is not None:
            marker["reason"] = self.reason
        if self.result is not None:
            marker["result"] = self.result
        if self.restart_from_step is not None:
            marker["restart_from_step"] = self.restart_from_step
        return marker
