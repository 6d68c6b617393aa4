from __future__ import annotations

import json
import sqlite3
import time
from typing import Any

from loguru import logger

from aethercodex.config import MemorySettings
from aethercodex.db import Database, utc_now
from aethercodex.models import Task, TaskStatus
from aethercodex.text import estimate_tokens, expire_code_blocks

WORKFLOW_MAX_STEPS = {"simple": 3, "analysis": 5}
DEFAULT_MAX_STEPS = 10

TASK_ACTIONS = ("create", "update", "activate", "update_plan", "advance_step", "delete", "list")


def max_steps_for_workflow(workflow_type: str | None) -> int:
    return WORKFLOW_MAX_STEPS.get(workflow_type or "full", DEFAULT_MAX_STEPS)


def _load_json(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        return default
    return value if isinstance(value, type(default)) else default


def _parse_status(value: str) -> TaskStatus:
    try:
        return TaskStatus(value)
    except ValueError:
        return TaskStatus.PENDING


def _row_to_task(row: sqlite3.Row) -> Task:
    keys = row.keys()
    return Task(
        id=int(row["id"]),
        title=row["title"] or "",
        plan=row["plan"] or "",
        status=_parse_status(row["status"] or "pending"),
        current_step=int(row["current_step"] or 0),
        workflow_type=row["workflow_type"] or "full",
        step_results=_load_json(row["step_results"], {}),
        tool_calls=_load_json(row["tool_calls_json"], {}) if "tool_calls_json" in keys else {},
        parent_task_id=row["parent_task_id"],
        subtask_results=_load_json(row["subtask_results"], {}),
        logs=_load_json(row["logs"], []),
        updates=_load_json(row["updates"], []),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def task_to_dict(task: Task) -> dict[str, Any]:
    return {
        "id": task.id,
        "title": task.title,
        "plan": task.plan,
        "status": task.status.value,
        "current_step": task.current_step,
        "workflow_type": task.workflow_type,
        "step_results": task.step_results,
        "tool_calls_json": task.tool_calls,
        "parent_task_id": task.parent_task_id,
        "subtask_results": task.subtask_results,
        "created_at": task.created_at,
    }


class TaskError(ValueError):
    pass


def _as_int(value: Any, label: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        raise TaskError(f"{label} must be an integer, got {value!r}") from None


class TaskLedger:
    """Hierarchical multi-step tasks with per-step results and tool-call maps."""

    def __init__(self, db: Database, settings: MemorySettings | None = None) -> None:
        self.db = db
        self.settings = settings or MemorySettings()

    def manage_task(self, action: str | None, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """Run one task action and report ``{"ok": ...}`` instead of raising on bad input."""
        params = dict(params or {})
        action = action or params.pop("action", None) or "list"
        handler = getattr(self, f"_action_{action}", None) if action in TASK_ACTIONS else None
        if handler is None:
            return {"ok": False, "error": f"unknown task action: {action}"}
        try:
            return handler(params)
        except TaskError as exc:
            logger.warning("Task action {} rejected: {}", action, exc)
            return {"ok": False, "error": str(exc)}

    def _require_task(self, params: dict[str, Any]) -> Task:
        task_id = params.get("id")
        if task_id is None:
            raise TaskError("task id is required")
        task = self.get_task(_as_int(task_id, "task id"))
        if task is None:
            raise TaskError(f"task {task_id} not found")
        return task

    @staticmethod
    def _validate_step(task: Task, step: Any) -> int:
        step = _as_int(step, "step")
        limit = max_steps_for_workflow(task.workflow_type)
        if step < 0 or step > limit:
            raise TaskError(f"step {step} is outside 0..{limit} for workflow {task.workflow_type}")
        return step

    @staticmethod
    def _validate_status(status: Any) -> str:
        try:
            return TaskStatus(str(status)).value
        except ValueError:
            valid = ", ".join(item.value for item in TaskStatus)
            raise TaskError(f"invalid status {status!r}; expected one of {valid}") from None

    def _action_create(self, params: dict[str, Any]) -> dict[str, Any]:
        title = str(params.get("title") or "").strip()
        if not title:
            raise TaskError("title is required")
        plan = str(params.get("plan") or "")
        workflow_type = str(params.get("workflow_type") or "full")
        parent_task_id = params.get("parent_task_id")
        if parent_task_id is not None:
            parent_task_id = _as_int(parent_task_id, "parent_task_id")
            if self.db.fetch_task(parent_task_id) is None:
                raise TaskError(f"parent task {parent_task_id} not found")
        task_id = self.db.insert_task(
            title, plan, TaskStatus.PENDING.value, workflow_type, parent_task_id
        )
        logger.info("Created task {} ({})", task_id, title)
        return {
            "ok": True,
            "id": task_id,
            "title": title,
            "plan": plan,
            "workflow_type": workflow_type,
            "parent_task_id": parent_task_id,
        }

    def _action_update(self, params: dict[str, Any]) -> dict[str, Any]:
        task = self._require_task(params)
        fields: dict[str, Any] = {}
        if params.get("status"):
            fields["status"] = self._validate_status(params["status"])
        if params.get("current_step") is not None:
            fields["current_step"] = self._validate_step(task, params["current_step"])
        if params.get("step_results") is not None:
            step_results = params["step_results"]
            if isinstance(step_results, str):
                step_results = _load_json(step_results, {})
            if not isinstance(step_results, dict):
                raise TaskError("step_results must be a JSON object")
            fields["step_results"] = json.dumps(step_results, default=str)
        if fields:
            self.db.update_task_fields(task.id, fields)
        if params.get("log"):
            self.append_log(task.id, str(params["log"]))
        return {"ok": True}

    def _action_activate(self, params: dict[str, Any]) -> dict[str, Any]:
        task = self._require_task(params)
        self.db.update_task_fields(task.id, {"status": TaskStatus.ACTIVE.value})
        return {"ok": True}

    def _action_update_plan(self, params: dict[str, Any]) -> dict[str, Any]:
        task = self._require_task(params)
        plan = str(params.get("plan") or task.plan)
        step = params.get("current_step")
        step = self._validate_step(task, step) if step is not None else task.current_step
        updates = list(task.updates)
        updates.append({"step": step, "plan": plan, "timestamp": utc_now()})
        self.db.update_task_fields(
            task.id, {"plan": plan, "updates": json.dumps(updates), "current_step": step}
        )
        return {"ok": True}

    def _action_advance_step(self, params: dict[str, Any]) -> dict[str, Any]:
        task = self._require_task(params)
        step = params.get("current_step")
        step = self._validate_step(task, step if step is not None else task.current_step + 1)
        self.db.update_task_fields(task.id, {"current_step": step})
        return {"ok": True, "current_step": step}

    def _action_delete(self, params: dict[str, Any]) -> dict[str, Any]:
        task = self._require_task(params)
        self.db.delete_task(task.id)
        logger.info("Deleted task {}", task.id)
        return {"ok": True}

    def _action_list(self, params: dict[str, Any]) -> dict[str, Any]:
        parent = params.get("parent_task_id")
        rows = self.db.list_tasks(_as_int(parent, "parent_task_id") if parent is not None else None)
        budget = self.settings.task_list_max_tokens
        included: list[dict[str, Any]] = []
        tokens = 0
        for row in rows:
            item = task_to_dict(_row_to_task(row))
            cost = estimate_tokens(json.dumps(item, default=str))
            if tokens + cost > budget:
                item["plan"] = expire_code_blocks(item["plan"])
                cost = estimate_tokens(json.dumps(item, default=str))
                if tokens + cost > budget:
                    break
            included.append(item)
            tokens += cost
        return {"ok": True, "tasks": included}

    def get_task(self, task_id: int) -> Task | None:
        row = self.db.fetch_task(task_id)
        return _row_to_task(row) if row else None

    def get_subtasks(self, parent_task_id: int) -> list[Task]:
        return [_row_to_task(row) for row in self.db.fetch_subtasks(parent_task_id)]

    def update_subtask_results(self, parent_task_id: int, subtask_id: int, result: Any) -> bool:
        parent = self.get_task(parent_task_id)
        if parent is None:
            return False
        results = dict(parent.subtask_results)
        results[str(subtask_id)] = result
        return self.db.update_task_fields(
            parent_task_id, {"subtask_results": json.dumps(results, default=str)}
        ) > 0

    def record_step_result(
        self,
        task_id: int,
        step: int,
        result: Any,
        tool_calls: list[Any] | None = None,
    ) -> bool:
        """Store a step's result and its tool calls under the same step key."""
        task = self.get_task(task_id)
        if task is None:
            return False
        key = str(self._validate_step(task, step))
        step_results = dict(task.step_results)
        step_results[key] = result
        step_tool_calls = dict(task.tool_calls)
        step_tool_calls[key] = list(tool_calls or [])
        return self.db.update_task_fields(
            task_id,
            {
                "step_results": json.dumps(step_results, default=str),
                "tool_calls_json": json.dumps(step_tool_calls, default=str),
            },
        ) > 0

    def get_step_results(self, task_id: int) -> dict[str, Any]:
        task = self.get_task(task_id)
        return dict(task.step_results) if task else {}

    def append_log(self, task_id: int, message: str) -> bool:
        task = self.get_task(task_id)
        if task is None:
            return False
        logs = list(task.logs)
        logs.append({"timestamp": time.time(), "message": message})
        return self.db.update_task_fields(task_id, {"logs": json.dumps(logs)}) > 0
