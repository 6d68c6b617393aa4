from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from loguru import logger

from aethercodex.models import DivineInterrupt

if TYPE_CHECKING:
    from aethercodex.memory import MemoryStore
    from aethercodex.tasks import TaskLedger

Handler = Callable[[dict[str, Any], dict[str, Any]], Any]


class InvalidArgument(ValueError):
    """A tool argument that cannot be coerced to the declared type."""


@dataclass(frozen=True)
class ToolDefinition:
    name: str
    description: str
    params: dict[str, dict[str, Any]]
    handler: Handler
    required: tuple[str, ...] = ()
    history_priority: int = 1

    def schema(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": self.params,
                    "required": list(self.required),
                },
            },
        }


@dataclass
class ToolRegistry:
    _tools: dict[str, ToolDefinition] = field(default_factory=dict)

    def register(self, definition: ToolDefinition) -> None:
        self._tools[definition.name] = definition

    def register_all(self, definitions: list[ToolDefinition]) -> "ToolRegistry":
        for definition in definitions:
            self.register(definition)
        return self

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    def get(self, name: str) -> ToolDefinition | None:
        return self._tools.get(name)

    def list_tools(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def describe_tools(self) -> str:
        lines: list[str] = []
        for tool in self.list_tools():
            args_desc = ", ".join(tool.params) or "none"
            lines.append(f"- {tool.name}: {tool.description} (args: {args_desc})")
        return "\n".join(lines)

    def schema(self) -> list[dict[str, Any]]:
        return [tool.schema() for tool in self.list_tools()]

    def priority_of(self, name: str) -> int:
        tool = self.get(name)
        return tool.history_priority if tool else 0

    def reject(self, *names: str) -> "ToolRegistry":
        excluded = set(names)
        return ToolRegistry({name: tool for name, tool in self._tools.items() if name not in excluded})

    def dispatch(self, name: str, arguments: dict[str, Any], context: dict[str, Any]) -> Any:
        tool = self.get(name)
        if tool is None:
            logger.warning("Model requested unknown tool {}", name)
            return {"error": f"Unknown tool: {name}"}
        missing = [key for key in tool.required if arguments.get(key) in (None, "")]
        if missing:
            return {"error": f"Missing required arguments for {name}: {', '.join(missing)}"}
        try:
            return tool.handler(arguments, context)
        except InvalidArgument as exc:
            logger.warning("Rejected arguments for {}: {}", name, exc)
            return {"error": f"Invalid arguments for {name}: {exc}"}

    __call__ = dispatch


def _number(args: dict[str, Any], key: str, cast: Callable[[Any], Any] = int, default: Any = None) -> Any:
    value = args.get(key)
    if value is None or value == "":
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        raise InvalidArgument(f"{key} must be a number, got {value!r}") from None


def _csv_list(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return [item.strip() for item in value.split(",") if item.strip()]
    return [str(item) for item in value]


def build_step_tools() -> list[ToolDefinition]:
    def complete_step(args: dict[str, Any], _context: dict[str, Any]) -> dict[str, Any]:
        return DivineInterrupt(kind="step_completed", result=args.get("result")).to_marker()

    def reject_step(args: dict[str, Any], _context: dict[str, Any]) -> dict[str, Any]:
        return DivineInterrupt(
            kind="step_rejected",
            reason=args.get("reason"),
            restart_from_step=_number(args, "restart_from_step"),
        ).to_marker()

    return [
        ToolDefinition(
            name="task_complete_step",
            description="Finish the current task step and hand its result back to the task engine.",
            params={"result": {"type": "string", "description": "Summary of what the step produced"}},
            handler=complete_step,
            history_priority=10,
        ),
        ToolDefinition(
            name="task_reject_step",
            description="Reject the current task step, optionally restarting from an earlier step.",
            params={
                "reason": {"type": "string", "description": "Why the step cannot be accepted"},
                "restart_from_step": {"type": "integer", "description": "Step to resume from"},
            },
            handler=reject_step,
            history_priority=10,
        ),
    ]


def build_memory_tools(memory: "MemoryStore", ledger: "TaskLedger") -> list[ToolDefinition]:
    def recall(args: dict[str, Any], _context: dict[str, Any]) -> dict[str, Any]:
        notes = memory.recall_notes(str(args["query"]), limit=_number(args, "limit", default=5))
        return {"notes": [note.as_dict() for note in notes]}

    def remember(args: dict[str, Any], _context: dict[str, Any]) -> dict[str, Any]:
        note_id = memory.create_note(
            str(args["content"]), links=_csv_list(args.get("links")), tags=_csv_list(args.get("tags"))
        )
        return {"ok": True, "id": note_id}

    def update(args: dict[str, Any], _context: dict[str, Any]) -> dict[str, Any]:
        updated = memory.update_note(
            _number(args, "id"),
            content=args.get("content"),
            links=_csv_list(args.get("links")),
            tags=_csv_list(args.get("tags")),
        )
        return {"ok": updated}

    def remove(args: dict[str, Any], _context: dict[str, Any]) -> dict[str, Any]:
        return {"ok": memory.remove_note(_number(args, "id"))}

    def tasks(args: dict[str, Any], _context: dict[str, Any]) -> dict[str, Any]:
        params = dict(args)
        action = params.pop("action", None)
        return ledger.manage_task(action, params)

    def unveil(args: dict[str, Any], _context: dict[str, Any]) -> dict[str, Any]:
        state = memory.unveil_aegis(
            tags=_csv_list(args.get("tags")),
            summary=args.get("summary"),
            temperature=_number(args, "temperature", float),
        )
        return {"ok": True, "aegis": state.as_dict()}

    string_list = {"type": "array", "items": {"type": "string"}}
    return [
        ToolDefinition(
            name="recall_notes",
            description="Search project notes by keywords.",
            params={"query": {"type": "string"}, "limit": {"type": "integer"}},
            handler=recall,
            required=("query",),
            history_priority=2,
        ),
        ToolDefinition(
            name="remember",
            description="Store a project note with optional file links and tags.",
            params={"content": {"type": "string"}, "links": string_list, "tags": string_list},
            handler=remember,
            required=("content",),
        ),
        ToolDefinition(
            name="update_note",
            description="Update an existing note.",
            params={
                "id": {"type": "integer"},
                "content": {"type": "string"},
                "links": string_list,
                "tags": string_list,
            },
            handler=update,
            required=("id",),
        ),
        ToolDefinition(
            name="remove_note",
            description="Delete a note by id.",
            params={"id": {"type": "integer"}},
            handler=remove,
            required=("id",),
        ),
        ToolDefinition(
            name="manage_tasks",
            description="Create, update, advance, list or delete multi-step tasks.",
            params={
                "action": {
                    "type": "string",
                    "enum": ["create", "update", "activate", "update_plan", "advance_step", "delete", "list"],
                },
                "id": {"type": "integer"},
                "title": {"type": "string"},
                "plan": {"type": "string"},
                "status": {"type": "string"},
                "current_step": {"type": "integer"},
                "workflow_type": {"type": "string"},
                "parent_task_id": {"type": "integer"},
                "log": {"type": "string"},
            },
            handler=tasks,
            required=("action",),
            history_priority=3,
        ),
        ToolDefinition(
            name="unveil_aegis",
            description="Update the sticky orientation: focus tags, summary and sampling temperature.",
            params={"tags": string_list, "summary": {"type": "string"}, "temperature": {"type": "number"}},
            handler=unveil,
            history_priority=5,
        ),
    ]
