from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from loguru import logger

from aethercodex.config import AppConfig
from aethercodex.history import format_history_entry
from aethercodex.memory import MemoryStore
from aethercodex.models import ConversationEntry

PROJECT_FILE_PATTERNS = ("*.py", "*.rb", "*.js", "*.ts", "*.css", "*.html", "*.md", "*.toml")
EXCLUDED_DIRS = frozenset({".git", ".hg", ".venv", "venv", "node_modules", "__pycache__", "build", "dist"})
MAX_PROJECT_FILES = 500

MANIFEST_HEADER = "HERMETIC MANIFEST (Optional project guidance mutable by user and oracle) {name}:\n{content}"
MANIFEST_MISSING = "Hermetic manifest file not found"


@dataclass(frozen=True)
class Attachment:
    file: str | None = None
    selection: str | None = None
    line: int | None = None
    column: int | None = None
    selection_range: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {key: value for key, value in self.__dict__.items() if value is not None}


@dataclass
class ContextRequest:
    """What a caller wants the model to see.

    ``history`` is ``None``/``True`` for stored history, ``False`` or an empty
    list for none, or an explicit list of prior exchanges (oldest first).
    """

    prompt: str = ""
    messages: list[dict[str, Any]] | None = None
    attachments: list[Attachment] = field(default_factory=list)
    file: str | None = None
    selection: str | None = None
    history: bool | list[Any] | None = None
    context: dict[str, Any] | None = None
    env: dict[str, str] | None = None

    def resolved_attachments(self) -> list[Attachment]:
        if self.attachments:
            return list(self.attachments)
        if self.file or self.selection:
            return [Attachment(file=self.file, selection=self.selection)]
        return []


@dataclass(frozen=True)
class AssembledContext:
    history: list[dict[str, Any]]
    extra_context: dict[str, Any]

    def context_messages(self) -> list[dict[str, Any]]:
        """System messages carrying the manifest and the remaining extra context."""
        messages: list[dict[str, Any]] = []
        manifest = self.extra_context.get("hermetic_manifest")
        if manifest:
            messages.append(manifest)
        payload = {
            key: value
            for key, value in self.extra_context.items()
            if key != "hermetic_manifest" and value not in (None, [], {})
        }
        if payload:
            messages.append({"role": "system", "content": f"Context: {json.dumps(payload, default=str)}"})
        return messages


def list_project_files(
    root: Path,
    patterns: Iterable[str] = PROJECT_FILE_PATTERNS,
    limit: int = MAX_PROJECT_FILES,
) -> list[str]:
    if not root.is_dir():
        return []
    found: set[str] = set()
    for pattern in patterns:
        for path in root.rglob(pattern):
            relative = path.relative_to(root)
            if any(part in EXCLUDED_DIRS or part.startswith(".") for part in relative.parts[:-1]):
                continue
            if path.is_file():
                found.add(relative.as_posix())
    return sorted(found)[:limit]


def read_manifest(path: Path) -> dict[str, str]:
    """The manifest as a system message; read failures become placeholder text."""
    try:
        content = path.read_text(encoding="utf-8") if path.exists() else MANIFEST_MISSING
    except (OSError, UnicodeDecodeError) as exc:
        logger.warning("Could not read manifest {}: {}", path, exc)
        content = f"Error reading hermetic manifest: {exc}"
    return {"role": "system", "content": MANIFEST_HEADER.format(name=path.name, content=content)}


def _entry_from_mapping(item: Any) -> ConversationEntry | None:
    if isinstance(item, ConversationEntry):
        return item
    if not isinstance(item, dict):
        return None
    return ConversationEntry(
        id=int(item.get("id") or 0),
        prompt=str(item.get("prompt") or ""),
        answer=str(item.get("answer") or ""),
        tags=list(item.get("tags") or []),
        file=item.get("file"),
        selection=item.get("selection"),
        execution_time=float(item.get("execution_time") or 0.0),
        tool_call_count=len(item.get("tool_calls") or []),
        tool_calls=list(item.get("tool_calls") or []),
        created_at=str(item.get("created_at") or ""),
    )


class ContextAssembler:
    def __init__(
        self,
        memory: MemoryStore,
        config: AppConfig,
        priority_of: Callable[[str], int] | None = None,
    ) -> None:
        self.memory = memory
        self.config = config
        self.priority_of = priority_of or memory.priority_of

    def build(self, request: ContextRequest) -> AssembledContext:
        attachments = request.resolved_attachments()
        entries = self._history_entries(request.history)
        history = self._format_history(entries)
        earliest = next((entry.created_at for entry in entries if entry.created_at), None)
        if history and earliest:
            history = self._summary_messages(earliest) + history
        extra_context = self._extra_context(attachments, request)
        logger.debug(
            "Assembled context: {} history messages, {} attachments",
            len(history),
            len(attachments),
        )
        return AssembledContext(history=history, extra_context=extra_context)

    def _history_entries(self, history: bool | list[Any] | None) -> list[ConversationEntry]:
        if history is None or history is True:
            settings = self.config.memory
            return self.memory.fetch_history(
                limit=settings.history_limit,
                max_tokens=settings.history_max_tokens,
                include_tool_calls=True,
            )
        if history is False or not history:
            return []
        entries = [_entry_from_mapping(item) for item in history]
        return [entry for entry in entries if entry is not None]

    def _format_history(self, entries: list[ConversationEntry]) -> list[dict[str, Any]]:
        # index counts back from the newest entry
        formatted: list[list[dict[str, Any]]] = [
            format_history_entry(entry, index, self.priority_of)
            for index, entry in enumerate(reversed(entries))
        ]
        return [message for pair in reversed(formatted) for message in pair]

    def _summary_messages(self, before: str) -> list[dict[str, Any]]:
        summaries = self.memory.fetch_aegis_summaries(before, self.config.memory.summary_max_tokens)
        return [
            {"role": "system", "content": f"Summary: {item['summary']}\n\nTags: {item['tags']}"}
            for item in reversed(summaries)
        ]

    def _extra_context(self, attachments: list[Attachment], request: ContextRequest) -> dict[str, Any]:
        settings = self.config.memory
        orientation: dict[str, Any] = self.memory.aegis().as_dict()
        files = [item.file for item in attachments if item.file]
        if files:
            orientation["files"] = list(dict.fromkeys(files))
            selections = [
                {"path": item.file, "range": item.selection, "content": None}
                for item in attachments
                if item.file and item.selection
            ]
            if selections:
                orientation["selections"] = selections
        notes = self.memory.recall_aegis_notes(max_tokens=settings.aegis_notes_max_tokens)
        context = request.context or {}
        extra: dict[str, Any] = {
            "project_files": list_project_files(self.config.project_root),
            "attachments": [item.as_dict() for item in attachments],
            "aegis_orientation": orientation,
            "aegis_notes": [note.as_dict() for note in notes],
            "messages": context.get("messages"),
            "tool_context": context or None,
            "hermetic_manifest": read_manifest(self.config.manifest_path),
        }
        if request.env:
            extra["environment"] = dict(request.env)
        return extra
