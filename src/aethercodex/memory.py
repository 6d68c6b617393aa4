from __future__ import annotations

import json
import re
import sqlite3
from dataclasses import replace
from pathlib import Path
from typing import Any, Callable, Iterable

from loguru import logger

from aethercodex.config import MemorySettings
from aethercodex.db import Database
from aethercodex.history import format_history_tool_calls
from aethercodex.models import AegisState, ConversationEntry, Note
from aethercodex.text import estimate_tokens, expire_code_blocks, tokenize, truncate

MAX_NOTE_CONTENT_LENGTH = 500

# (lowest priority, limit) ordered from the most generous tier down.
STORAGE_TIERS: tuple[tuple[int, int], ...] = (
    (10, 3000),  # full
    (5, 1200),  # generous
    (2, 600),  # standard
    (0, 300),  # minimal
)

_CODE_BLOCK = re.compile(r"```(\w*)\n(.*?)\n```", re.DOTALL)

PriorityLookup = Callable[[str], int]


def truncate_note_content(content: str, max_length: int = MAX_NOTE_CONTENT_LENGTH) -> str:
    """Fit note content under ``max_length``, shortening code blocks before prose."""
    if len(content) <= max_length:
        return content
    blocks = list(_CODE_BLOCK.finditer(content))
    if blocks:
        frame = len(content) - sum(len(match.group(2)) for match in blocks)
        per_block = min(max_length // 2, (max_length - frame) // len(blocks))
        if per_block > 3:

            def shorten(match: re.Match[str]) -> str:
                lang, inner = match.group(1), match.group(2)
                if len(inner) > per_block:
                    inner = inner[: per_block - 3] + "..."
                return f"```{lang}\n{inner}\n```"

            shortened = _CODE_BLOCK.sub(shorten, content)
            if len(shortened) <= max_length:
                return shortened
    return truncate(content, max_length)


def storage_limit_for_priority(priority: int) -> int:
    for floor, limit in STORAGE_TIERS:
        if priority >= floor:
            return limit
    return STORAGE_TIERS[-1][1]


def truncate_value(value: Any, limit: int) -> Any:
    """Truncate strings inside ``value``; nested maps get half, list strings a third."""
    if isinstance(value, str):
        return truncate(value, limit)
    if isinstance(value, dict):
        truncated: dict[Any, Any] = {}
        for key, item in value.items():
            if isinstance(item, str):
                truncated[key] = truncate(item, limit)
            elif isinstance(item, dict):
                truncated[key] = truncate_value(item, limit // 2)
            elif isinstance(item, list):
                truncated[key] = [truncate(v, limit // 3) if isinstance(v, str) else v for v in item]
            else:
                truncated[key] = item
        return truncated
    if isinstance(value, list):
        return [truncate(v, limit // 3) if isinstance(v, str) else v for v in value]
    return value


def tool_name_of(tool_call: dict[str, Any]) -> str | None:
    request = tool_call.get("request")
    if isinstance(request, dict):
        name = request.get("tool")
        return str(name) if name is not None else None
    return None


def _split_csv(value: Iterable[str] | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return ",".join(str(item) for item in value)


def _load_json(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default


def _row_to_note(row: sqlite3.Row) -> Note:
    keys = row.keys()
    return Note(
        id=int(row["id"]),
        content=row["content"] or "",
        tags=row["tags"] or "",
        links=row["links"] or "",
        created_at=row["created_at"],
        updated_at=row["updated_at"] if "updated_at" in keys else None,
    )


def _row_to_entry(row: sqlite3.Row, include_tool_calls: bool) -> ConversationEntry:
    tool_calls = _load_json(row["tool_calls_json"], []) if include_tool_calls else []
    return ConversationEntry(
        id=int(row["id"]),
        prompt=row["prompt"] or "",
        answer=row["answer"] or "",
        tags=[tag for tag in (row["tags"] or "").split(",") if tag],
        file=row["file"],
        selection=row["selection"],
        execution_time=float(row["execution_time"] or 0.0),
        tool_call_count=int(row["tool_call_count"] or 0),
        tool_calls=tool_calls if isinstance(tool_calls, list) else [],
        created_at=row["created_at"],
    )


class MemoryStore:
    """Durable conversation history, notes and Aegis orientation snapshots."""

    def __init__(
        self,
        db: Database,
        settings: MemorySettings | None = None,
        priority_of: PriorityLookup | None = None,
        project_root: Path | None = None,
    ) -> None:
        self.db = db
        self.settings = settings or MemorySettings()
        self.priority_of = priority_of or (lambda _name: 1)
        self.project_root = project_root

    # conversation entries

    def record_entry(
        self,
        prompt: str = "",
        answer: str = "",
        tags: Iterable[str] | None = None,
        tool_calls: list[dict[str, Any]] | None = None,
        file: str | None = None,
        attachments: list[dict[str, Any]] | None = None,
        execution_time: float = 0.0,
        timestamp: str | None = None,
    ) -> int:
        stored_calls = self.truncate_tool_calls(tool_calls or [])
        entry_id = self.db.insert_entry(
            prompt=prompt,
            answer=answer,
            tags=",".join(tags or []),
            file=file,
            selection=json.dumps(attachments or []),
            execution_time=execution_time,
            tool_call_count=len(stored_calls),
            tool_calls_json=json.dumps(stored_calls, default=str),
            timestamp=timestamp,
        )
        logger.debug(
            "Recorded entry {} (~{} tokens, {} tool calls)",
            entry_id,
            estimate_tokens(prompt + answer),
            len(stored_calls),
        )
        return entry_id

    def get_entry(self, entry_id: int) -> ConversationEntry | None:
        row = self.db.fetch_entry(entry_id)
        return _row_to_entry(row, include_tool_calls=True) if row else None

    def truncate_tool_calls(self, tool_calls: list[dict[str, Any]]) -> list[dict[str, Any]]:
        truncated: list[dict[str, Any]] = []
        for tool_call in tool_calls:
            if not isinstance(tool_call, dict):
                continue
            name = tool_name_of(tool_call)
            limit = storage_limit_for_priority(self.priority_of(name) if name else 1)
            item = dict(tool_call)
            if "request" in item:
                item["request"] = truncate_value(item["request"], limit)
            if "result" in item:
                item["result"] = truncate_value(item["result"], limit)
            truncated.append(item)
        return truncated

    def fetch_history(
        self,
        limit: int | None = None,
        max_tokens: int | None = None,
        include_tool_calls: bool = False,
    ) -> list[ConversationEntry]:
        """Recent entries, oldest first, optionally cut to a token budget.

        The budget is filled newest first. An entry that does not fit is retried
        with its code blocks expired; if it still does not fit, accumulation
        stops there so older entries are never reached by skipping.
        """
        rows = self.db.fetch_recent_entries(self.settings.history_limit if limit is None else limit)
        entries = [_row_to_entry(row, include_tool_calls) for row in rows]
        if max_tokens is not None:
            included: list[ConversationEntry] = []
            tokens = 0
            for entry in entries:
                cost = estimate_tokens(entry.prompt + entry.answer)
                if tokens + cost > max_tokens:
                    entry = replace(entry, answer=expire_code_blocks(entry.answer))
                    cost = estimate_tokens(entry.prompt + entry.answer)
                    if tokens + cost > max_tokens:
                        break
                included.append(entry)
                tokens += cost
            entries = included
        return list(reversed(entries))

    def search_entries(self, query: str, limit: int = 5) -> list[dict[str, Any]]:
        """Entries whose tags, prompt or file match ``query``, newest first."""
        results: list[dict[str, Any]] = []
        for row in self.db.search_entries(query, limit):
            entry = _row_to_entry(row, include_tool_calls=True)
            item: dict[str, Any] = {
                "id": entry.id,
                "prompt": entry.prompt,
                "answer": entry.answer,
                "created_at": entry.created_at,
            }
            if entry.tool_calls:
                item["tool_calls"] = format_history_tool_calls(entry.tool_calls, 0, self.priority_of)
            results.append(item)
        return results

    # notes

    def create_note(
        self,
        content: str,
        links: Iterable[str] | str | None = None,
        tags: Iterable[str] | str | None = None,
    ) -> int:
        stored = truncate_note_content(content, self.settings.note_max_length)
        return self.db.insert_note(stored, _split_csv(links), _split_csv(tags))

    def update_note(
        self,
        note_id: int,
        content: str | None = None,
        links: Iterable[str] | str | None = None,
        tags: Iterable[str] | str | None = None,
    ) -> bool:
        stored = truncate_note_content(content, self.settings.note_max_length) if content is not None else None
        return self.db.update_note(note_id, stored, _split_csv(links), _split_csv(tags)) > 0

    def remove_note(self, note_id: int) -> bool:
        return self.db.delete_note(note_id) > 0

    def get_note(self, note_id: int) -> Note | None:
        row = self.db.fetch_note(note_id)
        return _row_to_note(row) if row else None

    def fetch_notes_by_links(self, links: Iterable[str] | str) -> list[Note]:
        targets = [links] if isinstance(links, str) else list(links)
        return [_row_to_note(row) for row in self.db.fetch_notes_by_links(targets)]

    @staticmethod
    def score_note(query_tokens: set[str], note: Note) -> int:
        if not query_tokens:
            return 1
        score = 4 * len(query_tokens & tokenize(note.content))
        score += 3 * len(query_tokens & tokenize(note.tags))
        score += 2 * len(query_tokens & tokenize(note.links))
        if note.links and any(token in note.links for token in query_tokens):
            score += 5
        return score

    def recall_notes(
        self, query: str, limit: int = 5, max_content_length: int | None = None
    ) -> list[Note]:
        query_tokens = tokenize(query)
        scored = [
            replace(note, score=self.score_note(query_tokens, note))
            for note in (_row_to_note(row) for row in self.db.list_notes())
        ]
        ranked = sorted(
            (note for note in scored if note.score > 0),
            key=lambda note: -note.score,
        )[:limit]
        recalled: list[Note] = []
        for note in ranked:
            if max_content_length and len(note.content) > max_content_length:
                note = replace(note, content=truncate_note_content(note.content, max_content_length))
            if note.links and self.project_root is not None:
                note = replace(note, links=self._annotate_links(note.links))
            recalled.append(note)
        return recalled

    def _annotate_links(self, links: str) -> str:
        annotated = []
        for link in links.split(","):
            if not link or (self.project_root / link).exists():
                annotated.append(link)
            else:
                annotated.append(f"~~{link}~~ (path not found)")
        return ",".join(annotated)

    def recall_aegis_notes(
        self, max_tokens: int | None = None, max_content_length: int | None = None
    ) -> list[Note]:
        aegis = self.aegis()
        words = list(aegis.tags) or aegis.summary.split()
        notes = self.recall_notes(
            " ".join(words),
            limit=self.settings.aegis_notes_limit,
            max_content_length=max_content_length,
        )
        if max_tokens is None:
            return notes
        included: list[Note] = []
        tokens = 0
        for note in notes:
            cost = estimate_tokens(json.dumps(note.as_dict()))
            if tokens + cost > max_tokens:
                break
            included.append(note)
            tokens += cost
        return included

    # aegis

    def aegis(self) -> AegisState:
        rows = self.db.latest_aegis_states(1)
        if not rows:
            return AegisState()
        row = rows[0]
        return AegisState(
            tags=[tag for tag in (row["tags"] or "").split(",") if tag],
            summary=row["summary"] or "",
            temperature=float(row["temperature"] if row["temperature"] is not None else 1.0),
            created_at=row["created_at"],
        )

    def aegis_history(self, limit: int = 3) -> list[AegisState]:
        return [
            AegisState(
                tags=[tag for tag in (row["tags"] or "").split(",") if tag],
                summary=row["summary"] or "",
                temperature=float(row["temperature"] if row["temperature"] is not None else 1.0),
                created_at=row["created_at"],
            )
            for row in self.db.latest_aegis_states(limit)
        ]

    def save_aegis_state(self, state: AegisState) -> AegisState:
        self.db.insert_aegis_state(",".join(state.tags), state.summary, state.temperature)
        return self.aegis()

    def unveil_aegis(
        self,
        tags: Iterable[str] | None = None,
        summary: str | None = None,
        temperature: float | None = None,
    ) -> AegisState:
        current = self.aegis()
        updated = AegisState(
            tags=list(tags) if tags is not None else current.tags,
            summary=summary if summary is not None else current.summary,
            temperature=float(temperature) if temperature is not None else current.temperature,
        )
        logger.info("Aegis updated: tags={} temperature={}", updated.tags, updated.temperature)
        return self.save_aegis_state(updated)

    def set_aegis_temperature(self, temperature: float) -> AegisState:
        return self.unveil_aegis(temperature=temperature)

    def update_aegis_summary(self, summary: str) -> AegisState:
        return self.unveil_aegis(summary=summary)

    def fetch_aegis_summaries(self, before: str, max_tokens: int) -> list[dict[str, Any]]:
        """Snapshots older than ``before``, newest first, within ``max_tokens``."""
        included: list[dict[str, Any]] = []
        tokens = 0
        for row in self.db.aegis_states_before(before):
            summary = {"summary": row["summary"] or "", "tags": row["tags"] or "", "created_at": row["created_at"]}
            cost = estimate_tokens(json.dumps(summary))
            if tokens + cost > max_tokens:
                break
            included.append(summary)
            tokens += cost
        return included
