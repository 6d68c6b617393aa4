from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

DB_VERSION = 3

SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (key TEXT PRIMARY KEY, value TEXT);

CREATE TABLE IF NOT EXISTS entries (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  prompt TEXT,
  answer TEXT,
  tags TEXT,
  file TEXT,
  selection TEXT,
  execution_time REAL,
  tool_call_count INTEGER,
  timestamp TEXT,
  created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tasks (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  title TEXT,
  plan TEXT,
  updates TEXT DEFAULT '[]',
  logs TEXT DEFAULT '[]',
  status TEXT,
  current_step INTEGER DEFAULT 0,
  step_results TEXT DEFAULT '{}',
  workflow_type TEXT DEFAULT 'full',
  parent_task_id INTEGER,
  subtask_results TEXT DEFAULT '{}',
  created_at TEXT NOT NULL,
  updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS project_notes (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  links TEXT,
  content TEXT,
  tags TEXT,
  created_at TEXT NOT NULL,
  updated_at TEXT
);

CREATE TABLE IF NOT EXISTS aegis_state (
  id INTEGER PRIMARY KEY AUTOINCREMENT,
  tags TEXT,
  summary TEXT,
  temperature REAL,
  created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_parent ON tasks (parent_task_id);
CREATE INDEX IF NOT EXISTS idx_aegis_created ON aegis_state (created_at);
"""

# version -> (table, column, ddl)
MIGRATIONS: dict[int, list[tuple[str, str, str]]] = {
    2: [("tasks", "tool_calls_json", "ALTER TABLE tasks ADD COLUMN tool_calls_json TEXT DEFAULT '{}'")],
    3: [("entries", "tool_calls_json", "ALTER TABLE entries ADD COLUMN tool_calls_json TEXT")],
}


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Database:
    path: Path
    busy_timeout_s: float = 30.0

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(self.path, timeout=self.busy_timeout_s)
        connection.row_factory = sqlite3.Row
        try:
            with connection:
                yield connection
        finally:
            connection.close()

    def initialize(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as connection:
            connection.execute("PRAGMA journal_mode=WAL")
            connection.executescript(SCHEMA)
            self._migrate(connection)

    def _migrate(self, connection: sqlite3.Connection) -> None:
        row = connection.execute("SELECT value FROM meta WHERE key = 'db_version'").fetchone()
        current = int(row["value"]) if row else 1
        for version in sorted(MIGRATIONS):
            if version <= current:
                continue
            for table, column, ddl in MIGRATIONS[version]:
                existing = {col["name"] for col in connection.execute(f"PRAGMA table_info({table})")}
                if column not in existing:
                    connection.execute(ddl)
        connection.execute(
            "INSERT OR REPLACE INTO meta (key, value) VALUES ('db_version', ?)",
            (str(DB_VERSION),),
        )

    def schema_version(self) -> int:
        with self.connect() as connection:
            row = connection.execute("SELECT value FROM meta WHERE key = 'db_version'").fetchone()
            return int(row["value"]) if row else 0

    # entries

    def insert_entry(
        self,
        prompt: str,
        answer: str,
        tags: str,
        file: str | None,
        selection: str | None,
        execution_time: float,
        tool_call_count: int,
        tool_calls_json: str,
        timestamp: str | None,
    ) -> int:
        with self.connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO entries (
                    prompt, answer, tags, file, selection, execution_time,
                    tool_call_count, tool_calls_json, timestamp, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    prompt,
                    answer,
                    tags,
                    file,
                    selection,
                    execution_time,
                    tool_call_count,
                    tool_calls_json,
                    timestamp,
                    utc_now(),
                ),
            )
            return int(cursor.lastrowid)

    def fetch_entry(self, entry_id: int) -> sqlite3.Row | None:
        with self.connect() as connection:
            cursor = connection.execute("SELECT * FROM entries WHERE id = ?", (entry_id,))
            return cursor.fetchone()

    def fetch_recent_entries(self, limit: int) -> list[sqlite3.Row]:
        with self.connect() as connection:
            cursor = connection.execute(
                """
                SELECT * FROM entries
                ORDER BY id DESC
                LIMIT ?
                """,
                (limit,),
            )
            return cursor.fetchall()

    def search_entries(self, query: str, limit: int) -> list[sqlite3.Row]:
        pattern = f"%{query}%"
        with self.connect() as connection:
            cursor = connection.execute(
                """
                SELECT * FROM entries
                WHERE tags LIKE ? OR prompt LIKE ? OR file LIKE ?
                ORDER BY id DESC
                LIMIT ?
                """,
                (pattern, pattern, pattern, limit),
            )
            return cursor.fetchall()

    # notes

    def insert_note(self, content: str, links: str | None, tags: str | None) -> int:
        with self.connect() as connection:
            cursor = connection.execute(
                "INSERT INTO project_notes (content, links, tags, created_at) VALUES (?, ?, ?, ?)",
                (content, links, tags, utc_now()),
            )
            return int(cursor.lastrowid)

    def update_note(
        self, note_id: int, content: str | None, links: str | None, tags: str | None
    ) -> int:
        with self.connect() as connection:
            cursor = connection.execute(
                """
                UPDATE project_notes
                SET content = COALESCE(?, content),
                    links = COALESCE(?, links),
                    tags = COALESCE(?, tags),
                    updated_at = ?
                WHERE id = ?
                """,
                (content, links, tags, utc_now(), note_id),
            )
            return cursor.rowcount

    def delete_note(self, note_id: int) -> int:
        with self.connect() as connection:
            cursor = connection.execute("DELETE FROM project_notes WHERE id = ?", (note_id,))
            return cursor.rowcount

    def fetch_note(self, note_id: int) -> sqlite3.Row | None:
        with self.connect() as connection:
            cursor = connection.execute("SELECT * FROM project_notes WHERE id = ?", (note_id,))
            return cursor.fetchone()

    def list_notes(self) -> list[sqlite3.Row]:
        with self.connect() as connection:
            cursor = connection.execute("SELECT * FROM project_notes ORDER BY id ASC")
            return cursor.fetchall()

    def fetch_notes_by_links(self, links: list[str]) -> list[sqlite3.Row]:
        if not links:
            return []
        clause = " OR ".join("links LIKE ?" for _ in links)
        with self.connect() as connection:
            cursor = connection.execute(
                f"SELECT * FROM project_notes WHERE {clause}",
                [f"%{link}%" for link in links],
            )
            return cursor.fetchall()

    # tasks

    def insert_task(
        self,
        title: str,
        plan: str,
        status: str,
        workflow_type: str,
        parent_task_id: int | None,
    ) -> int:
        now = utc_now()
        with self.connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO tasks (
                    title, plan, updates, logs, status, current_step, step_results,
                    tool_calls_json, workflow_type, parent_task_id, subtask_results,
                    created_at, updated_at
                )
                VALUES (?, ?, '[]', '[]', ?, 0, '{}', '{}', ?, ?, '{}', ?, ?)
                """,
                (title, plan, status, workflow_type, parent_task_id, now, now),
            )
            return int(cursor.lastrowid)

    def update_task_fields(self, task_id: int, fields: dict[str, Any]) -> int:
        if not fields:
            return 0
        assignments = ", ".join(f"{column} = ?" for column in fields)
        with self.connect() as connection:
            cursor = connection.execute(
                f"UPDATE tasks SET {assignments}, updated_at = ? WHERE id = ?",
                [*fields.values(), utc_now(), task_id],
            )
            return cursor.rowcount

    def fetch_task(self, task_id: int) -> sqlite3.Row | None:
        with self.connect() as connection:
            cursor = connection.execute("SELECT * FROM tasks WHERE id = ?", (task_id,))
            return cursor.fetchone()

    def list_tasks(self, parent_task_id: int | None = None) -> list[sqlite3.Row]:
        with self.connect() as connection:
            if parent_task_id is None:
                cursor = connection.execute("SELECT * FROM tasks ORDER BY created_at DESC, id DESC")
            else:
                cursor = connection.execute(
                    "SELECT * FROM tasks WHERE parent_task_id = ? ORDER BY created_at DESC, id DESC",
                    (parent_task_id,),
                )
            return cursor.fetchall()

    def fetch_subtasks(self, parent_task_id: int) -> list[sqlite3.Row]:
        with self.connect() as connection:
            cursor = connection.execute(
                "SELECT * FROM tasks WHERE parent_task_id = ? ORDER BY created_at ASC, id ASC",
                (parent_task_id,),
            )
            return cursor.fetchall()

    def delete_task(self, task_id: int) -> int:
        with self.connect() as connection:
            cursor = connection.execute("DELETE FROM tasks WHERE id = ?", (task_id,))
            return cursor.rowcount

    # aegis

    def insert_aegis_state(self, tags: str, summary: str, temperature: float) -> None:
        with self.connect() as connection:
            connection.execute(
                "INSERT INTO aegis_state (tags, summary, temperature, created_at) VALUES (?, ?, ?, ?)",
                (tags, summary, temperature, utc_now()),
            )

    def latest_aegis_states(self, limit: int) -> list[sqlite3.Row]:
        with self.connect() as connection:
            cursor = connection.execute(
                "SELECT * FROM aegis_state ORDER BY id DESC LIMIT ?",
                (limit,),
            )
            return cursor.fetchall()

    def aegis_states_before(self, before: str) -> list[sqlite3.Row]:
        with self.connect() as connection:
            cursor = connection.execute(
                """
                SELECT summary, tags, created_at FROM aegis_state
                WHERE created_at < ?
                ORDER BY created_at DESC, id DESC
                """,
                (before,),
            )
            return cursor.fetchall()
