import sqlite3
import sys
import tempfile
import unittest
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from aethercodex.db import DB_VERSION, Database


class DbConnectionTests(unittest.TestCase):
    def test_connect_context_manager_closes_connection(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            db = Database(Path(tmp) / "db.sqlite")
            db.initialize()
            with db.connect() as connection:
                connection.execute("SELECT 1")
            with self.assertRaises(sqlite3.ProgrammingError):
                connection.execute("SELECT 1")

    def test_initialize_records_schema_version(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            db = Database(Path(tmp) / "nested" / "db.sqlite")
            db.initialize()
            self.assertEqual(db.schema_version(), DB_VERSION)
            db.initialize()
            self.assertEqual(db.schema_version(), DB_VERSION)

    def test_initialize_migrates_old_tables(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "db.sqlite"
            connection = sqlite3.connect(path)
            connection.execute(
                "CREATE TABLE entries (id INTEGER PRIMARY KEY AUTOINCREMENT, prompt TEXT, answer TEXT, "
                "tags TEXT, file TEXT, selection TEXT, execution_time REAL, tool_call_count INTEGER, "
                "timestamp TEXT, created_at TEXT NOT NULL)"
            )
            connection.commit()
            connection.close()
            db = Database(path)
            db.initialize()
            with db.connect() as check:
                columns = {row["name"] for row in check.execute("PRAGMA table_info(entries)")}
                task_columns = {row["name"] for row in check.execute("PRAGMA table_info(tasks)")}
            self.assertIn("tool_calls_json", columns)
            self.assertIn("tool_calls_json", task_columns)

    def test_note_update_keeps_unspecified_fields(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            db = Database(Path(tmp) / "db.sqlite")
            db.initialize()
            note_id = db.insert_note("content", "a.py", "alpha")
            self.assertEqual(db.update_note(note_id, None, None, "beta"), 1)
            row = db.fetch_note(note_id)
            self.assertEqual(row["content"], "content")
            self.assertEqual(row["links"], "a.py")
            self.assertEqual(row["tags"], "beta")
            self.assertIsNotNone(row["updated_at"])


if __name__ == "__main__":
    unittest.main()
