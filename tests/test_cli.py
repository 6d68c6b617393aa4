import os
import sys
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from typer.testing import CliRunner

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from aethercodex import cli
from aethercodex.config import load_paths


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.paths = load_paths(Path(self._tmp.name))
        self.runner = CliRunner()
        patches = [
            patch("aethercodex.cli.load_paths", return_value=self.paths),
            patch("aethercodex.cli.setup_logging"),
            patch.dict(os.environ, {}, clear=True),
        ]
        for item in patches:
            item.start()
            self.addCleanup(item.stop)

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_ask_requires_api_key(self) -> None:
        result = self.runner.invoke(cli.app, ["ask", "hello"])
        self.assertEqual(result.exit_code, 1)
        self.assertIn("API key is required", result.output)

    def test_notes_add_and_remove(self) -> None:
        added = self.runner.invoke(cli.app, ["notes", "add", "lexer handles heredocs", "--tags", "lexer"])
        self.assertEqual(added.exit_code, 0, added.output)
        self.assertIn("Note 1 saved.", added.output)
        recalled = self.runner.invoke(cli.app, ["notes", "recall", "lexer"])
        self.assertEqual(recalled.exit_code, 0, recalled.output)
        self.assertIn("heredocs", recalled.output)
        self.assertEqual(self.runner.invoke(cli.app, ["notes", "remove", "1"]).exit_code, 0)
        self.assertEqual(self.runner.invoke(cli.app, ["notes", "remove", "1"]).exit_code, 1)

    def test_tasks_create_and_show(self) -> None:
        created = self.runner.invoke(cli.app, ["tasks", "create", "Port parser", "--workflow", "simple"])
        self.assertEqual(created.exit_code, 0, created.output)
        self.assertIn("Task 1 created.", created.output)
        shown = self.runner.invoke(cli.app, ["tasks", "show", "1"])
        self.assertEqual(shown.exit_code, 0, shown.output)
        self.assertIn("pending", shown.output)
        missing_parent = self.runner.invoke(cli.app, ["tasks", "create", "Orphan", "--parent", "42"])
        self.assertEqual(missing_parent.exit_code, 1)

    def test_aegis_set_persists(self) -> None:
        result = self.runner.invoke(cli.app, ["aegis", "set", "--tags", "parser, io", "--temperature", "0.3"])
        self.assertEqual(result.exit_code, 0, result.output)
        memory, _, _ = cli._stores(self.paths, cli._load(self.paths))
        state = memory.aegis()
        self.assertEqual(state.tags, ["parser", "io"])
        self.assertEqual(state.temperature, 0.3)


if __name__ == "__main__":
    unittest.main()
