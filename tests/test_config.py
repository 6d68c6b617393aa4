import json
import os
import sys
import tempfile
import unittest
from dataclasses import replace
from pathlib import Path
from unittest.mock import patch

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from aethercodex.config import DEFAULT_API_URL, AppConfig, LLMSettings, load_config, load_paths, save_config


class ConfigTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.path = Path(self._tmp.name) / "config.json"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_missing_file_uses_defaults(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            config = load_config(self.path)
        self.assertEqual(config.llm.base_url, DEFAULT_API_URL)
        self.assertIsNone(config.llm.api_key)
        self.assertEqual(config.oracle.max_depth, 80)
        self.assertEqual(config.memory.history_limit, 7)
        self.assertEqual(config.tools.max_retries, 2)

    def test_environment_fills_missing_credentials(self) -> None:
        env = {"DEEPSEEK_API_KEY": "sk-env", "DEEPSEEK_API_URL": "http://localhost:9000/chat"}
        with patch.dict(os.environ, env, clear=True):
            config = load_config(self.path)
        self.assertEqual(config.llm.api_key, "sk-env")
        self.assertEqual(config.llm.base_url, "http://localhost:9000/chat")

    def test_file_values_override_environment(self) -> None:
        self.path.write_text(json.dumps({"llm": {"api_key": "sk-file", "model": "custom"}, "oracle": {"max_depth": 5}}))
        with patch.dict(os.environ, {"DEEPSEEK_API_KEY": "sk-env"}, clear=True):
            config = load_config(self.path)
        self.assertEqual(config.llm.api_key, "sk-file")
        self.assertEqual(config.llm.model, "custom")
        self.assertEqual(config.oracle.max_depth, 5)

    def test_save_round_trips_without_environment_key(self) -> None:
        with patch.dict(os.environ, {"DEEPSEEK_API_KEY": "sk-env"}, clear=True):
            config = replace(AppConfig(project_root=Path(self._tmp.name)), llm=LLMSettings(api_key="sk-env"))
            save_config(self.path, config)
            stored = json.loads(self.path.read_text())
            self.assertIsNone(stored["llm"]["api_key"])
            self.assertEqual(load_config(self.path).llm.api_key, "sk-env")
        self.assertEqual(stored["project_root"], self._tmp.name)

    def test_paths(self) -> None:
        paths = load_paths(Path(self._tmp.name))
        self.assertEqual(paths.db_path.name, "aethercodex.db")
        self.assertEqual(paths.config_path.parent, Path(self._tmp.name))


if __name__ == "__main__":
    unittest.main()
