import json
import sys
import unittest
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from aethercodex.tools.protocol import (
    TOOL_CALL_ALIASES,
    extract_arguments,
    extract_from_content,
    extract_name,
    normalize_call,
)


class ToolCallNormalizationTests(unittest.TestCase):
    def test_name_aliases_match_canonical(self) -> None:
        canonical = extract_name({"name": "read_file"})
        for alias in ("tool_name", "toolname"):
            self.assertEqual(extract_name({alias: "read_file"}), canonical)

    def test_argument_aliases_match_canonical(self) -> None:
        canonical = extract_arguments({"name": "read_file", "arguments": {"path": "a.rb"}})
        for alias in ("args", "params", "parameters"):
            self.assertEqual(extract_arguments({"name": "read_file", alias: {"path": "a.rb"}}), canonical)

    def test_container_aliases_match_canonical(self) -> None:
        call = {"name": "read_file", "arguments": {"path": "a.rb"}}
        canonical = extract_from_content(f"```json\n{json.dumps({'tool_calls': [call]})}\n```")
        for alias in ("toolcalls", "tools"):
            calls = extract_from_content(f"```json\n{json.dumps({alias: [call]})}\n```")
            self.assertEqual([(c.name, c.arguments) for c in calls], [(c.name, c.arguments) for c in canonical])

    def test_function_shape_with_string_arguments(self) -> None:
        call = {"id": "call_1", "function": {"name": "read_file", "arguments": '{"path": "a.rb"}'}}
        self.assertEqual(extract_name(call), "read_file")
        self.assertEqual(extract_arguments(call), {"path": "a.rb"})
        normalized = normalize_call(call)
        self.assertEqual(normalized.id, "call_1")

    def test_invalid_argument_json_is_reported(self) -> None:
        self.assertEqual(extract_arguments({"name": "x", "arguments": "{oops"}), {"error": "{oops"})
        self.assertEqual(extract_arguments({"name": "x"}), {})

    def test_canonical_key_wins_over_alias(self) -> None:
        call = {"name": "real", "tool_name": "alias"}
        self.assertEqual(extract_name(call), "real")

    def test_normalize_requires_a_name(self) -> None:
        self.assertIsNone(normalize_call({"arguments": {}}))
        self.assertTrue(normalize_call({"name": "x"}).id)

    def test_alias_table_is_complete(self) -> None:
        self.assertEqual(
            set(TOOL_CALL_ALIASES),
            {"toolcalls", "tools", "tool_name", "toolname", "args", "params", "parameters"},
        )


class ContentExtractionTests(unittest.TestCase):
    def test_all_json_blocks_in_document_order(self) -> None:
        text = "\n".join(
            [
                "First I will read.",
                "```json",
                '{"name": "read_file", "args": {"path": "a.rb"}}',
                "```",
                "Then search.",
                "```json",
                '{"tools": [{"tool_name": "search", "params": {"q": "x"}}, {"name": "list"}]}',
                "```",
            ]
        )
        calls = extract_from_content(text)
        self.assertEqual([call.name for call in calls], ["read_file", "search", "list"])
        self.assertEqual(calls[1].arguments, {"q": "x"})

    def test_non_tool_json_and_other_fences_are_ignored(self) -> None:
        text = "```json\n{\"answer\": 4}\n```\n```python\nprint(1)\n```\n```json\nnot json\n```"
        self.assertEqual(extract_from_content(text), [])
        self.assertEqual(extract_from_content(""), [])
        self.assertEqual(extract_from_content(None), [])


if __name__ == "__main__":
    unittest.main()
