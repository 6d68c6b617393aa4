import sys
import unittest
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from aethercodex.history import (
    BEGIN_MARKER,
    END_MARKER,
    format_history_tool_calls,
    history_limits,
    tier_limits,
)

PRIORITIES = {"read_file": 2, "remember": 1, "task_complete_step": 10, "unveil_aegis": 5}


def _priority(name: str) -> int:
    return PRIORITIES.get(name, 0)


def _call(tool: str, result: object = "ok", **extra) -> dict:
    return {"request": {"tool": tool, "args": {"path": "lib/parser.rb"}}, "result": result, **extra}


class TierLimitTests(unittest.TestCase):
    def test_floors_per_tier(self) -> None:
        low = tier_limits(1, 0.0)
        self.assertEqual((low.args, low.result, low.content), (50, 0, 50))
        mid = tier_limits(3, 0.0)
        self.assertEqual((mid.args, mid.result, mid.content), (100, 200, 100))
        high = tier_limits(7, 0.0)
        self.assertEqual((high.args, high.result, high.content), (200, 400, 200))
        top = tier_limits(10, 0.0)
        self.assertEqual((top.args, top.result, top.content), (500, 1000, 500))
        unknown = tier_limits(0, 99.0)
        self.assertEqual((unknown.args, unknown.result, unknown.content), (50, 0, 100))

    def test_detail_decays_with_age(self) -> None:
        recent = history_limits(0, 0, 1, 2)
        older = history_limits(1, 0, 1, 2)
        oldest = history_limits(5, 0, 1, 2)
        self.assertGreater(recent.result, older.result)
        self.assertGreaterEqual(older.result, oldest.result)
        self.assertGreaterEqual(oldest.result, 200)

    def test_dense_entries_get_less_detail(self) -> None:
        sparse = history_limits(1, 0, 1, 10)
        dense = history_limits(1, 0, 50, 10)
        self.assertGreater(sparse.result, dense.result)

    def test_later_calls_in_latest_entry_get_more_detail(self) -> None:
        first = history_limits(0, 0, 4, 10)
        last = history_limits(0, 3, 4, 10)
        self.assertGreater(last.result, first.result)


class FormatToolCallsTests(unittest.TestCase):
    def test_markers_and_ordering(self) -> None:
        text = format_history_tool_calls(
            [_call("read_file", "x = 1"), _call("task_complete_step", "done")], 0, _priority
        )
        self.assertTrue(text.startswith(BEGIN_MARKER + "\n"))
        self.assertTrue(text.endswith("\n" + END_MARKER))
        self.assertLess(text.index("read_file"), text.index("task_complete_step"))
        self.assertIn("path:lib/parser.rb", text)
        self.assertIn("→ x = 1", text)

    def test_unranked_tool_results_are_omitted(self) -> None:
        text = format_history_tool_calls([_call("shell", "stored")], 6, _priority)
        self.assertIn("# result omitted", text)
        self.assertNotIn("stored", text)

    def test_long_results_are_truncated_in_the_middle(self) -> None:
        result = "a" * 500 + "b" * 2000 + "c" * 500
        text = format_history_tool_calls([_call("read_file", result)], 3, _priority)
        self.assertIn("...", text)
        self.assertIn("aaa", text)
        self.assertIn("ccc", text)
        self.assertLess(len(text), len(result))

    def test_content_is_fenced_out_of_tool_history(self) -> None:
        text = format_history_tool_calls(
            [_call("unveil_aegis", "ok", content="Focus on the lexer")], 0, _priority
        )
        self.assertIn(f"{END_MARKER}\nFocus on the lexer\n{BEGIN_MARKER}", text)

    def test_unnamed_call_without_content_is_blank(self) -> None:
        text = format_history_tool_calls([{"result": "x"}], 0, _priority)
        self.assertEqual(text, f"{BEGIN_MARKER}\n\n{END_MARKER}")


if __name__ == "__main__":
    unittest.main()
