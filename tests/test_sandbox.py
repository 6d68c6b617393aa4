import sys
import time
import unittest
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from aethercodex.errors import (
    RestartRequested,
    StepTermination,
    ToolContextLengthError,
    ToolExecutionError,
    ToolNetworkError,
    ToolTimeoutError,
)
from aethercodex.models import DivineInterrupt
from aethercodex.tools.sandbox import ExecutionSandbox, classify_tool_error


class _Flaky:
    def __init__(self, failures: list[Exception], result: object = "ok") -> None:
        self.failures = list(failures)
        self.result = result
        self.calls = 0

    def __call__(self) -> object:
        self.calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return self.result


class SandboxTests(unittest.TestCase):
    def setUp(self) -> None:
        self.delays: list[float] = []
        self.sandbox = ExecutionSandbox(max_retries=2, retry_backoff_s=1.0, sleep=self.delays.append)

    def test_retries_then_succeeds_with_backoff(self) -> None:
        fn = _Flaky([RuntimeError("boom"), RuntimeError("boom")])
        self.assertEqual(self.sandbox.execute(fn), "ok")
        self.assertEqual(fn.calls, 3)
        self.assertEqual(self.delays, [2.0, 4.0])

    def test_exhausted_retries_raise_typed_error(self) -> None:
        fn = _Flaky([RuntimeError("connection reset")] * 3)
        with self.assertRaises(ToolNetworkError) as ctx:
            self.sandbox.execute(fn)
        self.assertEqual(fn.calls, 3)
        self.assertEqual(ctx.exception.status, "connection_failure")
        self.assertIsInstance(ctx.exception, ToolExecutionError)

    def test_context_length_classification(self) -> None:
        fn = _Flaky([RuntimeError("maximum context length exceeded")] * 3)
        with self.assertRaises(ToolContextLengthError):
            self.sandbox.execute(fn)

    def test_step_termination_passes_through_without_retry(self) -> None:
        marker = DivineInterrupt(kind="step_completed", result="done")
        fn = _Flaky([StepTermination(marker)])
        with self.assertRaises(StepTermination) as ctx:
            self.sandbox.execute(fn)
        self.assertIs(ctx.exception.marker, marker)
        self.assertEqual(fn.calls, 1)
        self.assertEqual(self.delays, [])

    def test_restart_passes_through(self) -> None:
        fn = _Flaky([RestartRequested("temperature changed")])
        with self.assertRaises(RestartRequested):
            self.sandbox.execute(fn)
        self.assertEqual(fn.calls, 1)

    def test_timeout_is_enforced(self) -> None:
        sandbox = ExecutionSandbox(max_retries=0, sleep=self.delays.append)
        with self.assertRaises(ToolTimeoutError):
            sandbox.execute(lambda: time.sleep(1.0), timeout_s=0.05)

    def test_classification(self) -> None:
        self.assertEqual(classify_tool_error(TimeoutError()), "timeout")
        self.assertEqual(classify_tool_error(ValueError("bad")), "parse_error")
        self.assertEqual(classify_tool_error(RuntimeError("rate_limit hit")), "rate_limit")
        self.assertEqual(classify_tool_error(RuntimeError("other")), "tool_execution")


if __name__ == "__main__":
    unittest.main()
