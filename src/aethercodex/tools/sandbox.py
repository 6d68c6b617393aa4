from __future__ import annotations

import json
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable

import httpx
from loguru import logger

from aethercodex.errors import (
    RestartRequested,
    StepTermination,
    ToolContextLengthError,
    ToolExecutionError,
    ToolNetworkError,
    ToolParseError,
    ToolRateLimitError,
    ToolTimeoutError,
)
from aethercodex.text import truncate

# Timeouts at or beyond this are treated as unbounded.
UNBOUNDED_TIMEOUT_S = 1_000_000

ERROR_CLASSES: dict[str, type[ToolExecutionError]] = {
    "timeout": ToolTimeoutError,
    "rate_limit": ToolRateLimitError,
    "network": ToolNetworkError,
    "context_length": ToolContextLengthError,
    "parse_error": ToolParseError,
    "tool_execution": ToolExecutionError,
}

PASSTHROUGH = (StepTermination, RestartRequested)


def classify_tool_error(exc: BaseException) -> str:
    if isinstance(exc, (FutureTimeoutError, TimeoutError, httpx.TimeoutException)):
        return "timeout"
    if isinstance(exc, (httpx.ConnectError, ConnectionError)):
        return "network"
    if isinstance(exc, httpx.HTTPStatusError) and exc.response.status_code == 429:
        return "rate_limit"
    if isinstance(exc, (json.JSONDecodeError, ValueError, TypeError)):
        return "parse_error"
    message = str(exc).lower()
    if "context length" in message or "maximum context" in message:
        return "context_length"
    if "timeout" in message or "timed out" in message:
        return "timeout"
    if "rate limit" in message or "rate_limit" in message:
        return "rate_limit"
    if "network" in message or "connection" in message:
        return "network"
    return "tool_execution"


class ExecutionSandbox:
    """Runs one tool invocation with a timeout and a bounded number of retries.

    Step termination and restart signals pass through untouched; every other
    failure is retried with exponential backoff and finally raised as a typed
    ``ToolExecutionError``.
    """

    def __init__(
        self,
        max_retries: int = 2,
        retry_backoff_s: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_retries = max(0, max_retries)
        self.retry_backoff_s = retry_backoff_s
        self._sleep = sleep

    def execute(self, fn: Callable[[], Any], timeout_s: float | None = None) -> Any:
        attempt = 0
        while True:
            try:
                return self._run(fn, timeout_s)
            except PASSTHROUGH:
                raise
            except Exception as exc:  # noqa: BLE001
                kind = classify_tool_error(exc)
                if attempt >= self.max_retries:
                    error_class = ERROR_CLASSES[kind]
                    label = kind.replace("_", " ").capitalize()
                    raise error_class(f"{label}: {truncate(str(exc), 300)}") from exc
                attempt += 1
                delay = self.retry_backoff_s * (2**attempt)
                logger.warning(
                    "Tool {} error, retry {}/{} in {:.1f}s: {}",
                    kind,
                    attempt,
                    self.max_retries,
                    delay,
                    truncate(str(exc), 100),
                )
                if delay > 0:
                    self._sleep(delay)

    @staticmethod
    def _run(fn: Callable[[], Any], timeout_s: float | None) -> Any:
        if timeout_s is None or timeout_s >= UNBOUNDED_TIMEOUT_S:
            return fn()
        # The worker thread is abandoned on timeout; it cannot be killed.
        pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="aethercodex-tool")
        try:
            return pool.submit(fn).result(timeout=timeout_s)
        finally:
            pool.shutdown(wait=False)
