from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping

from loguru import logger

from aethercodex.config import ToolSettings
from aethercodex.errors import StepTermination
from aethercodex.models import DivineInterrupt
from aethercodex.text import truncate
from aethercodex.tools.protocol import ToolCall, normalize_call
from aethercodex.tools.sandbox import ExecutionSandbox

Dispatcher = Callable[[str, dict[str, Any], dict[str, Any]], Any]


@dataclass
class BatchOutcome:
    results: list[Any] = field(default_factory=list)
    interrupt: DivineInterrupt | None = None

    @property
    def interrupted(self) -> bool:
        return self.interrupt is not None


def serialize_result(result: Any) -> str:
    try:
        return json.dumps(result, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return json.dumps(str(result))


class ToolExecutor:
    """Executes normalized tool calls and threads their results into the message stream."""

    def __init__(self, settings: ToolSettings | None = None, sandbox: ExecutionSandbox | None = None) -> None:
        self.settings = settings or ToolSettings()
        self.sandbox = sandbox or ExecutionSandbox(
            max_retries=self.settings.max_retries,
            retry_backoff_s=self.settings.retry_backoff_s,
        )

    def execute_standard(
        self,
        call: ToolCall | Mapping[str, Any],
        messages: list[dict[str, Any]],
        results: list[dict[str, Any]],
        exec_fn: Dispatcher,
        context: Mapping[str, Any] | None = None,
    ) -> Any:
        return self._execute(call, messages, results, exec_fn, self.settings.standard_timeout_s, context)

    def execute_fallback(
        self,
        call: ToolCall | Mapping[str, Any],
        messages: list[dict[str, Any]],
        results: list[dict[str, Any]],
        exec_fn: Dispatcher,
        context: Mapping[str, Any] | None = None,
    ) -> Any:
        return self._execute(call, messages, results, exec_fn, self.settings.fallback_timeout_s, context)

    def _execute(
        self,
        call: ToolCall | Mapping[str, Any],
        messages: list[dict[str, Any]],
        results: list[dict[str, Any]],
        exec_fn: Dispatcher,
        timeout_s: float,
        context: Mapping[str, Any] | None,
    ) -> Any:
        tool_call = call if isinstance(call, ToolCall) else normalize_call(call)
        if tool_call is None:
            raise ValueError("tool call does not name a tool")
        logger.debug(
            "Tool call {} with args: {}",
            tool_call.name,
            truncate(json.dumps(tool_call.arguments, default=str), 100),
        )
        safe_context = dict(context or {})
        safe_context["tool_results"] = tuple(results)
        result = self.sandbox.execute(
            lambda: exec_fn(tool_call.name, dict(tool_call.arguments), safe_context),
            timeout_s,
        )
        results.append({"id": tool_call.id, "name": tool_call.name, "result": result})
        messages.append(
            {"role": "tool", "tool_call_id": tool_call.id, "content": serialize_result(result)}
        )
        return result

    def execute_batch(
        self,
        calls: list[ToolCall],
        messages: list[dict[str, Any]],
        results: list[dict[str, Any]],
        exec_fn: Dispatcher,
        *,
        fallback: bool = False,
        context: Mapping[str, Any] | None = None,
    ) -> BatchOutcome:
        """Run calls in order, stopping at the first one that hands back an interrupt."""
        execute = self.execute_fallback if fallback else self.execute_standard
        outcome = BatchOutcome()
        for call in calls:
            try:
                result = execute(call, messages, results, exec_fn, context)
            except StepTermination as signal:
                outcome.interrupt = signal.marker
                return outcome
            outcome.results.append(result)
            interrupt = DivineInterrupt.from_result(result)
            if interrupt is not None:
                logger.info("Tool {} returned interrupt {}", call.name, interrupt.kind)
                outcome.interrupt = interrupt
                return outcome
        return outcome
