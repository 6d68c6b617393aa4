from __future__ import annotations

import json
import time
from dataclasses import dataclass, field, replace
from typing import Any

from loguru import logger

from aethercodex.config import AppConfig
from aethercodex.context import ContextAssembler, ContextRequest
from aethercodex.llm import CompletionClient
from aethercodex.memory import MemoryStore
from aethercodex.oracle import DivinationResult, Oracle, Session
from aethercodex.tools.executor import ToolExecutor
from aethercodex.tools.registry import ToolRegistry


@dataclass(frozen=True)
class ChannelResponse:
    status: str
    message: str
    answer: str = ""
    artifacts: dict[str, Any] = field(default_factory=dict)
    tool_results: list[dict[str, Any]] = field(default_factory=list)
    interrupt: dict[str, Any] | None = None
    backtrace: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in ("success", "interrupted")


class _RecordingDispatcher:
    """Runs tools through a registry while keeping a copy of every call for history."""

    def __init__(self, registry: ToolRegistry) -> None:
        self.registry = registry
        self.calls: list[dict[str, Any]] = []

    def __call__(self, name: str, arguments: dict[str, Any], context: dict[str, Any]) -> Any:
        result = self.registry.dispatch(name, arguments, context)
        self.calls.append({"request": {"tool": name, "args": arguments}, "result": result})
        return result

    def reset(self) -> None:
        self.calls = []


class OracleChannel:
    """Top-level entry: assemble context, run a divination, record the exchange."""

    def __init__(
        self,
        config: AppConfig,
        memory: MemoryStore,
        client: CompletionClient,
        registry: ToolRegistry | None = None,
        executor: ToolExecutor | None = None,
        assembler: ContextAssembler | None = None,
    ) -> None:
        self.config = config
        self.memory = memory
        self.client = client
        self.registry = registry or ToolRegistry()
        self.assembler = assembler or ContextAssembler(memory, config, self.registry.priority_of)
        self.oracle = Oracle(
            client,
            executor or ToolExecutor(config.tools),
            config.oracle,
            temperature_source=lambda: memory.aegis().temperature,
        )

    def divine(
        self,
        request: ContextRequest,
        tools: ToolRegistry | None = None,
        context: dict[str, Any] | None = None,
        record: bool = False,
        *,
        reasoning: bool = False,
        temperature: float | None = None,
    ) -> ChannelResponse:
        registry = tools or self.registry
        merged_context = {**(request.context or {}), **(context or {})}
        if merged_context:
            request = replace(request, context=merged_context)
        started = time.monotonic()
        assembled = self.assembler.build(request)
        dispatcher = _RecordingDispatcher(registry)
        session = Session.from_context(merged_context, reasoning=reasoning, temperature=temperature)
        result = self.oracle.divination(
            request.prompt,
            assembled,
            dispatcher,
            tools=registry.schema(),
            session=session,
            messages=request.messages,
            on_attempt=dispatcher.reset,
        )
        response = self._response(result)
        if record:
            self._record(request, response, dispatcher.calls, time.monotonic() - started)
        return response

    def conjure(
        self,
        request: ContextRequest,
        tools: ToolRegistry | None = None,
        context: dict[str, Any] | None = None,
        record: bool = False,
    ) -> ChannelResponse:
        return self.divine(request, tools, context, record, reasoning=True)

    def complete(self, snippet: str) -> str:
        return self.client.complete(snippet, temperature=self.memory.aegis().temperature)

    @staticmethod
    def _response(result: DivinationResult) -> ChannelResponse:
        if result.failed and result.error is not None:
            return ChannelResponse(
                status=result.error.tag,
                message=result.error.message,
                artifacts=result.artifacts,
                tool_results=result.tool_results,
                backtrace=result.error.backtrace,
            )
        if result.interrupted and result.interrupt is not None:
            return ChannelResponse(
                status="interrupted",
                message=f"Interrupted: {result.interrupt.kind}",
                artifacts=result.artifacts,
                tool_results=result.tool_results,
                interrupt=result.interrupt.to_marker(),
            )
        return ChannelResponse(
            status="success",
            message=f"Response ready with {len(result.tool_results)} tools executed",
            answer=result.answer,
            artifacts=result.artifacts,
            tool_results=result.tool_results,
        )

    def _record(
        self,
        request: ContextRequest,
        response: ChannelResponse,
        tool_calls: list[dict[str, Any]],
        elapsed: float,
    ) -> None:
        if response.status == "success":
            answer = response.answer
        elif response.interrupt is not None:
            answer = json.dumps(response.interrupt, default=str)
        else:
            answer = f"Error: {response.message}"
        attachments = request.resolved_attachments()
        entry_id = self.memory.record_entry(
            prompt=request.prompt,
            answer=answer,
            tags=self.memory.aegis().tags,
            tool_calls=tool_calls,
            file=attachments[0].file if attachments else None,
            attachments=[item.as_dict() for item in attachments],
            execution_time=elapsed,
        )
        logger.info("Recorded divination as entry {} ({})", entry_id, response.status)
