"""Turn-taking loop between the completion service and tool execution.

A divination sends the conversation to the model, runs whatever tools it
asks for, feeds the results back and repeats until the model answers, a tool
hands back an interrupt marker, or the turn budget runs out.
"""

from __future__ import annotations

import traceback
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Union

from loguru import logger

from aethercodex.config import OracleSettings
from aethercodex.context import AssembledContext
from aethercodex.errors import (
    RestartRequested,
    TerminalStatus,
    ToolExecutionError,
    TransportError,
)
from aethercodex.llm import CompletionClient
from aethercodex.models import DivineInterrupt
from aethercodex.text import truncate
from aethercodex.tools.executor import Dispatcher, ToolExecutor
from aethercodex.tools.protocol import ToolCall, extract_from_content, normalize_call

EMPTY_ANSWER = "<<empty>>"
REMINDER_KEY = "prevent_termination_reminder"

SYSTEM_PROMPT = """You are AetherCodex, a coding assistant working inside the user's project.
Use the provided tools to read, search and change the project, and to keep notes and tasks.
Call tools through the tool-calling interface. When the work is done, reply with a concise
summary of what changed and anything the user still needs to do."""

REASONING_PROMPT = """You are AetherCodex in reasoning mode. No tools are available.
Think the problem through carefully using the conversation and context provided, then give
a clear, well-structured answer."""

BRIEFING = """Focus on autonomous execution: Read files, plan briefly if needed, then chain all required tools
(e.g., read_file → recall_notes → patch) in one go. Do not seek confirmation; apply changes and
proceed to verify (e.g., run tests) without pausing. Prioritize precision and action over
dialogue. !!DONT OUTPUT JSON IN CONTENT!! Do what you have been asked. Just do it."""


@dataclass
class Session:
    """Per-divination state owned by the caller: reminders, mode and temperature."""

    reminders: deque[str] = field(default_factory=deque)
    reasoning: bool = False
    temperature: float | None = None
    context: dict[str, Any] = field(default_factory=dict)
    turn: int = 0

    @classmethod
    def from_context(
        cls,
        context: dict[str, Any] | None,
        reasoning: bool = False,
        temperature: float | None = None,
    ) -> "Session":
        context = dict(context or {})
        raw = context.get(REMINDER_KEY) or []
        reminders = [raw] if isinstance(raw, str) else [str(item) for item in raw]
        return cls(deque(reminders), reasoning, temperature, context)

    def next_reminder(self) -> str | None:
        return self.reminders.popleft() if self.reminders else None


@dataclass(frozen=True)
class Answered:
    text: str


@dataclass(frozen=True)
class Interrupted:
    marker: DivineInterrupt


@dataclass(frozen=True)
class Restart:
    reason: str


@dataclass(frozen=True)
class Continue:
    pass


TurnOutcome = Union[Answered, Interrupted, Restart, Continue]


@dataclass
class DivinationResult:
    status: str
    answer: str = EMPTY_ANSWER
    artifacts: dict[str, Any] = field(default_factory=dict)
    tool_results: list[dict[str, Any]] = field(default_factory=list)
    interrupt: DivineInterrupt | None = None
    error: TerminalStatus | None = None
    turns: int = 0
    restarts: int = 0

    @property
    def interrupted(self) -> bool:
        return self.status == "interrupted"

    @property
    def failed(self) -> bool:
        return self.status == "failed"

    def outcome(self) -> Any:
        """The interrupt marker when interrupted, else ``(answer, artifacts, tool_results)``."""
        if self.interrupt is not None:
            return self.interrupt.to_marker()
        return self.answer, self.artifacts, self.tool_results


class Oracle:
    def __init__(
        self,
        client: CompletionClient,
        executor: ToolExecutor,
        settings: OracleSettings | None = None,
        temperature_source: Callable[[], float] | None = None,
    ) -> None:
        self.client = client
        self.executor = executor
        self.settings = settings or OracleSettings()
        self.temperature_source = temperature_source or (lambda: 1.0)

    def base_messages(
        self,
        prompt: str | None,
        context: AssembledContext | None,
        reasoning: bool,
        custom_messages: Iterable[dict[str, Any]] | None = None,
    ) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": REASONING_PROMPT if reasoning else SYSTEM_PROMPT}
        ]
        if context is not None:
            messages.extend(context.history)
            messages.extend(context.context_messages())
        if not reasoning:
            messages.append({"role": "system", "content": BRIEFING})
        if custom_messages:
            messages.extend(dict(message) for message in custom_messages)
        elif prompt is not None:
            messages.append({"role": "user", "content": prompt})
        return messages

    def divination(
        self,
        prompt: str | None,
        context: AssembledContext | None,
        dispatcher: Dispatcher,
        *,
        tools: list[dict[str, Any]] | None = None,
        session: Session | None = None,
        messages: Iterable[dict[str, Any]] | None = None,
        on_attempt: Callable[[], None] | None = None,
    ) -> DivinationResult:
        """Run the loop; failures come back as a ``failed`` result, never as exceptions.

        ``on_attempt`` is called before every attempt, restarts included.
        """
        session = session or Session()
        base = self.base_messages(prompt, context, session.reasoning, messages)
        reminders = list(session.reminders)
        restarts = 0
        tool_results: list[dict[str, Any]] = []
        try:
            while True:
                # Each attempt starts from the original messages and reminder list.
                session.reminders = deque(reminders)
                session.turn = 0
                if on_attempt is not None:
                    on_attempt()
                tool_results = []
                artifacts: dict[str, Any] = {"prelude": []}
                outcome, turns = self._attempt(
                    list(base), tools, session, dispatcher, tool_results, artifacts
                )
                if isinstance(outcome, Restart):
                    restarts += 1
                    if restarts > self.settings.max_restarts:
                        logger.error("Divination restarted {} times; giving up", restarts - 1)
                        return self._failure(
                            TerminalStatus.build("failure", "Divination restart limit exceeded"),
                            tool_results,
                            turns,
                            restarts - 1,
                        )
                    logger.info("Restarting divination: {}", outcome.reason)
                    continue
                if isinstance(outcome, Interrupted):
                    logger.info("Divination interrupted by {}", outcome.marker.kind)
                    return DivinationResult(
                        status="interrupted",
                        answer=EMPTY_ANSWER,
                        artifacts=artifacts,
                        tool_results=tool_results,
                        interrupt=outcome.marker,
                        turns=turns,
                        restarts=restarts,
                    )
                text = outcome.text if isinstance(outcome, Answered) else ""
                return DivinationResult(
                    status="answer",
                    answer=text or EMPTY_ANSWER,
                    artifacts=artifacts,
                    tool_results=tool_results,
                    turns=turns,
                    restarts=restarts,
                )
        except TransportError as exc:
            logger.error("Completion transport failed ({}): {}", exc.kind, exc)
            status = TerminalStatus.build(exc.kind, str(exc))
            return self._failure(status, tool_results, session.turn, restarts)
        except ToolExecutionError as exc:
            logger.error("Tool execution failed ({}): {}", exc.status, exc)
            status = TerminalStatus.build(exc.status, str(exc))
            return self._failure(status, tool_results, session.turn, restarts)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Divination failed")
            status = TerminalStatus.build(
                "failure", f"Divination failed: {exc}", traceback.format_exc()
            )
            return self._failure(status, tool_results, session.turn, restarts)

    @staticmethod
    def _failure(
        status: TerminalStatus, tool_results: list[dict[str, Any]], turns: int, restarts: int
    ) -> DivinationResult:
        return DivinationResult(
            status="failed",
            answer=EMPTY_ANSWER,
            artifacts={"error": status.message},
            tool_results=tool_results,
            error=status,
            turns=turns,
            restarts=restarts,
        )

    def _current_temperature(self, session: Session) -> float:
        if session.temperature is not None:
            return session.temperature
        return float(self.temperature_source())

    def _attempt(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        session: Session,
        dispatcher: Dispatcher,
        tool_results: list[dict[str, Any]],
        artifacts: dict[str, Any],
    ) -> tuple[TurnOutcome, int]:
        initial_temperature = self._current_temperature(session)
        last_content = ""
        turn = 0
        try:
            for turn in range(1, self.settings.max_depth + 1):
                session.turn = turn
                temperature = self._current_temperature(session)
                if abs(temperature - initial_temperature) > self.settings.temperature_delta_threshold:
                    return Restart(f"temperature changed from {initial_temperature} to {temperature}"), turn
                outcome = self._turn(
                    messages, tools, session, dispatcher, tool_results, artifacts, temperature
                )
                if isinstance(outcome, Answered):
                    return outcome, turn
                if isinstance(outcome, (Interrupted, Restart)):
                    return outcome, turn
                if artifacts["prelude"]:
                    last_content = artifacts["prelude"][-1]
        except RestartRequested as signal:
            return Restart(str(signal) or "restart requested"), turn
        logger.warning("Divination reached max depth {}", self.settings.max_depth)
        return Answered(last_content), turn

    def _turn(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        session: Session,
        dispatcher: Dispatcher,
        tool_results: list[dict[str, Any]],
        artifacts: dict[str, Any],
        temperature: float,
    ) -> TurnOutcome:
        payload = self.client.build_request(messages, tools, session.reasoning, temperature)
        response = self.client.send(payload, self.client.timeout_for(session.reasoning))
        content, raw_calls, _ = self.client.extract(response, artifacts)
        if content:
            artifacts["prelude"].append(content)

        if session.reasoning:
            messages.append({"role": "assistant", "content": content})
            return Answered(content)

        fallback = False
        calls = [call for call in (normalize_call(raw) for raw in raw_calls) if call is not None]
        if not calls and not raw_calls:
            calls = extract_from_content(content)
            fallback = bool(calls)
        self._append_assistant(messages, content, calls)

        if calls:
            if fallback:
                logger.debug("Found {} tool calls in content", len(calls))
                artifacts["tools"] = [
                    {"id": call.id, "name": call.name, "arguments": call.arguments} for call in calls
                ]
            batch = self.executor.execute_batch(
                calls, messages, tool_results, dispatcher, fallback=fallback, context=session.context
            )
            if batch.interrupt is not None:
                return Interrupted(batch.interrupt)
            return Continue()

        reminder = session.next_reminder()
        if reminder is not None:
            logger.debug("Injecting reminder: {}", truncate(reminder, 80))
            messages.append({"role": "system", "content": reminder})
            return Continue()
        return Answered(content)

    @staticmethod
    def _append_assistant(messages: list[dict[str, Any]], content: str, calls: list[ToolCall]) -> None:
        message: dict[str, Any] = {"role": "assistant", "content": content}
        if calls:
            message["tool_calls"] = [call.as_message_call() for call in calls]
        messages.append(message)
