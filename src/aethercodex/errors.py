"""Error types shared by the transport, tool sandbox and divination loop.

Infrastructure failures are never turned into model content: transport and
tool failures surface as typed errors and are converted into a
``TerminalStatus`` only at the loop boundary.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from aethercodex.text import truncate

if TYPE_CHECKING:
    from aethercodex.models import DivineInterrupt

MESSAGE_LIMIT = 300

TRANSPORT_KINDS = (
    "timeout",
    "connection_failure",
    "rate_limit",
    "context_length_exceeded",
    "failure",
)


class AetherError(Exception):
    """Base error for aethercodex."""


class TransportError(AetherError):
    """Completion request failed; ``kind`` is one of ``TRANSPORT_KINDS``."""

    def __init__(
        self,
        kind: str,
        message: str,
        *,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        if kind not in TRANSPORT_KINDS:
            raise ValueError(f"unknown transport error kind: {kind}")
        super().__init__(message)
        self.kind = kind
        self.status_code = status_code
        self.details = details or {}

    @property
    def status(self) -> str:
        return self.kind


class ToolExecutionError(AetherError):
    """Tool sandbox gave up after exhausting its retry budget."""

    status = "tool_execution_error"


class ToolTimeoutError(ToolExecutionError):
    status = "timeout"


class ToolRateLimitError(ToolExecutionError):
    status = "rate_limit"


class ToolNetworkError(ToolExecutionError):
    status = "connection_failure"


class ToolContextLengthError(ToolExecutionError):
    status = "context_length_exceeded"


class ToolParseError(ToolExecutionError):
    status = "tool_execution_error"


class StepTermination(AetherError):
    """Intentional interruption raised by a tool on behalf of a task engine."""

    def __init__(self, marker: "DivineInterrupt") -> None:
        super().__init__(f"step terminated: {marker.kind}")
        self.marker = marker


class RestartRequested(AetherError):
    """Discard the current divination attempt and start over."""


@dataclass(frozen=True)
class TerminalStatus:
    tag: str
    message: str
    backtrace: str | None = None

    @classmethod
    def build(cls, tag: str, message: str, backtrace: str | None = None) -> "TerminalStatus":
        return cls(
            tag=tag,
            message=truncate(message, MESSAGE_LIMIT),
            backtrace=truncate(backtrace, 2000) if backtrace else None,
        )


def _safe_json(text: str) -> Any:
    try:
        return json.loads(text)
    except (TypeError, ValueError):
        return None


def _error_fields(payload: Any) -> dict[str, Any] | None:
    if not isinstance(payload, dict) or not isinstance(payload.get("error"), dict):
        return None
    error = payload["error"]
    fields = {key: error.get(key) for key in ("code", "message", "type", "param", "status")}
    return {key: value for key, value in fields.items() if value is not None}


def extract_error_details(exc: BaseException) -> dict[str, Any]:
    details = _error_fields(_safe_json(str(exc)))
    if details:
        return details
    response = getattr(exc, "response", None)
    body = getattr(response, "text", None)
    if isinstance(body, str):
        details = _error_fields(_safe_json(body))
        if details:
            return details
    if isinstance(exc, TransportError) and exc.details:
        return dict(exc.details)
    return {"message": str(exc), "type": type(exc).__name__}
