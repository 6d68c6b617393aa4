from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import httpx
from loguru import logger

from aethercodex.config import LLMSettings
from aethercodex.errors import TransportError, extract_error_details
from aethercodex.text import truncate

STATUS_MESSAGES = {
    400: "Invalid Format: Invalid request body format.",
    401: "Authentication Fails: Invalid API key.",
    402: "Insufficient Balance: You have run out of API credits.",
    403: "Forbidden: Access denied.",
    404: "Not Found: The requested resource does not exist.",
    408: "Request Timeout: The server timed out waiting for the request.",
    422: "Invalid Parameters: Your request contains invalid parameters.",
    429: "Rate Limit Reached: You are sending requests too quickly.",
    500: "Server Error: The completion API is experiencing technical difficulties.",
    502: "Bad Gateway: The API gateway is experiencing issues.",
    503: "Server Overloaded: The server is overloaded due to high traffic.",
    504: "Gateway Timeout: The API gateway timed out.",
}

STATUS_HINTS = {
    400: "modify your request according to the error hints.",
    422: "modify your request according to the error hints.",
    401: "check your API key configuration.",
    402: "check your account balance and add funds.",
    429: "pace your requests reasonably.",
    500: "retry your request after a brief wait.",
    502: "retry your request after a brief wait.",
    503: "retry your request after a brief wait.",
    504: "retry your request after a brief wait.",
}

COMPLETION_PROMPT = "Provide a code completion for the cursor based on context:\n{snippet}"


@lru_cache(maxsize=1)
def _shared_http_client() -> httpx.Client:
    return httpx.Client()


def http_error_message(status: int, error_info: dict[str, Any] | None = None) -> str:
    base = STATUS_MESSAGES.get(status)
    if base is None and status >= 500:
        base = f"Server Error: The completion API is experiencing issues (HTTP {status})."
    elif base is None:
        base = f"API Request Failed (HTTP {status})."
    if error_info and error_info.get("message"):
        base = f"{base} {error_info['message']}"
    hint = STATUS_HINTS.get(status)
    return f"{base} Please {hint}" if hint else f"{base} Please try again."


def _kind_from_message(message: str) -> str:
    lowered = message.lower()
    if "context length" in lowered or "maximum context" in lowered:
        return "context_length_exceeded"
    if "rate limit" in lowered or "rate_limit" in lowered:
        return "rate_limit"
    if "timed out" in lowered or "timeout" in lowered:
        return "timeout"
    if "connection" in lowered or "network" in lowered:
        return "connection_failure"
    return "failure"


def classify_transport_error(exc: BaseException) -> TransportError:
    """Map an exception raised while talking to the completion API onto a ``TransportError``."""
    if isinstance(exc, TransportError):
        return exc
    message = str(exc) or type(exc).__name__
    if isinstance(exc, httpx.TimeoutException):
        kind = "timeout"
    elif isinstance(exc, (httpx.ConnectError, httpx.NetworkError)):
        kind = "connection_failure"
    else:
        kind = _kind_from_message(message)
    return TransportError(kind, truncate(message, 300), details=extract_error_details(exc))


def _parse_error_body(body: str) -> dict[str, Any]:
    try:
        parsed = json.loads(body)
    except ValueError:
        return {"message": truncate(body, 200)} if body.strip() else {}
    if not isinstance(parsed, dict):
        return {}
    error = parsed.get("error") if isinstance(parsed.get("error"), dict) else parsed
    fields = {
        "message": error.get("message") or error.get("error") or error.get("detail"),
        "code": error.get("code"),
        "type": error.get("type"),
    }
    return {key: value for key, value in fields.items() if value is not None}


def _classify_status(status: int, body: str) -> TransportError:
    details = _parse_error_body(body or "")
    message = http_error_message(status, details)
    if status == 429:
        kind = "rate_limit"
    elif status in (408, 504):
        kind = "timeout"
    else:
        kind = _kind_from_message(message)
    return TransportError(kind, message, status_code=status, details=details)


@dataclass(frozen=True)
class CompletionClient:
    settings: LLMSettings

    def model_for(self, reasoning: bool) -> str:
        return self.settings.reasoning_model if reasoning else self.settings.model

    def timeout_for(self, reasoning: bool) -> float:
        return self.settings.reasoning_timeout_s if reasoning else self.settings.timeout_s

    @staticmethod
    def is_reasoning_model(model: str) -> bool:
        return "reason" in model.lower()

    def build_request(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        reasoning: bool = False,
        temperature: float = 1.0,
    ) -> dict[str, Any]:
        model = self.model_for(reasoning)
        payload: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "max_tokens": self.settings.reasoning_max_tokens if reasoning else self.settings.max_tokens,
            "temperature": temperature,
        }
        # Reasoning models reject tool schemas.
        if not reasoning and not self.is_reasoning_model(model):
            payload["tools"] = list(tools or [])
        return payload

    def send(self, payload: dict[str, Any], timeout: float | None = None) -> dict[str, Any]:
        if not (self.settings.api_key or "").strip():
            raise TransportError("failure", "Missing API key for the completion service.")
        logger.debug(
            "Completion request model={} messages={} max_tokens={} temperature={}",
            payload.get("model"),
            len(payload.get("messages", [])),
            payload.get("max_tokens"),
            payload.get("temperature"),
        )
        headers = {"Authorization": f"Bearer {self.settings.api_key}"}
        client = _shared_http_client()
        try:
            response = client.post(
                self.settings.base_url,
                headers=headers,
                json=payload,
                timeout=timeout if timeout is not None else self.settings.timeout_s,
            )
        except httpx.HTTPError as exc:
            raise classify_transport_error(exc) from exc
        if response.status_code != 200:
            error = _classify_status(response.status_code, response.text)
            logger.error("Completion API returned HTTP {}: {}", response.status_code, error)
            raise error
        try:
            data = response.json()
        except json.JSONDecodeError as exc:
            raise TransportError("failure", f"Invalid JSON from completion API: {truncate(response.text, 200)}") from exc
        if not isinstance(data, dict):
            raise TransportError("failure", "Completion API returned a non-object payload.")
        return data

    @staticmethod
    def extract(
        response: dict[str, Any], artifacts: dict[str, Any] | None = None
    ) -> tuple[str, list[dict[str, Any]], dict[str, Any]]:
        artifacts = artifacts if artifacts is not None else {}
        choices = response.get("choices") or [{}]
        message = (choices[0] or {}).get("message") or {}
        content = message.get("content") or ""
        tool_calls = message.get("tool_calls") or []
        if message.get("reasoning_content"):
            artifacts["reasoning_content"] = str(message["reasoning_content"])
        return str(content), [call for call in tool_calls if isinstance(call, dict)], artifacts

    def complete(self, snippet: str, temperature: float = 1.0) -> str:
        """One-shot cursor completion; an empty string when anything goes wrong."""
        payload = self.build_request(
            [{"role": "user", "content": COMPLETION_PROMPT.format(snippet=snippet)}],
            temperature=temperature,
        )
        try:
            content, _, _ = self.extract(self.send(payload, self.settings.timeout_s))
        except TransportError as exc:
            logger.warning("Completion failed ({}): {}", exc.kind, exc)
            return ""
        return content
