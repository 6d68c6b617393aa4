import json
import sys
import unittest
from pathlib import Path
from unittest.mock import patch

import httpx

sys.path.append(str(Path(__file__).resolve().parents[1] / "src"))

from aethercodex.config import LLMSettings
from aethercodex.errors import TransportError
from aethercodex.llm import CompletionClient, classify_transport_error, http_error_message


class _FakeResponse:
    def __init__(self, payload: object, status_code: int = 200) -> None:
        self.status_code = status_code
        self.text = payload if isinstance(payload, str) else json.dumps(payload)

    def json(self):
        return json.loads(self.text)


class _FakeClient:
    def __init__(self, outcomes: list[object]) -> None:
        self.outcomes = outcomes
        self.calls: list[dict] = []

    def post(self, url, **kwargs):
        if len(self.calls) >= len(self.outcomes):
            raise AssertionError("post called more times than expected")
        outcome = self.outcomes[len(self.calls)]
        self.calls.append({"url": url, **kwargs})
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def _client(**overrides) -> CompletionClient:
    return CompletionClient(LLMSettings(api_key="sk-test", **overrides))


def _reply(content: str = "", tool_calls: list | None = None, reasoning: str | None = None) -> dict:
    message: dict = {"role": "assistant", "content": content}
    if tool_calls is not None:
        message["tool_calls"] = tool_calls
    if reasoning is not None:
        message["reasoning_content"] = reasoning
    return {"choices": [{"message": message}]}


class BuildRequestTests(unittest.TestCase):
    def test_standard_request_carries_tools(self) -> None:
        payload = _client().build_request([{"role": "user", "content": "hi"}], tools=[{"type": "function"}])
        self.assertEqual(payload["model"], "deepseek-chat")
        self.assertEqual(payload["tools"], [{"type": "function"}])
        self.assertEqual(payload["max_tokens"], 8192)

    def test_reasoning_request_omits_tools(self) -> None:
        payload = _client().build_request([], tools=[{"type": "function"}], reasoning=True)
        self.assertEqual(payload["model"], "deepseek-reasoner")
        self.assertNotIn("tools", payload)
        self.assertEqual(payload["max_tokens"], 64_000)

    def test_reasoning_named_model_omits_tools(self) -> None:
        payload = _client(model="my-reasoner").build_request([], tools=[{"type": "function"}])
        self.assertNotIn("tools", payload)


class SendTests(unittest.TestCase):
    def test_send_posts_with_bearer_header(self) -> None:
        fake = _FakeClient([_FakeResponse(_reply("hello"))])
        client = _client()
        with patch("aethercodex.llm._shared_http_client", return_value=fake):
            response = client.send(client.build_request([]), timeout=5.0)
        self.assertEqual(client.extract(response)[0], "hello")
        self.assertEqual(fake.calls[0]["headers"]["Authorization"], "Bearer sk-test")
        self.assertEqual(fake.calls[0]["timeout"], 5.0)

    def test_missing_api_key_fails_before_network(self) -> None:
        fake = _FakeClient([])
        with patch("aethercodex.llm._shared_http_client", return_value=fake):
            with self.assertRaises(TransportError) as ctx:
                CompletionClient(LLMSettings(api_key=None)).send({})
        self.assertEqual(ctx.exception.kind, "failure")
        self.assertEqual(fake.calls, [])

    def test_http_statuses_are_classified(self) -> None:
        cases = [
            (429, {"error": {"message": "slow down"}}, "rate_limit"),
            (504, "", "timeout"),
            (400, {"error": {"message": "maximum context length is 65536 tokens"}}, "context_length_exceeded"),
            (401, {"error": {"message": "bad key"}}, "failure"),
        ]
        for status, body, kind in cases:
            fake = _FakeClient([_FakeResponse(body, status_code=status)])
            with patch("aethercodex.llm._shared_http_client", return_value=fake):
                with self.assertRaises(TransportError) as ctx:
                    _client().send({})
            self.assertEqual(ctx.exception.kind, kind, status)
            self.assertEqual(ctx.exception.status_code, status)

    def test_network_errors_are_classified(self) -> None:
        cases = [
            (httpx.ReadTimeout("timed out"), "timeout"),
            (httpx.ConnectError("refused"), "connection_failure"),
        ]
        for exc, kind in cases:
            fake = _FakeClient([exc])
            with patch("aethercodex.llm._shared_http_client", return_value=fake):
                with self.assertRaises(TransportError) as ctx:
                    _client().send({})
            self.assertEqual(ctx.exception.kind, kind)

    def test_invalid_json_is_a_failure(self) -> None:
        fake = _FakeClient([_FakeResponse("<html>oops</html>")])
        with patch("aethercodex.llm._shared_http_client", return_value=fake):
            with self.assertRaises(TransportError) as ctx:
                _client().send({})
        self.assertEqual(ctx.exception.kind, "failure")


class ExtractTests(unittest.TestCase):
    def test_extract_collects_reasoning_and_tool_calls(self) -> None:
        call = {"id": "c1", "function": {"name": "read_file", "arguments": "{}"}}
        content, calls, artifacts = CompletionClient.extract(_reply("done", [call, "junk"], "thinking"))
        self.assertEqual(content, "done")
        self.assertEqual(calls, [call])
        self.assertEqual(artifacts, {"reasoning_content": "thinking"})

    def test_extract_tolerates_empty_response(self) -> None:
        self.assertEqual(CompletionClient.extract({}), ("", [], {}))


class CompleteTests(unittest.TestCase):
    def test_complete_returns_content(self) -> None:
        fake = _FakeClient([_FakeResponse(_reply("x + 1"))])
        with patch("aethercodex.llm._shared_http_client", return_value=fake):
            self.assertEqual(_client().complete("x ="), "x + 1")
        prompt = fake.calls[0]["json"]["messages"][0]["content"]
        self.assertIn("x =", prompt)

    def test_complete_returns_empty_string_on_failure(self) -> None:
        fake = _FakeClient([_FakeResponse({"error": {"message": "down"}}, status_code=503)])
        with patch("aethercodex.llm._shared_http_client", return_value=fake):
            self.assertEqual(_client().complete("x ="), "")


class ErrorMessageTests(unittest.TestCase):
    def test_known_and_unknown_statuses(self) -> None:
        self.assertIn("Rate Limit Reached", http_error_message(429))
        self.assertIn("HTTP 599", http_error_message(599))
        self.assertIn("HTTP 418", http_error_message(418))
        self.assertIn("quota gone", http_error_message(402, {"message": "quota gone"}))

    def test_classify_passes_transport_errors_through(self) -> None:
        error = TransportError("rate_limit", "slow")
        self.assertIs(classify_transport_error(error), error)
        self.assertEqual(classify_transport_error(RuntimeError("network unreachable")).kind, "connection_failure")


if __name__ == "__main__":
    unittest.main()
