import json
import threading
from types import SimpleNamespace

import pytest
import requests

from src.athrean.core.state_machine import FAILED
from src.athrean.domain.generation_models import GenerateRequest, HistoryMessage
from src.athrean.infrastructure.session_store import GenerationSession
from src.athrean.services import openrouter
from src.athrean.services.generation import GenerationOrchestrator
from src.athrean.services.openrouter import (
    REASONING_SYSTEM_PROMPT,
    SYSTEM_PROMPT,
    BackendNotConfiguredError,
    CircuitBreaker,
    InProcessStreamSource,
    OpenRouterClient,
    build_messages,
)
from src.athrean.services.streaming import TransportError, decode_stream


def sse(*events):
    lines = [f"data: {json.dumps(e)}".encode("utf-8") for e in events]
    return lines + [b"", b": keep-alive", b"data: not-json", b"data: [DONE]"]


def delta(text):
    return {"choices": [{"delta": {"content": text}}]}


class FakeResponse:
    def __init__(self, lines, status_code=200, text=""):
        self._lines = lines
        self.status_code = status_code
        self.text = text

    def iter_lines(self):
        return iter(self._lines)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def post(self, url, **kwargs):
        self.calls.append(SimpleNamespace(url=url, **kwargs))
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def _client(*responses, breaker=None):
    session = FakeSession(*responses)
    client = OpenRouterClient(api_key="sk-test", base_url="https://router.test/v1", session=session, breaker=breaker)
    return client, session


def test_build_messages_wraps_base_code():
    request = GenerateRequest(
        prompt="Make it blue",
        base_code="export default function A(){}",
        history=[HistoryMessage(role="user", content="hi"), HistoryMessage(role="assistant", content="hello")],
    )
    messages = build_messages(request)
    assert messages[:2] == [{"role": "user", "content": "hi"}, {"role": "assistant", "content": "hello"}]
    assert messages[-1] == {
        "role": "user",
        "content": "Customize this component:\n```tsx\nexport default function A(){}\n```\n\nMake it blue",
    }


def test_build_messages_plain_prompt():
    assert build_messages(GenerateRequest(prompt="Card")) == [{"role": "user", "content": "Card"}]


def test_stream_completion_yields_tokens_and_sends_headers():
    client, session = _client(FakeResponse(sse(delta("Hel"), delta(""), delta("lo"))))
    tokens = list(client.stream_completion([{"role": "user", "content": "x"}], "openai/gpt-4o"))
    assert tokens == ["Hel", "lo"]

    call = session.calls[0]
    assert call.url == "https://router.test/v1/chat/completions"
    assert call.headers["Authorization"] == "Bearer sk-test"
    assert call.headers["X-Title"] == "Athrean"
    assert call.json["messages"][0] == {"role": "system", "content": SYSTEM_PROMPT}
    assert call.json["model"] == "openai/gpt-4o"
    assert call.stream is True


def test_reasoning_stream_emits_records():
    events = [
        delta("<think"),
        delta('ing><step title="Plan">Grid'),
        delta(" layout</step></thinking>Here:\n"),
        delta("```tsx\nA\n```"),
        {"choices": [{"delta": {}}], "usage": {"prompt_tokens": 10, "completion_tokens": 20, "total_tokens": 30}},
    ]
    client, session = _client(FakeResponse(sse(*events)))
    records = list(client.stream_completion_with_reasoning([{"role": "user", "content": "x"}]))

    reasoning = [r["reasoning"] for r in records if r["type"] == "reasoning"]
    assert [(r["title"], r["status"]) for r in reasoning] == [("Plan", "thinking"), ("Plan", "completed")]
    assert reasoning[1]["content"] == "Grid layout"

    text = "".join(r["content"] for r in records if r["type"] == "content")
    assert text == "Here:\n```tsx\nA\n```"
    assert "<thinking" not in text

    usage = [r["usage"] for r in records if r["type"] == "usage"]
    assert usage == [{"promptTokens": 10, "completionTokens": 20, "totalTokens": 30}]

    payload = session.calls[0].json
    assert payload["stream_options"] == {"include_usage": True}
    assert payload["messages"][0]["content"] == REASONING_SYSTEM_PROMPT
    assert payload["model"] == openrouter.DEFAULT_BACKEND_MODEL


def test_missing_api_key_raises():
    client = OpenRouterClient(api_key="", session=FakeSession())
    assert not client.configured
    with pytest.raises(BackendNotConfiguredError):
        list(client.stream_completion([]))


def test_upstream_error_status_raises_transport_error():
    client, _ = _client(FakeResponse([], status_code=401, text="bad key"))
    with pytest.raises(TransportError) as info:
        list(client.stream_completion([]))
    assert info.value.status_code == 401
    assert "bad key" in str(info.value)


def test_breaker_opens_after_repeated_failures():
    clock = SimpleNamespace(now=100.0)
    breaker = CircuitBreaker(threshold=2, cooldown=30.0, clock=lambda: clock.now)
    client, session = _client(
        requests.exceptions.ConnectionError("down"),
        requests.exceptions.ConnectionError("down"),
        FakeResponse(sse(delta("ok"))),
        breaker=breaker,
    )
    for _ in range(2):
        with pytest.raises(TransportError):
            list(client.stream_completion([]))
    assert breaker.is_open()

    with pytest.raises(TransportError) as info:
        list(client.stream_completion([]))
    assert info.value.status_code == 503
    assert len(session.calls) == 2

    clock.now += 31
    assert list(client.stream_completion([])) == ["ok"]
    assert breaker.fails == 0


def test_in_process_source_encodes_ndjson():
    client, _ = _client(FakeResponse(sse(delta("Hi"))))
    source = InProcessStreamSource(client)
    handle = source.open(GenerateRequest(prompt="x"))
    records = list(decode_stream(handle))
    handle.close()
    assert records == [{"type": "content", "content": "Hi"}]


def test_in_process_source_plain_text():
    client, _ = _client(FakeResponse(sse(delta("a"), delta("é"))))
    handle = InProcessStreamSource(client).open(GenerateRequest(prompt="x", use_reasoning=False))
    assert b"".join(handle).decode("utf-8") == "aé"


def test_in_process_source_requires_configuration():
    source = InProcessStreamSource(OpenRouterClient(api_key="", session=FakeSession()))
    with pytest.raises(TransportError):
        source.open(GenerateRequest(prompt="x"))


class BlockingResponse(FakeResponse):
    """Sends one line, then blocks like an idle socket until closed."""

    def __init__(self, first_line):
        super().__init__([first_line])
        self.reading = threading.Event()
        self._released = threading.Event()
        self.closed = False

    def iter_lines(self):
        yield self._lines[0]
        self.reading.set()
        self._released.wait(5)
        raise requests.exceptions.ConnectionError("connection closed")

    def close(self):
        self.closed = True
        self._released.set()


def test_stop_closes_upstream_response_while_read_is_blocked():
    breaker = CircuitBreaker(threshold=1, cooldown=30)
    response = BlockingResponse(f"data: {json.dumps(delta('```tsx' + chr(10) + 'const a'))}".encode("utf-8"))
    client, _ = _client(response, breaker=breaker)
    session = GenerationSession()
    orchestrator = GenerationOrchestrator(session, InProcessStreamSource(client), model="anthropic/claude-3.5-sonnet")
    results = []

    worker = threading.Thread(target=lambda: results.append(orchestrator.generate("x")))
    worker.start()
    assert response.reading.wait(5)
    orchestrator.stop()
    worker.join(5)

    assert not worker.is_alive()
    assert response.closed
    assert results[0].status == "cancelled"
    assert session.status == FAILED
    assert breaker.fails == 0
    assert not breaker.is_open()
