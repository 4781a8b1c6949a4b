from __future__ import annotations

import json
import logging
import os
import time
from threading import Lock
from typing import Any, Dict, Iterator, List, Optional, Sequence

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..domain.generation_models import GenerateRequest, ReasoningStep
from .model_registry import DEFAULT_BACKEND_MODEL
from .reasoning_parser import ReasoningTagExtractor, ThinkingSplitter
from .streaming import TransportError, encode_record

logger = logging.getLogger(__name__)
LOG = logging.getLogger("athrean.llm")

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"
APP_TITLE = "Athrean"

_BREAKER_THRESHOLD = int(os.getenv("ATHREAN_LLM_BREAKER_THRESHOLD", "3"))
_BREAKER_COOLDOWN = float(os.getenv("ATHREAN_LLM_BREAKER_COOLDOWN", "60.0"))
STREAM_TIMEOUT = (
    int(os.getenv("ATHREAN_LLM_CONNECT_TIMEOUT", "3")),
    int(os.getenv("ATHREAN_LLM_READ_TIMEOUT", "60")),
)

_RULES = """TECH STACK:
- React 18 with TypeScript
- Tailwind CSS (dark mode)
- Framer Motion for animations
- Lucide React for icons

CRITICAL RULES:
1. Start with 'use client' directive
2. Export default function component
3. MUST BE 100% SELF-CONTAINED - define ALL data/arrays INSIDE the component
4. Never reference undefined variables - if you need data, create mock data inside the component
5. Use dark theme: zinc-950 background, zinc-100 text
6. Add smooth Framer Motion animations
7. Include TypeScript interfaces for all data structures"""

SYSTEM_PROMPT = f"""You are an expert React component designer. Create beautiful, modern UI components.

{_RULES}

Response format:
1. Brief explanation
2. Complete code in ```tsx block (FULLY SELF-CONTAINED)
3. Key features list

Output production-ready, visually impressive code."""

REASONING_SYSTEM_PROMPT = f"""You are an expert React component designer. Create beautiful, modern UI components.

IMPORTANT: Before writing code, show your reasoning process using <thinking> tags. Structure your thoughts as steps:

<thinking>
<step title="Understanding Requirements">Analyze what the user is asking for...</step>
<step title="Component Architecture">Plan the component structure...</step>
<step title="Styling Strategy">Decide on visual approach...</step>
<step title="Animation Plan">Plan Framer Motion animations...</step>
</thinking>

After reasoning, provide your response.

{_RULES}

Response format:
1. <thinking> block with reasoning steps
2. Brief explanation
3. Complete code in ```tsx block (FULLY SELF-CONTAINED)
4. Key features list

Output production-ready, visually impressive code."""


class BackendNotConfiguredError(RuntimeError):
    pass


class ResponseSlot:
    """Holds the live upstream response of one stream so another thread can close it."""

    def __init__(self) -> None:
        self._response: Optional[requests.Response] = None
        self._closed = False
        self._lock = Lock()

    @property
    def closed(self) -> bool:
        return self._closed

    def attach(self, response: requests.Response) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._response = response
            return True

    def release(self) -> None:
        with self._lock:
            self._response = None

    def close(self) -> None:
        with self._lock:
            self._closed = True
            response, self._response = self._response, None
        if response is not None:
            response.close()


class CircuitBreaker:
    """Open after ``threshold`` consecutive failures, close again after ``cooldown``."""

    def __init__(self, threshold: int = _BREAKER_THRESHOLD, cooldown: float = _BREAKER_COOLDOWN, clock=time.time) -> None:
        self.threshold = max(1, threshold)
        self.cooldown = cooldown
        self._clock = clock
        self.fails = 0
        self.opened_at = 0.0

    def is_open(self) -> bool:
        if self.opened_at == 0.0:
            return False
        if self._clock() - self.opened_at < self.cooldown:
            return True
        self.fails = 0
        self.opened_at = 0.0
        return False

    def record_fail(self) -> None:
        self.fails += 1
        if self.fails >= self.threshold and self.opened_at == 0.0:
            self.opened_at = self._clock()
            LOG.warning("llm_breaker_opened", extra={"fails": self.fails, "cooldown_s": self.cooldown})

    def record_success(self) -> None:
        if self.fails or self.opened_at:
            LOG.info("llm_breaker_closed")
        self.fails = 0
        self.opened_at = 0.0


def build_http_session() -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=2,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset(["POST", "GET"]),
    )
    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    return session


def build_messages(request: GenerateRequest) -> List[Dict[str, str]]:
    messages = [{"role": m.role, "content": m.content} for m in request.history]
    user_message = request.prompt
    if request.base_code:
        user_message = f"Customize this component:\n```tsx\n{request.base_code}\n```\n\n{request.prompt}"
    messages.append({"role": "user", "content": user_message})
    return messages


def _usage_record(usage: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": "usage",
        "usage": {
            "promptTokens": usage.get("prompt_tokens") or 0,
            "completionTokens": usage.get("completion_tokens") or 0,
            "totalTokens": usage.get("total_tokens") or 0,
        },
    }


def _reasoning_record(step: ReasoningStep) -> Dict[str, Any]:
    return {"type": "reasoning", "reasoning": step.to_wire()}


class OpenRouterClient:
    """Streaming chat completions from an OpenAI-compatible endpoint (OpenRouter)."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
        breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.getenv("OPENROUTER_API_KEY")
        self.base_url = (base_url or os.getenv("OPENROUTER_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
        self.site_url = os.getenv("ATHREAN_SITE_URL", "http://localhost:3000")
        self._session = session or build_http_session()
        self._breaker = breaker or CircuitBreaker()
        self._timeout = STREAM_TIMEOUT

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _headers(self) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
            "HTTP-Referer": self.site_url,
            "X-Title": APP_TITLE,
        }

    def _stream_events(self, payload: Dict[str, Any], slot: Optional[ResponseSlot] = None) -> Iterator[Dict[str, Any]]:
        """Yield decoded SSE ``data:`` objects until ``[DONE]``.

        When ``slot`` is given the open response is parked in it; closing the slot
        from another thread ends the stream quietly instead of counting a failure.
        """

        if not self.api_key:
            raise BackendNotConfiguredError("OPENROUTER_API_KEY is not set")
        if self._breaker.is_open():
            LOG.info("llm_skipped_due_to_breaker", extra={"cooldown_s": self._breaker.cooldown})
            raise TransportError("Generation backend temporarily unavailable", status_code=503)

        LOG.debug("openrouter_stream", extra={"model": payload.get("model"), "base_url": self.base_url})
        try:
            with self._session.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=self._headers(),
                timeout=self._timeout,
                stream=True,
            ) as resp:
                if slot is not None and not slot.attach(resp):
                    return
                try:
                    if resp.status_code >= 400:
                        raise TransportError(f"OpenRouter error: {resp.text[:500]}", status_code=resp.status_code)
                    for raw_line in resp.iter_lines():
                        if not raw_line:
                            continue
                        line = (raw_line.decode("utf-8") if isinstance(raw_line, bytes) else raw_line).strip()
                        if not line.startswith("data: "):
                            continue
                        data = line[6:].strip()
                        if data == "[DONE]":
                            break
                        try:
                            parsed = json.loads(data)
                        except json.JSONDecodeError:
                            continue
                        if isinstance(parsed, dict):
                            yield parsed
                finally:
                    if slot is not None:
                        slot.release()
        except TransportError:
            self._breaker.record_fail()
            raise
        except Exception as exc:
            if slot is not None and slot.closed:
                # Reads fail once stop() closes the response under us.
                LOG.debug("openrouter_stream_closed", extra={"model": payload.get("model"), "err": type(exc).__name__})
                return
            if not isinstance(exc, requests.exceptions.RequestException):
                raise
            self._breaker.record_fail()
            LOG.warning("openrouter_stream_failed", extra={"model": payload.get("model"), "err": str(exc)})
            raise TransportError(f"OpenRouter request failed: {exc}") from exc
        if slot is None or not slot.closed:
            self._breaker.record_success()

    @staticmethod
    def _delta(event: Dict[str, Any]) -> str:
        choices = event.get("choices") or [{}]
        delta = (choices[0] or {}).get("delta") or {}
        return delta.get("content") or ""

    def stream_completion(
        self,
        messages: Sequence[Dict[str, str]],
        model: Optional[str] = None,
        *,
        slot: Optional[ResponseSlot] = None,
    ) -> Iterator[str]:
        payload = {
            "model": model or DEFAULT_BACKEND_MODEL,
            "messages": [{"role": "system", "content": SYSTEM_PROMPT}, *messages],
            "stream": True,
        }
        for event in self._stream_events(payload, slot):
            token = self._delta(event)
            if token:
                yield token

    def stream_completion_with_reasoning(
        self,
        messages: Sequence[Dict[str, str]],
        model: Optional[str] = None,
        *,
        slot: Optional[ResponseSlot] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Yield NDJSON-ready ``content`` / ``reasoning`` / ``usage`` records."""

        payload = {
            "model": model or DEFAULT_BACKEND_MODEL,
            "messages": [{"role": "system", "content": REASONING_SYSTEM_PROMPT}, *messages],
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        splitter = ThinkingSplitter()
        extractor = ReasoningTagExtractor()
        for event in self._stream_events(payload, slot):
            usage = event.get("usage")
            if isinstance(usage, dict):
                yield _usage_record(usage)
            token = self._delta(event)
            if not token:
                continue
            split = splitter.feed(token)
            if split.thinking:
                for step in extractor.append(split.thinking):
                    yield _reasoning_record(step)
            if split.visible:
                yield {"type": "content", "content": split.visible}
        tail = splitter.finish()
        if tail.thinking:
            for step in extractor.append(tail.thinking):
                yield _reasoning_record(step)
        if tail.visible:
            yield {"type": "content", "content": tail.visible}


def _encoded(records: Iterator[Dict[str, Any]]) -> Iterator[bytes]:
    try:
        for record in records:
            yield encode_record(record)
    finally:
        records.close()  # type: ignore[attr-defined]


def _utf8(tokens: Iterator[str]) -> Iterator[bytes]:
    try:
        for token in tokens:
            yield token.encode("utf-8")
    finally:
        tokens.close()  # type: ignore[attr-defined]


class _RecordHandle:
    def __init__(self, chunks: Iterator[bytes], slot: ResponseSlot) -> None:
        self._chunks = chunks
        self._slot = slot

    def __iter__(self) -> Iterator[bytes]:
        return self._chunks

    def close(self) -> None:
        # Closing the response unblocks a read in progress on the pumping thread.
        self._slot.close()
        try:
            self._chunks.close()  # type: ignore[attr-defined]
        except ValueError:
            # Still running on the pumping thread; it finishes once the read fails.
            LOG.debug("record_stream_close_deferred")


class InProcessStreamSource:
    """Serve orchestrator streams straight from an :class:`OpenRouterClient`.

    Records are encoded to NDJSON bytes so the orchestrator consumes exactly the
    wire format a remote backend would send.
    """

    def __init__(self, client: Optional[OpenRouterClient] = None) -> None:
        self._client = client or OpenRouterClient()

    def open(self, request: GenerateRequest) -> _RecordHandle:
        if not self._client.configured:
            raise TransportError("Generation backend is not configured", status_code=503)
        messages = build_messages(request)
        slot = ResponseSlot()
        if request.use_reasoning:
            records = self._client.stream_completion_with_reasoning(messages, request.model, slot=slot)
            return _RecordHandle(_encoded(records), slot)
        tokens = self._client.stream_completion(messages, request.model, slot=slot)
        return _RecordHandle(_utf8(tokens), slot)
