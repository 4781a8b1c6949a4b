"""Drive one generate request from prompt to settled session state.

The orchestrator opens a stream from a :class:`StreamSource`, pumps it through the
NDJSON decoder one buffer at a time, and routes every record into the session:
content feeds the code-fence extractor (and any inline thinking markup feeds the
reasoning extractor), reasoning records go through the session's merge rule, and
usage records are priced against the model registry. When the stream ends the
cleaned answer and final artifact are committed and the artifact is handed to the
project repository without waiting for it.
"""

from __future__ import annotations

import codecs
import logging
import threading
import time
from concurrent.futures import Executor, Future
from dataclasses import dataclass, field
from typing import Iterator, Optional, Protocol, Tuple

import requests
from pydantic import ValidationError

from ..core.state_machine import FAILED, SETTLED
from ..domain.generation_models import (
    ChatMessage,
    ContentRecord,
    ContextUsage,
    ErrorRecord,
    GenerateRequest,
    HistoryMessage,
    KNOWN_RECORD_TYPES,
    ReasoningRecord,
    UsageData,
    UsageRecord,
    parse_stream_record,
)
from ..domain.project_models import SavedProject, SaveGenerationRequest
from ..infrastructure.project_repository import ProjectRepository
from ..infrastructure.session_store import GenerationInProgressError, GenerationSession
from ..observability.metrics import DROPPED_RECORDS, GENERATION_DURATION, GENERATION_OUTCOMES
from .code_extract import extract_code
from .model_registry import DEFAULT_FREE_MODEL, build_context_usage
from .openrouter import STREAM_TIMEOUT, build_http_session
from .preview import PreviewPublisher
from .reasoning_parser import ReasoningTagExtractor, ThinkingSplitter, remove_thinking, strip_thinking
from .streaming import NdjsonDecoder, TransportError
from .telemetry_sink import TelemetryEvent, record_event

logger = logging.getLogger(__name__)
LOG = logging.getLogger("athrean.llm")

GENERATION_ERROR_MESSAGE = "Sorry, there was an error generating your component. Please try again."
PROJECT_NAME_LIMIT = 50

class StreamHandle(Protocol):
    def __iter__(self) -> Iterator[bytes]: ...

    def close(self) -> None: ...


class StreamSource(Protocol):
    def open(self, request: GenerateRequest) -> StreamHandle: ...


class GenerationCancelled(Exception):
    pass


class RunRegistry(Protocol):
    def attach_run(self, session_id: str, run: "GenerationOrchestrator") -> None: ...

    def detach_run(self, session_id: str, run: "GenerationOrchestrator") -> None: ...


@dataclass(frozen=True)
class GenerationResult:
    status: str
    generated_code: Optional[str] = None
    usage: Optional[ContextUsage] = None
    message: Optional[ChatMessage] = None
    error: Optional[str] = None
    persistence: Optional["Future[Optional[SavedProject]]"] = None


@dataclass
class _Run:
    prompt: str
    use_reasoning: bool
    full_text: str = ""
    last_code: Optional[str] = None
    splitter: ThinkingSplitter = field(default_factory=ThinkingSplitter)
    extractor: ReasoningTagExtractor = field(default_factory=lambda: ReasoningTagExtractor(id_prefix="inline_"))
    text_decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )
    started: float = field(default_factory=time.monotonic)


class _ResponseHandle:
    def __init__(self, response: requests.Response) -> None:
        self._response = response

    def __iter__(self) -> Iterator[bytes]:
        try:
            for chunk in self._response.iter_content(chunk_size=None):
                if chunk:
                    yield chunk
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Stream read failed: {exc}") from exc

    def close(self) -> None:
        self._response.close()


class HttpStreamSource:
    """Stream generation records from a remote backend over HTTP."""

    def __init__(
        self,
        base_url: str,
        session: Optional[requests.Session] = None,
        timeout: Tuple[int, int] = STREAM_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session = session or build_http_session()
        self._timeout = timeout

    def open(self, request: GenerateRequest) -> StreamHandle:
        path = "/api/generate-with-reasoning" if request.use_reasoning else "/api/generate"
        LOG.debug("generation_stream_open", extra={"url": self.base_url + path, "model": request.model})
        try:
            response = self._session.post(
                self.base_url + path,
                json=request.to_wire(),
                timeout=self._timeout,
                stream=True,
            )
        except requests.exceptions.RequestException as exc:
            raise TransportError(f"Failed to reach generation backend: {exc}") from exc
        if response.status_code >= 400:
            response.close()
            raise TransportError("Failed to generate", status_code=response.status_code)
        return _ResponseHandle(response)


class GenerationOrchestrator:
    def __init__(
        self,
        session: GenerationSession,
        source: StreamSource,
        *,
        projects: Optional[ProjectRepository] = None,
        preview: Optional[PreviewPublisher] = None,
        executor: Optional[Executor] = None,
        runs: Optional[RunRegistry] = None,
        model: Optional[str] = None,
    ) -> None:
        self._session = session
        self._source = source
        self._projects = projects
        self._preview = preview
        self._executor = executor
        self._runs = runs
        self.model = model or session.model or DEFAULT_FREE_MODEL
        self._cancel = threading.Event()
        self._handle: Optional[StreamHandle] = None
        self._handle_lock = threading.Lock()

    @property
    def session(self) -> GenerationSession:
        return self._session

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def generate(self, prompt: str, use_reasoning: bool = True) -> GenerationResult:
        """Run one generation to completion.

        A :meth:`stop` that arrives before the stream is opened cancels the run
        without contacting the backend. The run is registered with ``runs`` only
        once the session has accepted it.
        """
        session = self._session
        try:
            history = session.begin_generation(prompt)
        except GenerationInProgressError:
            LOG.info("generation_rejected_in_progress", extra={"session_id": session.session_id})
            return GenerationResult(status="rejected", error="Generation already in progress")

        if self._runs is not None:
            self._runs.attach_run(session.session_id, self)
        try:
            return self._run(session, prompt, history, use_reasoning)
        finally:
            if self._runs is not None:
                self._runs.detach_run(session.session_id, self)
            self._cancel.clear()

    def _run(
        self,
        session: GenerationSession,
        prompt: str,
        history: Tuple[ChatMessage, ...],
        use_reasoning: bool,
    ) -> GenerationResult:
        base = session.base_component
        request = GenerateRequest(
            prompt=prompt,
            model=self.model,
            base_code=base.code if base else None,
            history=[HistoryMessage(role=m.role, content=m.content) for m in history],
            use_reasoning=use_reasoning,
        )
        run = _Run(prompt=prompt, use_reasoning=use_reasoning)

        try:
            self._pump(request, run)
        except GenerationCancelled:
            session.fail()
            self._finish(run, "cancelled")
            return GenerationResult(status="cancelled", generated_code=session.generated_code)
        except (TransportError, requests.exceptions.RequestException, OSError) as exc:
            LOG.warning(
                "generation_stream_failed",
                extra={"session_id": session.session_id, "model": self.model, "err": str(exc)},
            )
            session.fail(GENERATION_ERROR_MESSAGE)
            self._finish(run, FAILED, error=str(exc))
            return GenerationResult(
                status=FAILED,
                generated_code=session.generated_code,
                usage=session.current_context_usage,
                message=session.messages[-1],
                error=str(exc),
            )
        except Exception:
            logger.exception("generation_crashed", extra={"session_id": session.session_id})
            session.fail(GENERATION_ERROR_MESSAGE)
            self._finish(run, FAILED, error="internal error")
            raise

        return self._settle(run)

    def stop(self) -> None:
        """Cancel the in-flight generation and release its connection."""

        self._cancel.set()
        with self._handle_lock:
            handle = self._handle
        if handle is not None:
            LOG.info("generation_stop_requested", extra={"session_id": self._session.session_id})
            handle.close()

    # ------------------------------------------------------------------
    # Stream pump
    # ------------------------------------------------------------------
    def _pump(self, request: GenerateRequest, run: _Run) -> None:
        self._check_cancelled()
        decoder = NdjsonDecoder()
        handle = self._source.open(request)
        with self._handle_lock:
            self._handle = handle
        try:
            self._check_cancelled()
            for chunk in handle:
                self._check_cancelled()
                # One buffer is decoded and fully routed before the next read.
                with self._session.lock:
                    if run.use_reasoning:
                        for payload in decoder.feed(chunk):
                            self._check_cancelled()
                            self._route(payload, run)
                    else:
                        self._apply_content(run, run.text_decoder.decode(chunk))
            self._check_cancelled()
            decoder.close()
            if decoder.skipped:
                DROPPED_RECORDS.labels(reason="invalid_json").inc(decoder.skipped)
        except GenerationCancelled:
            raise
        except Exception as exc:
            if self._cancel.is_set():
                raise GenerationCancelled() from exc
            raise
        finally:
            with self._handle_lock:
                self._handle = None
            handle.close()

    def _check_cancelled(self) -> None:
        if self._cancel.is_set():
            raise GenerationCancelled()

    def _route(self, payload: dict, run: _Run) -> None:
        try:
            record = parse_stream_record(payload)
        except ValidationError:
            reason = "malformed" if payload.get("type") in KNOWN_RECORD_TYPES else "unknown_type"
            DROPPED_RECORDS.labels(reason=reason).inc()
            LOG.debug("stream_record_dropped", extra={"reason": reason, "record_type": payload.get("type")})
            return

        if isinstance(record, ContentRecord):
            self._apply_content(run, record.content)
        elif isinstance(record, ReasoningRecord):
            self._session.merge_reasoning_step(record.reasoning)
        elif isinstance(record, UsageRecord):
            self._apply_usage(record.usage)
        elif isinstance(record, ErrorRecord):
            raise TransportError(f"Generation backend failed mid-stream: {record.error.message or record.error.code}")

    def _apply_content(self, run: _Run, delta: str) -> None:
        if not delta:
            return
        run.full_text += delta
        split = run.splitter.feed(delta)
        if split.thinking:
            for step in run.extractor.append(split.thinking):
                self._session.merge_reasoning_step(step)
        code = extract_code(remove_thinking(run.full_text))
        if code and code != run.last_code:
            run.last_code = code
            self._session.set_generated_code(code)
            self._publish(code)

    def _apply_usage(self, usage: UsageData) -> None:
        try:
            context_usage = build_context_usage(usage, self.model)
        except (ValueError, ZeroDivisionError) as exc:
            DROPPED_RECORDS.labels(reason="usage").inc()
            LOG.debug("usage_record_dropped", extra={"err": str(exc)})
            return
        self._session.set_context_usage(context_usage)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------
    def _settle(self, run: _Run) -> GenerationResult:
        session = self._session
        with session.lock:
            if not run.use_reasoning:
                self._apply_content(run, run.text_decoder.decode(b"", final=True))
            tail = run.splitter.finish()
            if tail.thinking:
                for step in run.extractor.append(tail.thinking):
                    session.merge_reasoning_step(step)
            answer = strip_thinking(run.full_text)
            final_code = extract_code(remove_thinking(run.full_text))
            message = session.settle(answer, final_code)
        if final_code:
            self._publish(final_code)

        duration_ms = int((time.monotonic() - run.started) * 1000)
        persistence = self._persist(run.prompt, final_code, duration_ms)
        self._finish(run, SETTLED)
        return GenerationResult(
            status=SETTLED,
            generated_code=session.generated_code,
            usage=session.current_context_usage,
            message=message,
            persistence=persistence,
        )

    def _publish(self, code: str) -> None:
        if self._preview is None:
            return
        try:
            self._preview.publish(code)
        except Exception:
            logger.warning("preview_publish_failed", exc_info=True)

    def _persist(self, prompt: str, code: Optional[str], duration_ms: int) -> Optional["Future[Optional[SavedProject]]"]:
        session = self._session
        if self._projects is None or not code or session.current_project_id:
            return None
        payload = SaveGenerationRequest(
            name=prompt[:PROJECT_NAME_LIMIT].strip() or session.project_name,
            code=code,
            prompt=prompt,
            model=self.model,
            duration_ms=duration_ms,
        )
        if self._executor is not None:
            return self._executor.submit(self._save, payload)
        self._save(payload)
        return None

    def _save(self, payload: SaveGenerationRequest) -> Optional[SavedProject]:
        session = self._session
        try:
            project = self._projects.save_generation(payload)  # type: ignore[union-attr]
        except Exception as exc:
            logger.warning("project_save_failed session_id=%s err=%s", session.session_id, exc)
            record_event(TelemetryEvent(name="project_save_failed", properties={"err": str(exc)}, session_id=session.session_id))
            return None
        session.set_project(project.id, project.name)
        record_event(TelemetryEvent(name="project_saved", properties={"project_id": project.id}, session_id=session.session_id))
        return project

    def _finish(self, run: _Run, outcome: str, error: Optional[str] = None) -> None:
        elapsed = time.monotonic() - run.started
        GENERATION_OUTCOMES.labels(outcome=outcome).inc()
        GENERATION_DURATION.observe(elapsed)
        properties = {
            "model": self.model,
            "duration_ms": int(elapsed * 1000),
            "reasoning_steps": len(self._session.current_reasoning),
        }
        if error:
            properties["error"] = error
        record_event(TelemetryEvent(name=f"generation_{outcome}", properties=properties, session_id=self._session.session_id))
