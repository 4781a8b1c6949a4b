from __future__ import annotations

import logging
import time
import uuid
from threading import RLock
from typing import Callable, Dict, List, Optional, Protocol, Tuple

from ..core.state_machine import FAILED, IDLE, SETTLED, STREAMING, require_transition
from ..domain.generation_models import (
    BaseComponent,
    ChatMessage,
    Checkpoint,
    ContextUsage,
    ReasoningStep,
    SessionSnapshot,
)
from .ttl_cache import TTLCache

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_NAME = "New Project"


class SessionStateError(Exception):
    """A session operation is not valid for the session's current contents."""


class CheckpointError(SessionStateError):
    pass


class GenerationInProgressError(SessionStateError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id} is already generating")
        self.session_id = session_id


def _now_ms() -> int:
    return int(time.time() * 1000)


def _checkpoint_id() -> str:
    return f"cp_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"


class GenerationSession:
    """Mutable state of one generate workspace.

    Every mutation takes the session lock and swaps whole tuples, so readers see
    either the old or the new sequence and never a half-applied change. The lock
    also serialises record routing from the stream pump against API calls.
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        project_name: str = DEFAULT_PROJECT_NAME,
        model: Optional[str] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        self.model = model
        self._clock = clock
        self._lock = RLock()
        self._status = IDLE
        self._messages: Tuple[ChatMessage, ...] = ()
        self._generated_code: Optional[str] = None
        self._reasoning: Tuple[ReasoningStep, ...] = ()
        self._usage: Optional[ContextUsage] = None
        self._checkpoints: Tuple[Checkpoint, ...] = ()
        self._current_project_id: Optional[str] = None
        self._project_name = project_name or DEFAULT_PROJECT_NAME
        self._base_component: Optional[BaseComponent] = None
        self._pending_prompt: Optional[str] = None

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------
    @property
    def lock(self) -> RLock:
        return self._lock

    @property
    def status(self) -> str:
        return self._status

    @property
    def is_generating(self) -> bool:
        return self._status == STREAMING

    @property
    def messages(self) -> List[ChatMessage]:
        return list(self._messages)

    @property
    def generated_code(self) -> Optional[str]:
        return self._generated_code

    @property
    def current_reasoning(self) -> List[ReasoningStep]:
        return list(self._reasoning)

    @property
    def current_context_usage(self) -> Optional[ContextUsage]:
        return self._usage

    @property
    def checkpoints(self) -> List[Checkpoint]:
        return list(self._checkpoints)

    @property
    def current_project_id(self) -> Optional[str]:
        return self._current_project_id

    @property
    def project_name(self) -> str:
        return self._project_name

    @property
    def base_component(self) -> Optional[BaseComponent]:
        return self._base_component

    @property
    def pending_prompt(self) -> Optional[str]:
        return self._pending_prompt

    def snapshot(self) -> SessionSnapshot:
        with self._lock:
            return SessionSnapshot(
                session_id=self.session_id,
                status=self._status,
                messages=list(self._messages),
                generated_code=self._generated_code,
                current_reasoning=list(self._reasoning),
                current_context_usage=self._usage,
                checkpoints=list(self._checkpoints),
                current_project_id=self._current_project_id,
                project_name=self._project_name,
                base_component=self._base_component,
                pending_prompt=self._pending_prompt,
            )

    # ------------------------------------------------------------------
    # Messages and artifact
    # ------------------------------------------------------------------
    def add_message(self, role: str, content: str, timestamp: Optional[int] = None) -> ChatMessage:
        message = ChatMessage(role=role, content=content, timestamp=timestamp if timestamp is not None else self._clock())
        with self._lock:
            self._messages = self._messages + (message,)
        return message

    def set_generated_code(self, code: Optional[str]) -> None:
        with self._lock:
            self._generated_code = code

    # ------------------------------------------------------------------
    # Reasoning and usage
    # ------------------------------------------------------------------
    def add_reasoning_step(self, step: ReasoningStep) -> None:
        with self._lock:
            self._reasoning = self._reasoning + (step,)

    def update_reasoning_step(self, step_id: str, **updates: object) -> Optional[ReasoningStep]:
        with self._lock:
            for index, step in enumerate(self._reasoning):
                if step.id != step_id:
                    continue
                updated = step.model_copy(update=updates)
                self._reasoning = self._reasoning[:index] + (updated,) + self._reasoning[index + 1 :]
                return updated
        return None

    def merge_reasoning_step(self, step: ReasoningStep) -> Optional[ReasoningStep]:
        """Apply one reasoning update without duplicating a logical step.

        An entry that is still ``thinking`` and shares the update's title or id is
        that entry: a ``completed`` update promotes it in place, anything else is
        ignored. Otherwise an update whose id is already stored is dropped and
        unrelated steps are appended. Returns the stored step, or ``None`` when the
        update changed nothing.
        """

        with self._lock:
            for existing in self._reasoning:
                if existing.status != "thinking" or (existing.title != step.title and existing.id != step.id):
                    continue
                if step.status != "completed":
                    return None
                duration = step.duration_ms if step.duration_ms is not None else existing.duration_ms
                return self.update_reasoning_step(
                    existing.id,
                    title=step.title,
                    status="completed",
                    content=step.content,
                    duration_ms=duration,
                )
            if any(existing.id == step.id for existing in self._reasoning):
                return None
            self._reasoning = self._reasoning + (step,)
            return step

    def clear_reasoning(self) -> None:
        with self._lock:
            self._reasoning = ()

    def set_context_usage(self, usage: Optional[ContextUsage]) -> None:
        with self._lock:
            self._usage = usage

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------
    def add_checkpoint(self, label: str) -> Checkpoint:
        with self._lock:
            if not self._messages:
                raise SessionStateError("Cannot checkpoint a session without messages")
            checkpoint = Checkpoint(
                id=_checkpoint_id(),
                message_index=len(self._messages) - 1,
                label=label,
                timestamp=self._clock(),
                generated_code=self._generated_code,
            )
            self._checkpoints = self._checkpoints + (checkpoint,)
            return checkpoint

    def find_checkpoint(self, checkpoint_id: str) -> Optional[Checkpoint]:
        with self._lock:
            for checkpoint in self._checkpoints:
                if checkpoint.id == checkpoint_id:
                    return checkpoint
        return None

    def restore_checkpoint(self, checkpoint: Checkpoint | str) -> Checkpoint:
        """Roll messages and artifact back to ``checkpoint``.

        Reasoning and usage are cleared. Checkpoints that point past the truncated
        message list are dropped.
        """

        checkpoint_id = checkpoint if isinstance(checkpoint, str) else checkpoint.id
        with self._lock:
            if self._status == STREAMING:
                raise GenerationInProgressError(self.session_id)
            target = self.find_checkpoint(checkpoint_id)
            if target is None:
                raise CheckpointError(f"Unknown checkpoint {checkpoint_id}")
            if not 0 <= target.message_index < len(self._messages):
                raise CheckpointError(f"Checkpoint {checkpoint_id} no longer matches the conversation")
            self._messages = self._messages[: target.message_index + 1]
            self._generated_code = target.generated_code
            self._reasoning = ()
            self._usage = None
            self._checkpoints = tuple(cp for cp in self._checkpoints if cp.message_index <= target.message_index)
            return target

    def clear_checkpoints(self) -> None:
        with self._lock:
            self._checkpoints = ()

    # ------------------------------------------------------------------
    # Project, base component and prompt hand-off
    # ------------------------------------------------------------------
    def set_project(self, project_id: Optional[str], name: Optional[str] = None) -> None:
        with self._lock:
            self._current_project_id = project_id
            if name:
                self._project_name = name

    def set_project_name(self, name: str) -> None:
        with self._lock:
            self._project_name = name or DEFAULT_PROJECT_NAME

    def set_base_component(self, code: Optional[str], name: Optional[str] = None) -> None:
        with self._lock:
            self._base_component = BaseComponent(name=name, code=code) if code else None

    def set_pending_prompt(self, prompt: Optional[str]) -> None:
        with self._lock:
            self._pending_prompt = prompt

    def consume_pending_prompt(self) -> Optional[str]:
        with self._lock:
            prompt, self._pending_prompt = self._pending_prompt, None
            return prompt

    def reset(self) -> None:
        with self._lock:
            if self._status == STREAMING:
                raise GenerationInProgressError(self.session_id)
            self._status = IDLE
            self._messages = ()
            self._generated_code = None
            self._reasoning = ()
            self._usage = None
            self._checkpoints = ()
            self._current_project_id = None
            self._project_name = DEFAULT_PROJECT_NAME
            self._base_component = None
            self._pending_prompt = None

    # ------------------------------------------------------------------
    # Generation lifecycle
    # ------------------------------------------------------------------
    def begin_generation(self, prompt: str) -> Tuple[ChatMessage, ...]:
        """Enter ``streaming``: record the prompt and clear per-run state.

        Returns the conversation as it was before the prompt, which is the history
        sent to the backend.
        """

        with self._lock:
            if self._status == STREAMING:
                raise GenerationInProgressError(self.session_id)
            self._status = require_transition(self._status, STREAMING)
            history = self._messages
            self.add_message("user", prompt)
            self._reasoning = ()
            self._usage = None
            return history

    def settle(self, content: str, code: Optional[str]) -> ChatMessage:
        with self._lock:
            self._status = require_transition(self._status, SETTLED)
            message = self.add_message("assistant", content)
            if code:
                self._generated_code = code
            return message

    def fail(self, message: Optional[str] = None) -> None:
        with self._lock:
            self._status = require_transition(self._status, FAILED)
            if message:
                self.add_message("assistant", message)


class Stoppable(Protocol):
    def stop(self) -> None: ...


class SessionRegistry:
    """Generate sessions keyed by id, held in an injected :class:`TTLCache`."""

    def __init__(self, cache: TTLCache[GenerationSession]) -> None:
        self._cache = cache
        self._runs: Dict[str, Stoppable] = {}
        self._lock = RLock()

    def create(
        self,
        project_name: Optional[str] = None,
        base_code: Optional[str] = None,
        model: Optional[str] = None,
    ) -> GenerationSession:
        session = GenerationSession(project_name=project_name or DEFAULT_PROJECT_NAME, model=model)
        if base_code:
            session.set_base_component(base_code)
        self._cache.set(session.session_id, session)
        logger.info("session_created", extra={"session_id": session.session_id})
        return session

    def get(self, session_id: str) -> Optional[GenerationSession]:
        session = self._cache.get(session_id)
        if session is not None:
            self._cache.touch(session_id)
        return session

    def delete(self, session_id: str) -> bool:
        self.stop(session_id)
        return self._cache.delete(session_id)

    def count(self) -> int:
        return len(self._cache)

    def attach_run(self, session_id: str, run: Stoppable) -> None:
        with self._lock:
            self._runs[session_id] = run

    def detach_run(self, session_id: str, run: Stoppable) -> None:
        with self._lock:
            if self._runs.get(session_id) is run:
                del self._runs[session_id]

    def stop(self, session_id: str) -> bool:
        with self._lock:
            run = self._runs.get(session_id)
        if run is None:
            return False
        run.stop()
        return True
