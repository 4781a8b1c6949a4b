"""Incremental parsing of ``<thinking>`` / ``<step>`` reasoning markup.

Models are prompted to reason inside a thinking block before answering::

    <thinking>
    <step title="Understanding Requirements">...</step>
    <step title="Component Architecture">...</step>
    </thinking>

:class:`ThinkingSplitter` separates that block from visible text while deltas are
still arriving, and :class:`ReasoningTagExtractor` turns the growing thinking text
into :class:`ReasoningStep` updates.
"""

from __future__ import annotations

import re
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Dict, List

from ..domain.generation_models import ReasoningStep

THINKING_OPEN = "<thinking>"
THINKING_CLOSE = "</thinking>"
IN_PROGRESS_CONTENT = "Processing..."

STEP_PATTERN = re.compile(r'<step\s+title="([^"]+)"\s*>(.*?)</step>', re.DOTALL)
OPEN_STEP_PATTERN = re.compile(r'<step\s+title="([^"]+)"\s*>')
_THINKING_BLOCK = re.compile(r"<thinking>.*?</thinking>", re.DOTALL)


def generate_reasoning_id() -> str:
    return f"r_{int(time.time() * 1000)}_{uuid.uuid4().hex[:7]}"


def remove_thinking(text: str) -> str:
    """Remove thinking blocks, including one left open at the end of the text.

    Surrounding whitespace is kept so code bodies stay byte-exact.
    """

    cleaned = _THINKING_BLOCK.sub("", text or "")
    cleaned = cleaned.split(THINKING_OPEN, 1)[0]
    return cleaned.replace(THINKING_CLOSE, "")


def strip_thinking(text: str) -> str:
    return remove_thinking(text).strip()


def _partial_suffix(text: str, start: int, tag: str) -> int:
    """Length of the longest tail of ``text[start:]`` that is a proper prefix of ``tag``."""

    longest = min(len(tag) - 1, len(text) - start)
    for size in range(longest, 0, -1):
        if text.endswith(tag[:size]):
            return size
    return 0


@dataclass
class SplitChunk:
    visible: str = ""
    thinking: str = ""


class ThinkingSplitter:
    """Route streamed text to either the visible answer or the thinking block.

    A marker split across two deltas (``"<think"`` + ``"ing>"``) is held back until
    it can be classified, so neither side ever sees a fragment of it.
    """

    def __init__(self, open_tag: str = THINKING_OPEN, close_tag: str = THINKING_CLOSE) -> None:
        self.open_tag = open_tag
        self.close_tag = close_tag
        self._held = ""
        self._inside = False
        self.saw_thinking = False

    @property
    def inside(self) -> bool:
        return self._inside

    def feed(self, chunk: str) -> SplitChunk:
        visible: List[str] = []
        thinking: List[str] = []
        text = self._held + (chunk or "")
        self._held = ""
        pos = 0
        while pos < len(text):
            tag = self.close_tag if self._inside else self.open_tag
            target = thinking if self._inside else visible
            found = text.find(tag, pos)
            if found == -1:
                keep = _partial_suffix(text, pos, tag)
                target.append(text[pos : len(text) - keep])
                self._held = text[len(text) - keep :]
                break
            target.append(text[pos:found])
            pos = found + len(tag)
            self._inside = not self._inside
            self.saw_thinking = True
        return SplitChunk(visible="".join(visible), thinking="".join(thinking))

    def finish(self) -> SplitChunk:
        held, self._held = self._held, ""
        if self._inside:
            return SplitChunk(thinking=held)
        return SplitChunk(visible=held)


class ReasoningTagExtractor:
    """Emit reasoning steps from an append-only thinking buffer.

    Every call to :meth:`append` returns only what is new since the previous call:
    each complete ``<step>`` once as ``completed`` and, at most once per opening
    tag, an in-progress ``thinking`` placeholder. Scanning resumes after the last
    complete step, so steps come out in source order however the text was chunked.
    """

    def __init__(
        self,
        id_factory: Callable[[], str] = generate_reasoning_id,
        clock: Callable[[], float] = time.monotonic,
        id_prefix: str = "",
    ) -> None:
        self._id_factory = id_factory
        self._clock = clock
        self._id_prefix = id_prefix
        self._text = ""
        self._offset = 0
        self._opened_at: Dict[int, float] = {}
        self._pending_count = 0
        self.completed_count = 0

    @property
    def text(self) -> str:
        return self._text

    def append(self, text: str) -> List[ReasoningStep]:
        if text:
            self._text += text
        return self._scan()

    def reset(self) -> None:
        self._text = ""
        self._offset = 0
        self._opened_at.clear()
        self._pending_count = 0
        self.completed_count = 0

    def _scan(self) -> List[ReasoningStep]:
        emitted: List[ReasoningStep] = []
        while True:
            match = STEP_PATTERN.search(self._text, self._offset)
            if match is None:
                break
            emitted.append(self._completed(match))
            self._offset = match.end()

        partial = OPEN_STEP_PATTERN.search(self._text, self._offset)
        if partial is not None and partial.start() not in self._opened_at:
            self._opened_at[partial.start()] = self._clock()
            emitted.append(
                ReasoningStep(
                    id=f"{self._id_prefix}pending_{self._pending_count}",
                    title=partial.group(1),
                    content=IN_PROGRESS_CONTENT,
                    status="thinking",
                )
            )
            self._pending_count += 1
        return emitted

    def _completed(self, match: "re.Match[str]") -> ReasoningStep:
        started = self._opened_at.get(match.start())
        duration = None
        if started is not None:
            duration = max(0, int((self._clock() - started) * 1000))
        self.completed_count += 1
        return ReasoningStep(
            id=self._id_factory(),
            title=match.group(1) or "Step",
            content=match.group(2).strip(),
            status="completed",
            duration_ms=duration,
        )
