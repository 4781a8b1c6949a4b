from __future__ import annotations

from threading import RLock
from typing import Dict, Protocol

from ..domain.generation_models import PreviewState

ENTRY_FILE = "/App.tsx"


def build_preview_files(code: str) -> Dict[str, str]:
    return {ENTRY_FILE: code}


class PreviewPublisher(Protocol):
    def publish(self, code: str) -> None: ...


class InMemoryPreview:
    """Latest artifact handed to the sandboxed renderer, with a change counter."""

    def __init__(self) -> None:
        self._files: Dict[str, str] = {}
        self._version = 0
        self._lock = RLock()

    def publish(self, code: str) -> None:
        with self._lock:
            self._files = build_preview_files(code)
            self._version += 1

    def state(self) -> PreviewState:
        with self._lock:
            return PreviewState(version=self._version, files=dict(self._files))
