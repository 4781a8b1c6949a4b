import sys
from pathlib import Path
from typing import Iterable, Iterator, List

import pytest

ROOT = Path(__file__).resolve().parents[1]
root_str = str(ROOT)
if root_str not in sys.path:
    sys.path.insert(0, root_str)


@pytest.fixture(autouse=True)
def _reset_module_state():
    """Rate-limit counters and the telemetry ring are process-wide."""
    from src.athrean.security.rate_limit import reset_rate_limits
    from src.athrean.services.telemetry_sink import clear_recent_events

    reset_rate_limits()
    clear_recent_events()
    yield
    reset_rate_limits()
    clear_recent_events()


class FakeHandle:
    def __init__(self, chunks: Iterable[bytes]) -> None:
        self._chunks = list(chunks)
        self.closed = False

    def __iter__(self) -> Iterator[bytes]:
        for chunk in self._chunks:
            if self.closed:
                return
            yield chunk

    def close(self) -> None:
        self.closed = True


class FakeSource:
    """Hands out queued byte chunks and remembers every request it was opened with."""

    def __init__(self, chunks: Iterable[bytes] = (), error: Exception | None = None) -> None:
        self.chunks: List[bytes] = list(chunks)
        self.error = error
        self.requests = []
        self.handles: List[FakeHandle] = []

    def open(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        handle = FakeHandle(self.chunks)
        self.handles.append(handle)
        return handle


@pytest.fixture
def fake_source_cls():
    return FakeSource
