from __future__ import annotations

import logging
import time
from collections import deque
from dataclasses import dataclass, field
from threading import Lock
from typing import Any, Deque, Dict, List, Optional

logger = logging.getLogger("athrean.telemetry")

RING_SIZE = 200


@dataclass
class TelemetryEvent:
    """A named generation/persistence event, optionally tied to a session."""

    name: str
    properties: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    at: float = field(default_factory=time.time)


_ring: Deque[TelemetryEvent] = deque(maxlen=RING_SIZE)
_ring_lock = Lock()


def record_event(event: TelemetryEvent) -> None:
    with _ring_lock:
        _ring.append(event)
    logger.info(event.name, extra={"session_id": event.session_id, "props": event.properties})


def list_recent_events(limit: int = 50, name: Optional[str] = None) -> List[TelemetryEvent]:
    """Newest-last slice of the ring, optionally only events called ``name``."""
    if limit <= 0:
        return []
    with _ring_lock:
        events = [e for e in _ring if name is None or e.name == name]
    return events[-limit:]


def clear_recent_events() -> None:
    with _ring_lock:
        _ring.clear()
