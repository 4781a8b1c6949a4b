from __future__ import annotations

from typing import Dict, List

IDLE = "idle"
STREAMING = "streaming"
SETTLED = "settled"
FAILED = "failed"

# A session may start a new generation from any resting state.
GENERATION_TRANSITIONS: Dict[str, List[str]] = {
    IDLE: [STREAMING],
    STREAMING: [SETTLED, FAILED],
    SETTLED: [STREAMING],
    FAILED: [STREAMING],
}


class InvalidTransition(Exception):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot move generation from {current!r} to {target!r}")
        self.current = current
        self.target = target


def is_valid_transition(current: str, target: str) -> bool:
    return target in GENERATION_TRANSITIONS.get(current, [])


def require_transition(current: str, target: str) -> str:
    if not is_valid_transition(current, target):
        raise InvalidTransition(current, target)
    return target


def is_resting(state: str) -> bool:
    return state != STREAMING
