import pytest

from src.athrean.core.state_machine import (
    FAILED,
    IDLE,
    SETTLED,
    STREAMING,
    InvalidTransition,
    is_resting,
    is_valid_transition,
    require_transition,
)


@pytest.mark.parametrize(
    "current,target",
    [(IDLE, STREAMING), (STREAMING, SETTLED), (STREAMING, FAILED), (SETTLED, STREAMING), (FAILED, STREAMING)],
)
def test_allowed_transitions(current, target):
    assert is_valid_transition(current, target)
    assert require_transition(current, target) == target


@pytest.mark.parametrize("current,target", [(IDLE, SETTLED), (STREAMING, STREAMING), (SETTLED, FAILED), ("bogus", IDLE)])
def test_rejected_transitions(current, target):
    assert not is_valid_transition(current, target)
    with pytest.raises(InvalidTransition) as info:
        require_transition(current, target)
    assert info.value.current == current
    assert info.value.target == target


def test_only_streaming_is_busy():
    assert is_resting(IDLE)
    assert is_resting(SETTLED)
    assert is_resting(FAILED)
    assert not is_resting(STREAMING)
