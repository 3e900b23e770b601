import pytest

from src.assistant_sync.core.state_machine import (
    DispatchPhase,
    InvalidTransition,
    RevealState,
    advance_dispatch,
    is_valid_dispatch_transition,
    is_valid_reveal_transition,
)


@pytest.mark.parametrize(
    "current, target, expected",
    [
        (RevealState.IDLE, RevealState.REVEALING, True),
        (RevealState.IDLE, RevealState.COMPLETE, True),
        (RevealState.REVEALING, RevealState.REVEALING, True),
        (RevealState.REVEALING, RevealState.COMPLETE, True),
        (RevealState.COMPLETE, RevealState.REVEALING, False),
        (RevealState.REVEALING, RevealState.IDLE, False),
    ],
)
def test_reveal_transitions(current, target, expected):
    assert is_valid_reveal_transition(current, target) is expected


def test_dispatch_paths_all_settle():
    paths = [
        [DispatchPhase.SKIPPED],
        [DispatchPhase.LEDGER_CHECK, DispatchPhase.STAMPED],
        [DispatchPhase.LEDGER_CHECK, DispatchPhase.SKIPPED],
        [DispatchPhase.LEDGER_CHECK, DispatchPhase.EXISTENCE_CHECK, DispatchPhase.STAMPED],
        [DispatchPhase.LEDGER_CHECK, DispatchPhase.EXISTENCE_CHECK, DispatchPhase.CREATING, DispatchPhase.STAMPED],
        [DispatchPhase.LEDGER_CHECK, DispatchPhase.EXISTENCE_CHECK, DispatchPhase.CREATING],
    ]
    for path in paths:
        phase = DispatchPhase.OBSERVED
        for target in path + [DispatchPhase.SETTLED]:
            phase = advance_dispatch(phase, target)
        assert phase == DispatchPhase.SETTLED


def test_creation_cannot_be_reached_without_checks():
    assert not is_valid_dispatch_transition(DispatchPhase.OBSERVED, DispatchPhase.CREATING)
    assert not is_valid_dispatch_transition(DispatchPhase.LEDGER_CHECK, DispatchPhase.CREATING)
    with pytest.raises(InvalidTransition):
        advance_dispatch(DispatchPhase.SETTLED, DispatchPhase.OBSERVED)
