from __future__ import annotations

from enum import Enum
from typing import Dict, Tuple


class RevealState(str, Enum):
    IDLE = "idle"
    REVEALING = "revealing"
    COMPLETE = "complete"


class DispatchPhase(str, Enum):
    OBSERVED = "observed"
    LEDGER_CHECK = "ledger_check"
    EXISTENCE_CHECK = "existence_check"
    CREATING = "creating"
    STAMPED = "stamped"
    SKIPPED = "skipped"
    SETTLED = "settled"


# A revealing message restarts (revealing -> revealing) when its text changes
REVEAL_TRANSITIONS: Dict[RevealState, Tuple[RevealState, ...]] = {
    RevealState.IDLE: (RevealState.REVEALING, RevealState.COMPLETE),
    RevealState.REVEALING: (RevealState.REVEALING, RevealState.COMPLETE),
    RevealState.COMPLETE: (),
}

DISPATCH_TRANSITIONS: Dict[DispatchPhase, Tuple[DispatchPhase, ...]] = {
    DispatchPhase.OBSERVED: (DispatchPhase.LEDGER_CHECK, DispatchPhase.SKIPPED),
    DispatchPhase.LEDGER_CHECK: (DispatchPhase.EXISTENCE_CHECK, DispatchPhase.STAMPED, DispatchPhase.SKIPPED),
    DispatchPhase.EXISTENCE_CHECK: (DispatchPhase.CREATING, DispatchPhase.STAMPED),
    DispatchPhase.CREATING: (DispatchPhase.STAMPED, DispatchPhase.SETTLED),
    DispatchPhase.STAMPED: (DispatchPhase.SETTLED,),
    DispatchPhase.SKIPPED: (DispatchPhase.SETTLED,),
    DispatchPhase.SETTLED: (),
}


class InvalidTransition(RuntimeError):
    def __init__(self, current: Enum, target: Enum) -> None:
        super().__init__(f"Invalid transition {current.value} -> {target.value}")
        self.current = current
        self.target = target


def is_valid_reveal_transition(current: RevealState, target: RevealState) -> bool:
    return target in REVEAL_TRANSITIONS.get(current, ())


def is_valid_dispatch_transition(current: DispatchPhase, target: DispatchPhase) -> bool:
    return target in DISPATCH_TRANSITIONS.get(current, ())


def advance_dispatch(current: DispatchPhase, target: DispatchPhase) -> DispatchPhase:
    if not is_valid_dispatch_transition(current, target):
        raise InvalidTransition(current, target)
    return target
