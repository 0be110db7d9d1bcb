from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class StepState(str, Enum):
    PENDING = "pending"
    READY = "ready"
    RUNNING = "running"
    SUCCESS = "success"
    SOFT_FAILURE = "soft_failure"
    HARD_FAILURE = "hard_failure"
    SKIPPED = "skipped"
    DISCARDED = "discarded"


TERMINAL_STATES: frozenset[StepState] = frozenset(
    {
        StepState.SUCCESS,
        StepState.SOFT_FAILURE,
        StepState.HARD_FAILURE,
        StepState.SKIPPED,
        StepState.DISCARDED,
    }
)

ALLOWED_TRANSITIONS: dict[StepState, set[StepState]] = {
    StepState.PENDING: {StepState.READY},
    # Gating failures (quorum, unavailable backend) and false `when` guards never run.
    StepState.READY: {
        StepState.RUNNING,
        StepState.SKIPPED,
        StepState.SOFT_FAILURE,
        StepState.HARD_FAILURE,
    },
    StepState.RUNNING: {StepState.SUCCESS, StepState.SOFT_FAILURE, StepState.HARD_FAILURE},
    # A step that finishes after the run halted has its outcome thrown away.
    StepState.SUCCESS: {StepState.DISCARDED},
    StepState.SOFT_FAILURE: {StepState.DISCARDED},
    StepState.HARD_FAILURE: {StepState.DISCARDED},
    StepState.SKIPPED: {StepState.DISCARDED},
    StepState.DISCARDED: set(),
}


class IllegalTransitionError(ValueError):
    pass


@dataclass(frozen=True, slots=True)
class StepSnapshot:
    name: str
    state: StepState

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES


def transition(*, current: StepSnapshot, to: StepState) -> StepSnapshot:
    allowed = ALLOWED_TRANSITIONS.get(current.state, set())
    if to not in allowed:
        raise IllegalTransitionError(
            f"Illegal transition for step '{current.name}': {current.state.value} -> {to.value}"
        )
    return StepSnapshot(name=current.name, state=to)


class StepTracker:
    """Track every step of one run through the lifecycle above.

    Steps that never leave PENDING/READY are the ones reported as not run.
    """

    def __init__(self, names: list[str]) -> None:
        self._snapshots: dict[str, StepSnapshot] = {
            name: StepSnapshot(name=name, state=StepState.PENDING) for name in names
        }

    def state(self, name: str) -> StepState:
        return self._snapshots[name].state

    def advance(self, name: str, to: StepState) -> StepSnapshot:
        next_snapshot = transition(current=self._snapshots[name], to=to)
        self._snapshots[name] = next_snapshot
        return next_snapshot

    def in_state(self, *states: StepState) -> list[str]:
        wanted = set(states)
        return [name for name, snap in self._snapshots.items() if snap.state in wanted]

    def to_json(self) -> dict[str, str]:
        return {name: snap.state.value for name, snap in self._snapshots.items()}
