"""Query state machine — idle / fetching / success / error.

Pure transition logic. The machine knows nothing about caches, promises or
signals: the orchestrator publishes ``machine.state`` into a status signal and
everything else reacts to that signal.

    idle     --request-->          fetching
    fetching --fetchSuccessful-->  success
    fetching --fetchFailed-->      error
    success  --invalidate-->       idle
    error    --retry-->            fetching
    error    --invalidate-->       idle

Any other (state, event) pair is a no-op.
"""

from __future__ import annotations

import enum

from refetch.models.query import QueryStatus


class MachineEvent(str, enum.Enum):
    REQUEST = "request"
    FETCH_SUCCESSFUL = "fetchSuccessful"
    FETCH_FAILED = "fetchFailed"
    INVALIDATE = "invalidate"
    RETRY = "retry"


TRANSITIONS: dict[QueryStatus, dict[MachineEvent, QueryStatus]] = {
    QueryStatus.IDLE: {
        MachineEvent.REQUEST: QueryStatus.FETCHING,
    },
    QueryStatus.FETCHING: {
        MachineEvent.FETCH_SUCCESSFUL: QueryStatus.SUCCESS,
        MachineEvent.FETCH_FAILED: QueryStatus.ERROR,
    },
    QueryStatus.SUCCESS: {
        MachineEvent.INVALIDATE: QueryStatus.IDLE,
    },
    QueryStatus.ERROR: {
        MachineEvent.RETRY: QueryStatus.FETCHING,
        MachineEvent.INVALIDATE: QueryStatus.IDLE,
    },
}


def transition(state: QueryStatus, event: MachineEvent | str) -> QueryStatus:
    """Next state for *event* in *state*; unchanged when no transition is defined."""
    return TRANSITIONS[state].get(MachineEvent(event), state)


class QueryStateMachine:
    """Holds the current state of one query instance."""

    def __init__(self, initial: QueryStatus = QueryStatus.IDLE) -> None:
        self._state = initial

    @property
    def state(self) -> QueryStatus:
        return self._state

    def can(self, event: MachineEvent | str) -> bool:
        return MachineEvent(event) in TRANSITIONS[self._state]

    def send(self, event: MachineEvent | str) -> bool:
        """Apply *event*. Returns True if the state changed."""
        nxt = transition(self._state, event)
        if nxt is self._state:
            return False
        self._state = nxt
        return True

    def __repr__(self) -> str:
        return f"QueryStateMachine(state={self._state.value!r})"
