"""Unit tests for refetch.engine.machine — the four-state query machine."""

from __future__ import annotations

import pytest

from refetch.engine.machine import MachineEvent, QueryStateMachine, transition
from refetch.models.query import QueryStatus


class TestTransition:
    """The pure transition table."""

    def test_happy_path(self):
        state = transition(QueryStatus.IDLE, "request")
        assert state is QueryStatus.FETCHING
        state = transition(state, "fetchSuccessful")
        assert state is QueryStatus.SUCCESS
        assert transition(state, "invalidate") is QueryStatus.IDLE

    def test_error_then_retry(self):
        state = transition(QueryStatus.FETCHING, MachineEvent.FETCH_FAILED)
        assert state is QueryStatus.ERROR
        assert transition(state, MachineEvent.RETRY) is QueryStatus.FETCHING

    @pytest.mark.parametrize("event", ["fetchSuccessful", "fetchFailed", "invalidate", "retry"])
    def test_idle_only_accepts_request(self, event):
        assert transition(QueryStatus.IDLE, event) is QueryStatus.IDLE

    @pytest.mark.parametrize("state", [QueryStatus.IDLE, QueryStatus.FETCHING, QueryStatus.SUCCESS])
    def test_retry_outside_error_is_noop(self, state):
        assert transition(state, "retry") is state

    def test_unknown_event_name_raises(self):
        with pytest.raises(ValueError):
            transition(QueryStatus.IDLE, "explode")


class TestQueryStateMachine:
    """The stateful wrapper used by each query instance."""

    def test_starts_idle(self):
        assert QueryStateMachine().state is QueryStatus.IDLE

    def test_send_reports_change(self):
        machine = QueryStateMachine()
        assert machine.send("request") is True
        assert machine.state is QueryStatus.FETCHING
        assert machine.send("request") is False
        assert machine.state is QueryStatus.FETCHING

    def test_can(self):
        machine = QueryStateMachine(QueryStatus.ERROR)
        assert machine.can("retry")
        assert machine.can("invalidate")
        assert not machine.can("fetchSuccessful")

    def test_repr_shows_state(self):
        assert "success" in repr(QueryStateMachine(QueryStatus.SUCCESS))
