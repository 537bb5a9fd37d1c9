"""Unit tests for the run state machine.

These tests assert that illegal transitions fail loudly and that the
waiting-node invariant is enforced on every state.
"""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from dag_engine.engine.context import StepRecord
from dag_engine.engine.workflow.state_machine import (
    IllegalTransitionError,
    RunState,
    RunStatus,
    transition,
)


def test_waiting_status_requires_waiting_node() -> None:
    with pytest.raises(ValidationError):
        RunState(run_id="r", status=RunStatus.WAITING_FOR_USER)
    with pytest.raises(ValidationError):
        RunState(run_id="r", status=RunStatus.RUNNING, waiting_at_node_id="a")

    state = RunState(run_id="r", status=RunStatus.WAITING_FOR_USER, waiting_at_node_id="a")
    assert state.waiting_at_node_id == "a"


def test_transition_rejects_leaving_terminal_status() -> None:
    done = RunState(run_id="r", status=RunStatus.COMPLETED)
    with pytest.raises(IllegalTransitionError):
        transition(current=done, status=RunStatus.RUNNING)
    assert done.is_terminal


def test_transition_rejects_decreasing_round() -> None:
    state = RunState(run_id="r", round=2)
    with pytest.raises(IllegalTransitionError):
        transition(current=state, round=1)


def test_transition_rejects_unknown_fields() -> None:
    with pytest.raises(TypeError):
        transition(current=RunState(run_id="r"), colour="blue")


def test_pause_and_resume() -> None:
    state = RunState(run_id="r", current_node_id="a")

    paused = transition(current=state, status=RunStatus.WAITING_FOR_USER, waiting_at_node_id="a")
    assert paused.status is RunStatus.WAITING_FOR_USER

    resumed = transition(current=paused, status=RunStatus.RUNNING, waiting_at_node_id=None)
    assert resumed.status is RunStatus.RUNNING
    assert resumed.waiting_at_node_id is None
    assert resumed.run_id == "r"


def test_transition_accepts_trail_records() -> None:
    state = RunState(run_id="r")
    updated = transition(current=state, trail=[StepRecord(step_id="a", outcome=1)])
    assert updated.trail[0].step_id == "a"
    assert updated.trail[0].outcome == 1


def test_transition_keeps_run_id() -> None:
    updated = transition(current=RunState(run_id="r"), run_id="other")
    assert updated.run_id == "r"
