from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from dag_engine.engine.context import StepRecord


class RunStatus(str, Enum):
    RUNNING = "running"
    WAITING_FOR_USER = "waiting_for_user"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATUSES: frozenset[RunStatus] = frozenset(
    {RunStatus.COMPLETED, RunStatus.CANCELLED, RunStatus.FAILED}
)

# Status only moves forward; the one way back is waiting_for_user -> running,
# driven by a UserResponded event. Staying in place is always allowed.
ALLOWED_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.RUNNING: {
        RunStatus.RUNNING,
        RunStatus.WAITING_FOR_USER,
        RunStatus.COMPLETED,
        RunStatus.CANCELLED,
        RunStatus.FAILED,
    },
    RunStatus.WAITING_FOR_USER: {
        RunStatus.WAITING_FOR_USER,
        RunStatus.RUNNING,
        RunStatus.COMPLETED,
        RunStatus.CANCELLED,
        RunStatus.FAILED,
    },
    RunStatus.COMPLETED: {RunStatus.COMPLETED},
    RunStatus.CANCELLED: {RunStatus.CANCELLED},
    RunStatus.FAILED: {RunStatus.FAILED},
}


class IllegalTransitionError(ValueError):
    pass


def utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


class RunState(BaseModel):
    """The single mutable snapshot of a durable run."""

    run_id: str
    status: RunStatus = RunStatus.RUNNING
    current_node_id: str | None = None
    # Index of current_node_id in a positional sequence; None for id-addressed graphs.
    position: int | None = Field(default=None, ge=0)
    round: int = Field(default=0, ge=0)
    shared_context: dict[str, Any] = Field(default_factory=dict)
    waiting_at_node_id: str | None = None
    trail: list[StepRecord] = Field(default_factory=list)

    input: Any = None
    error: str | None = None
    updated_at: str = Field(default_factory=utc_iso_now)

    @model_validator(mode="after")
    def _waiting_node_matches_status(self) -> RunState:
        waiting = self.status is RunStatus.WAITING_FOR_USER
        if waiting != (self.waiting_at_node_id is not None):
            raise ValueError(
                "waiting_at_node_id must be set if and only if status is waiting_for_user"
            )
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def check_transition(current: RunState, nxt: RunState) -> None:
    allowed = ALLOWED_TRANSITIONS.get(current.status, set())
    if nxt.status not in allowed:
        raise IllegalTransitionError(
            f"Illegal transition for run {current.run_id}: "
            f"{current.status.value} -> {nxt.status.value}"
        )
    if nxt.round < current.round:
        raise IllegalTransitionError(
            f"Round may not decrease for run {current.run_id}: {current.round} -> {nxt.round}"
        )


def transition(*, current: RunState, **changes: Any) -> RunState:
    """Apply `changes` to `current`, validating the result.

    Raises:
        IllegalTransitionError: on a backwards status move or a decreasing round.
        pydantic.ValidationError: if the result breaks a RunState invariant.
    """

    unknown = set(changes) - set(RunState.model_fields)
    if unknown:
        raise TypeError(f"Unknown run state fields: {sorted(unknown)}")
    data = current.model_dump()
    data.update(changes)
    data["run_id"] = current.run_id
    data["updated_at"] = utc_iso_now()
    nxt = RunState.model_validate(data)
    check_transition(current, nxt)
    return nxt
