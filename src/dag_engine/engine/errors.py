"""Engine error taxonomy.

Pauses and cancellations are typed signals so callers can tell "resume later"
apart from "this run failed" without matching on messages.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from dag_engine.engine.context import StepRecord

WAITING_FOR_USER_MESSAGE = "WAITING_FOR_USER"
RUN_CANCELLED_MESSAGE = "Run cancelled by user"


class EngineError(Exception):
    """Base class for errors raised by the engine."""


class WaitingForUser(EngineError):
    """Raised by a step handler (and re-raised by the driver) to pause a run.

    Carries the execution trail so the caller can show progress while the run
    waits for a reply.
    """

    def __init__(
        self,
        trail: Sequence[StepRecord] = (),
        message: str = WAITING_FOR_USER_MESSAGE,
        *,
        question: str | None = None,
    ) -> None:
        super().__init__(message)
        self.trail: list[StepRecord] = list(trail)
        self.question = question


class RunCancelled(EngineError):
    """Raised when the cancellation predicate reports true."""

    def __init__(self, run_id: str | None = None) -> None:
        super().__init__(RUN_CANCELLED_MESSAGE)
        self.run_id = run_id


class ContextSerializationError(EngineError, TypeError):
    """Raised when a shared-context value is not plain JSON data."""
