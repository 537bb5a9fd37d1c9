"""Per-run context handed to step handlers.

`SharedContextStore` is the key/value scratch space of a run. Its
`snapshot()` / `from_snapshot()` pair is the only serialisation boundary between
a live run and the persisted run state, so values must be plain JSON data
(no callables, no cycles).

Concurrency contract: steps of one level run concurrently and must not write the
same key. The store does not lock; which write wins is undefined.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping
from typing import Any

from pydantic import BaseModel, Field

from dag_engine.engine.cancellation import SelfFixPolicy
from dag_engine.engine.errors import ContextSerializationError, RunCancelled

logger = logging.getLogger(__name__)

CancellationCheck = Callable[[], Awaitable[bool]]

OUTPUT_KEY_PREFIX = "__output_"
USER_RESPONSE_KEY = "__user_response"


def output_key(step_id: str) -> str:
    return f"{OUTPUT_KEY_PREFIX}{step_id}"


def _ensure_plain(value: object, path: str, seen: set[int]) -> None:
    if value is None or isinstance(value, (str, bool, int, float)):
        return
    if isinstance(value, (list, tuple)):
        if id(value) in seen:
            raise ContextSerializationError(f"Cycle in shared context at {path!r}")
        seen.add(id(value))
        for idx, item in enumerate(value):
            _ensure_plain(item, f"{path}[{idx}]", seen)
        seen.discard(id(value))
        return
    if isinstance(value, Mapping):
        if id(value) in seen:
            raise ContextSerializationError(f"Cycle in shared context at {path!r}")
        seen.add(id(value))
        for key, item in value.items():
            if not isinstance(key, str):
                raise ContextSerializationError(f"Non-string key {key!r} at {path!r}")
            _ensure_plain(item, f"{path}.{key}", seen)
        seen.discard(id(value))
        return
    raise ContextSerializationError(
        f"Shared context value at {path!r} is not plain data: {type(value).__name__}"
    )


class SharedContextStore:
    """Key/value scratch space for one run."""

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._data: dict[str, Any] = dict(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def keys(self) -> list[str]:
        return list(self._data)

    def snapshot(self) -> dict[str, Any]:
        """Shallow copy suitable for persistence.

        Raises:
            ContextSerializationError: if any value is not plain JSON data.
        """

        for key, value in self._data.items():
            _ensure_plain(value, key, set())
        return dict(self._data)

    @classmethod
    def from_snapshot(cls, data: Mapping[str, Any] | None) -> SharedContextStore:
        return cls(data)


class StepRecord(BaseModel):
    """One entry of a run's trail."""

    step_id: str
    outcome: Any = None
    error: str | None = None

    # Next node chosen by the edge policy after this step (durable runs only).
    sent_to: str | None = None
    is_user_reply: bool = False


class RunContext:
    """History plus shared store, as seen by a step handler.

    History is append-only. With ``max_steps`` set only the newest entries are
    kept. `self_fix` is the run's bounded retry policy for failing tool calls.
    """

    def __init__(
        self,
        *,
        steps: Iterable[StepRecord] = (),
        store: SharedContextStore | None = None,
        run_id: str | None = None,
        is_cancelled: CancellationCheck | None = None,
        max_steps: int | None = None,
        self_fix: SelfFixPolicy | None = None,
    ) -> None:
        self.steps: list[StepRecord] = list(steps)
        self.store = store if store is not None else SharedContextStore()
        self.run_id = run_id
        self.max_steps = max_steps
        self.self_fix = self_fix if self_fix is not None else SelfFixPolicy()
        self._is_cancelled = is_cancelled

    def record(self, step_id: str, outcome: Any = None, *, error: str | None = None) -> StepRecord:
        entry = StepRecord(step_id=step_id, outcome=outcome, error=error)
        self.steps.append(entry)
        if self.max_steps is not None and len(self.steps) > self.max_steps:
            del self.steps[: len(self.steps) - self.max_steps]
        return entry

    @property
    def last_outcome(self) -> Any:
        return self.steps[-1].outcome if self.steps else None

    async def cancelled(self) -> bool:
        if self._is_cancelled is None:
            return False
        return await self._is_cancelled()

    async def raise_if_cancelled(self) -> None:
        """Suspension-point check for long-running handlers."""

        if await self.cancelled():
            logger.info("Cancellation observed", extra={"run_id": self.run_id})
            raise RunCancelled(self.run_id)

    def trail_json(self) -> list[dict[str, Any]]:
        return [entry.model_dump(mode="json") for entry in self.steps]
