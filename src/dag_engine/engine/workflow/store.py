"""Event queue and run-state persistence.

Two backends share one contract:

- `InMemoryExecutionStore` for tests and single-process use
- `SqliteExecutionStore` for runs that must survive a process restart

Each run has exactly one writer at a time (its active driver loop), but two
processes may race to resume the same run. The SQLite backend therefore does
every read-check-write inside one ``BEGIN IMMEDIATE`` transaction and writes
the state row with ``INSERT ... ON CONFLICT(run_id) DO UPDATE``.

Processing an event is committed with `complete_event`: the state patch, the
follow-up events and the processed mark land together or not at all.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import uuid
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Protocol, TypeAlias

from dag_engine.engine.workflow.events import EventType, ExecutionEvent
from dag_engine.engine.workflow.state_machine import (
    RunState,
    check_transition,
    transition,
    utc_iso_now,
)

logger = logging.getLogger(__name__)

FollowUp: TypeAlias = tuple[EventType | str, dict[str, Any] | None]


class ExecutionStore(Protocol):
    """Durable event queue plus current state, per run."""

    def enqueue(
        self, run_id: str, type: EventType | str, payload: dict[str, Any] | None = None
    ) -> str: ...

    def next_pending(self, run_id: str) -> ExecutionEvent | None: ...

    def mark_processed(self, event_id: str) -> None: ...

    def list_events(self, run_id: str) -> list[ExecutionEvent]: ...

    def get_state(self, run_id: str) -> RunState | None: ...

    def set_state(self, state: RunState) -> None: ...

    def patch_state(self, run_id: str, **changes: Any) -> RunState | None: ...

    def start_run(self, state: RunState, events: Sequence[FollowUp] = ()) -> None: ...

    def complete_event(
        self,
        event: ExecutionEvent,
        *,
        changes: Mapping[str, Any] | None = None,
        follow_ups: Sequence[FollowUp] = (),
    ) -> bool: ...


def _type_value(type: EventType | str) -> str:
    return type.value if isinstance(type, EventType) else str(type)


class InMemoryExecutionStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: dict[str, ExecutionEvent] = {}
        self._run_events: dict[str, list[str]] = {}
        self._states: dict[str, RunState] = {}

    def _append(self, run_id: str, type: EventType | str, payload: dict[str, Any] | None) -> str:
        ids = self._run_events.setdefault(run_id, [])
        event = ExecutionEvent(
            id=str(uuid.uuid4()),
            run_id=run_id,
            sequence=len(ids) + 1,
            type=_type_value(type),
            payload=dict(payload) if payload is not None else None,
            created_at=utc_iso_now(),
        )
        self._events[event.id] = event
        ids.append(event.id)
        return event.id

    def enqueue(
        self, run_id: str, type: EventType | str, payload: dict[str, Any] | None = None
    ) -> str:
        with self._lock:
            return self._append(run_id, type, payload)

    def next_pending(self, run_id: str) -> ExecutionEvent | None:
        with self._lock:
            for event_id in self._run_events.get(run_id, []):
                event = self._events[event_id]
                if not event.processed:
                    return event.model_copy(deep=True)
            return None

    def mark_processed(self, event_id: str) -> None:
        with self._lock:
            event = self._events.get(event_id)
            if event is None or event.processed:
                return
            self._events[event_id] = event.model_copy(update={"processed_at": utc_iso_now()})

    def list_events(self, run_id: str) -> list[ExecutionEvent]:
        with self._lock:
            return [
                self._events[event_id].model_copy(deep=True)
                for event_id in self._run_events.get(run_id, [])
            ]

    def get_state(self, run_id: str) -> RunState | None:
        with self._lock:
            state = self._states.get(run_id)
            return state.model_copy(deep=True) if state is not None else None

    def set_state(self, state: RunState) -> None:
        with self._lock:
            existing = self._states.get(state.run_id)
            if existing is not None:
                check_transition(existing, state)
            self._states[state.run_id] = state.model_copy(deep=True)

    def patch_state(self, run_id: str, **changes: Any) -> RunState | None:
        with self._lock:
            existing = self._states.get(run_id)
            if existing is None:
                return None
            updated = transition(current=existing, **changes)
            self._states[run_id] = updated
            return updated.model_copy(deep=True)

    def start_run(self, state: RunState, events: Sequence[FollowUp] = ()) -> None:
        """Write a new run's state and its first events together."""

        with self._lock:
            existing = self._states.get(state.run_id)
            if existing is not None:
                check_transition(existing, state)
            self._states[state.run_id] = state.model_copy(deep=True)
            for type, payload in events:
                self._append(state.run_id, type, payload)

    def complete_event(
        self,
        event: ExecutionEvent,
        *,
        changes: Mapping[str, Any] | None = None,
        follow_ups: Sequence[FollowUp] = (),
    ) -> bool:
        """Apply `changes`, enqueue `follow_ups` and mark `event` processed.

        Nothing is written if the transition is rejected. Returns False, again
        writing nothing, if the event was already processed.
        """

        with self._lock:
            stored = self._events.get(event.id)
            if stored is None or stored.processed:
                return False
            existing = self._states.get(event.run_id)
            if changes and existing is not None:
                self._states[event.run_id] = transition(current=existing, **changes)
            for type, payload in follow_ups:
                self._append(event.run_id, type, payload)
            self._events[event.id] = stored.model_copy(update={"processed_at": utc_iso_now()})
            return True


_SCHEMA = """
CREATE TABLE IF NOT EXISTS execution_events (
    id TEXT PRIMARY KEY,
    run_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    type TEXT NOT NULL,
    payload TEXT,
    processed_at TEXT,
    created_at TEXT NOT NULL,
    UNIQUE (run_id, sequence)
);
CREATE TABLE IF NOT EXISTS execution_run_state (
    run_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    current_node_id TEXT,
    position INTEGER,
    round INTEGER NOT NULL DEFAULT 0,
    shared_context TEXT NOT NULL,
    waiting_at_node_id TEXT,
    trail TEXT NOT NULL,
    input TEXT,
    error TEXT,
    updated_at TEXT NOT NULL
);
"""

# Columns added after the first release, applied to existing databases on open.
_MIGRATIONS: tuple[tuple[str, str, str], ...] = (
    (
        "execution_run_state",
        "position",
        "ALTER TABLE execution_run_state ADD COLUMN position INTEGER",
    ),
)

_UPSERT_STATE = """
INSERT INTO execution_run_state (
    run_id, status, current_node_id, position, round, shared_context,
    waiting_at_node_id, trail, input, error, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT(run_id) DO UPDATE SET
    status = excluded.status,
    current_node_id = excluded.current_node_id,
    position = excluded.position,
    round = excluded.round,
    shared_context = excluded.shared_context,
    waiting_at_node_id = excluded.waiting_at_node_id,
    trail = excluded.trail,
    input = excluded.input,
    error = excluded.error,
    updated_at = excluded.updated_at
"""

# Sequence is computed inside the INSERT so concurrent writers cannot collide.
_INSERT_EVENT = """
INSERT INTO execution_events
    (id, run_id, sequence, type, payload, processed_at, created_at)
VALUES (
    ?, ?,
    (SELECT COALESCE(MAX(sequence), 0) + 1 FROM execution_events WHERE run_id = ?),
    ?, ?, NULL, ?
)
"""


def _json_dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False)


def _json_loads(text: str | None, fallback: Any) -> Any:
    if text is None or text == "":
        return fallback
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        logger.warning("Unreadable JSON column, using fallback")
        return fallback


class SqliteExecutionStore:
    """SQLite-backed store; one connection per call, WAL journal."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connection() as conn:
            conn.executescript(_SCHEMA)
            self._migrate(conn)
        logger.info("Execution store initialized", extra={"path": str(self.path)})

    @staticmethod
    def _migrate(conn: sqlite3.Connection) -> None:
        for table, column, ddl in _MIGRATIONS:
            columns = {row["name"] for row in conn.execute(f"PRAGMA table_info({table})")}
            if column not in columns:
                conn.execute(ddl)
                logger.info("Store schema migrated", extra={"table": table, "column": column})

    @contextmanager
    def _connection(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.path), isolation_level=None, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._connection() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    @staticmethod
    def _row_to_event(row: sqlite3.Row) -> ExecutionEvent:
        return ExecutionEvent(
            id=row["id"],
            run_id=row["run_id"],
            sequence=row["sequence"],
            type=row["type"],
            payload=_json_loads(row["payload"], None),
            processed_at=row["processed_at"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_state(row: sqlite3.Row) -> RunState:
        return RunState.model_validate(
            {
                "run_id": row["run_id"],
                "status": row["status"],
                "current_node_id": row["current_node_id"],
                "position": row["position"],
                "round": row["round"],
                "shared_context": _json_loads(row["shared_context"], {}),
                "waiting_at_node_id": row["waiting_at_node_id"],
                "trail": _json_loads(row["trail"], []),
                "input": _json_loads(row["input"], None),
                "error": row["error"],
                "updated_at": row["updated_at"],
            }
        )

    @staticmethod
    def _state_params(state: RunState) -> tuple[Any, ...]:
        data = state.model_dump(mode="json")
        return (
            state.run_id,
            state.status.value,
            state.current_node_id,
            state.position,
            state.round,
            _json_dumps(data["shared_context"]),
            state.waiting_at_node_id,
            _json_dumps(data["trail"]),
            _json_dumps(data["input"]),
            state.error,
            state.updated_at,
        )

    @staticmethod
    def _insert_event(
        conn: sqlite3.Connection,
        run_id: str,
        type: EventType | str,
        payload: dict[str, Any] | None,
    ) -> str:
        event_id = str(uuid.uuid4())
        conn.execute(
            _INSERT_EVENT,
            (
                event_id,
                run_id,
                run_id,
                _type_value(type),
                _json_dumps(payload) if payload is not None else None,
                utc_iso_now(),
            ),
        )
        return event_id

    def _select_state(self, conn: sqlite3.Connection, run_id: str) -> RunState | None:
        row = conn.execute(
            "SELECT * FROM execution_run_state WHERE run_id = ?", (run_id,)
        ).fetchone()
        return self._row_to_state(row) if row is not None else None

    def enqueue(
        self, run_id: str, type: EventType | str, payload: dict[str, Any] | None = None
    ) -> str:
        with self._connection() as conn:
            return self._insert_event(conn, run_id, type, payload)

    def next_pending(self, run_id: str) -> ExecutionEvent | None:
        with self._connection() as conn:
            row = conn.execute(
                """
                SELECT * FROM execution_events
                WHERE run_id = ? AND processed_at IS NULL
                ORDER BY sequence ASC LIMIT 1
                """,
                (run_id,),
            ).fetchone()
        return self._row_to_event(row) if row is not None else None

    def mark_processed(self, event_id: str) -> None:
        with self._connection() as conn:
            conn.execute(
                "UPDATE execution_events SET processed_at = ?"
                " WHERE id = ? AND processed_at IS NULL",
                (utc_iso_now(), event_id),
            )

    def list_events(self, run_id: str) -> list[ExecutionEvent]:
        with self._connection() as conn:
            rows = conn.execute(
                "SELECT * FROM execution_events WHERE run_id = ? ORDER BY sequence ASC",
                (run_id,),
            ).fetchall()
        return [self._row_to_event(row) for row in rows]

    def get_state(self, run_id: str) -> RunState | None:
        with self._connection() as conn:
            return self._select_state(conn, run_id)

    def set_state(self, state: RunState) -> None:
        with self._transaction() as conn:
            existing = self._select_state(conn, state.run_id)
            if existing is not None:
                check_transition(existing, state)
            conn.execute(_UPSERT_STATE, self._state_params(state))

    def patch_state(self, run_id: str, **changes: Any) -> RunState | None:
        with self._transaction() as conn:
            existing = self._select_state(conn, run_id)
            if existing is None:
                return None
            updated = transition(current=existing, **changes)
            conn.execute(_UPSERT_STATE, self._state_params(updated))
            return updated

    def start_run(self, state: RunState, events: Sequence[FollowUp] = ()) -> None:
        """Write a new run's state and its first events in one transaction."""

        with self._transaction() as conn:
            existing = self._select_state(conn, state.run_id)
            if existing is not None:
                check_transition(existing, state)
            conn.execute(_UPSERT_STATE, self._state_params(state))
            for type, payload in events:
                self._insert_event(conn, state.run_id, type, payload)

    def complete_event(
        self,
        event: ExecutionEvent,
        *,
        changes: Mapping[str, Any] | None = None,
        follow_ups: Sequence[FollowUp] = (),
    ) -> bool:
        """Apply `changes`, enqueue `follow_ups` and mark `event` processed.

        All three happen in one ``BEGIN IMMEDIATE`` transaction; a rejected
        transition rolls back everything. Returns False without writing if
        another process already processed the event.
        """

        with self._transaction() as conn:
            row = conn.execute(
                "SELECT processed_at FROM execution_events WHERE id = ?", (event.id,)
            ).fetchone()
            if row is None or row["processed_at"] is not None:
                return False
            if changes:
                existing = self._select_state(conn, event.run_id)
                if existing is not None:
                    updated = transition(current=existing, **changes)
                    conn.execute(_UPSERT_STATE, self._state_params(updated))
            for type, payload in follow_ups:
                self._insert_event(conn, event.run_id, type, payload)
            conn.execute(
                "UPDATE execution_events SET processed_at = ? WHERE id = ?",
                (utc_iso_now(), event.id),
            )
            return True
