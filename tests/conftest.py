"""Test configuration and fixtures."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

from dag_engine.engine.context import RunContext
from dag_engine.engine.level_executor import StepRegistry
from dag_engine.engine.workflow.store import InMemoryExecutionStore, SqliteExecutionStore


class RecordingHandler:
    """Dispatching step handler that echoes `<step_id>(<input>)`.

    `overrides` maps a step id to a callable taking (step_id, input, ctx) whose
    return value (or raised exception) replaces the echo.
    """

    def __init__(self, overrides: dict[str, Callable[..., Any]] | None = None) -> None:
        self.calls: list[str] = []
        self.overrides = dict(overrides or {})

    async def __call__(self, step_id: str, step_input: Any, ctx: RunContext) -> Any:
        self.calls.append(step_id)
        override = self.overrides.get(step_id)
        if override is not None:
            return override(step_id, step_input, ctx)
        return f"{step_id}({step_input})"


@pytest.fixture
def registry() -> StepRegistry:
    """Provide a registry that knows steps a..e, with `a` as fallback."""
    return StepRegistry(ids=["a", "b", "c", "d", "e"], top_level_ids=["a"])


@pytest.fixture
def handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def memory_store() -> InMemoryExecutionStore:
    return InMemoryExecutionStore()


@pytest.fixture
def sqlite_path(tmp_path: Path) -> Path:
    """Provide a temporary SQLite store path."""
    return tmp_path / "agent_state" / "executions.db"


@pytest.fixture
def sqlite_store(sqlite_path: Path) -> SqliteExecutionStore:
    return SqliteExecutionStore(sqlite_path)


@pytest.fixture(params=["memory", "sqlite"])
def store(request: pytest.FixtureRequest, tmp_path: Path):
    """Provide each store backend in turn."""
    if request.param == "memory":
        return InMemoryExecutionStore()
    return SqliteExecutionStore(tmp_path / "executions.db")


@pytest.fixture
def make_handler() -> type[RecordingHandler]:
    """Provide the handler class, for tests that need per-step overrides."""
    return RecordingHandler
