"""Unit tests for the resumable, event-driven executor."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest

from dag_engine.engine.cancellation import SELF_FIX_ATTEMPTS_KEY
from dag_engine.engine.config import RunOptions
from dag_engine.engine.context import RunContext
from dag_engine.engine.dag import ParallelGroup
from dag_engine.engine.errors import RunCancelled, WaitingForUser
from dag_engine.engine.level_executor import DelegationResult, StepRegistry, run
from dag_engine.engine.workflow.events import EventType
from dag_engine.engine.workflow.executor import EventDrivenExecutor
from dag_engine.engine.workflow.policy import EdgeGraphPolicy
from dag_engine.engine.workflow.state_machine import RunState, RunStatus
from dag_engine.engine.workflow.store import InMemoryExecutionStore, SqliteExecutionStore

if TYPE_CHECKING:
    from tests.conftest import RecordingHandler


def _pairs(trail: list[Any]) -> list[tuple[str, Any]]:
    return [(s.step_id, s.outcome) for s in trail]


def _pause_once():
    asked = {"count": 0}

    def step(step_id: str, step_input: Any, ctx: RunContext) -> str:
        asked["count"] += 1
        if asked["count"] == 1:
            raise WaitingForUser(question="Continue?")
        return f"{step_id} resumed"

    return step


@pytest.mark.asyncio
async def test_full_run_matches_one_shot_run(
    store, registry: StepRegistry, handler: RecordingHandler
) -> None:
    executor = EventDrivenExecutor(store, registry, handler=handler)

    result = await executor.start_or_resume("r1", ["a", "b", "c"], initial_input="in")
    one_shot = await run(["a", "b", "c"], "in", handler, registry)

    assert result.status is RunStatus.COMPLETED
    assert result.output == "c(in)"
    assert _pairs(result.trail) == _pairs(one_shot.context.steps)
    assert [s.sent_to for s in result.trail] == ["b", "c", None]
    assert all(e.processed for e in store.list_events("r1"))
    assert [e.type for e in store.list_events("r1")] == [
        EventType.RUN_STARTED.value,
        EventType.NODE_REQUESTED.value,
        EventType.NODE_COMPLETED.value,
        EventType.NODE_REQUESTED.value,
        EventType.NODE_COMPLETED.value,
        EventType.NODE_REQUESTED.value,
        EventType.NODE_COMPLETED.value,
    ]


@pytest.mark.asyncio
async def test_parallel_groups_run_in_declaration_order(
    store, registry: StepRegistry, handler: RecordingHandler
) -> None:
    executor = EventDrivenExecutor(store, registry, handler=handler)

    result = await executor.start_or_resume("r1", ["a", ParallelGroup(("c", "b"))])

    assert handler.calls == ["a", "c", "b"]
    assert result.status is RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_empty_dag_does_not_start_a_run(
    store, registry: StepRegistry, handler: RecordingHandler
) -> None:
    executor = EventDrivenExecutor(store, registry, handler=handler)

    result = await executor.start_or_resume("r1", ["unknown"], initial_context={"k": 1})

    assert result.status is None
    assert result.context == {"k": 1}
    assert handler.calls == []
    assert store.get_state("r1") is None


@pytest.mark.asyncio
async def test_pause_and_resume_matches_one_shot_pairs(
    store, registry: StepRegistry, make_handler: type[RecordingHandler]
) -> None:
    handler = make_handler({"b": _pause_once()})
    executor = EventDrivenExecutor(store, registry, handler=handler)

    with pytest.raises(WaitingForUser) as exc_info:
        await executor.start_or_resume("r1", ["a", "b", "c"], initial_input="in")

    assert exc_info.value.question == "Continue?"
    assert [s.step_id for s in exc_info.value.trail] == ["a"]
    paused = store.get_state("r1")
    assert paused.status is RunStatus.WAITING_FOR_USER
    assert paused.waiting_at_node_id == "b"
    assert store.next_pending("r1") is None

    result = await executor.start_or_resume("r1", ["a", "b", "c"], user_response="  go on ")

    assert result.status is RunStatus.COMPLETED
    assert result.output == "c(in)"
    assert result.context["__user_response"] == "go on"
    assert result.context["__output_b"] == "go on"
    assert handler.calls == ["a", "b", "c"]

    # A one-shot run whose step b answered "go on" records the same pairs.
    one_shot = await run(
        ["a", "b", "c"],
        "in",
        make_handler({"b": lambda step_id, step_input, ctx: "go on"}),
        registry,
    )
    assert _pairs(result.trail) == _pairs(one_shot.context.steps)
    reply = result.trail[1]
    assert reply.is_user_reply
    assert reply.sent_to == "c"


@pytest.mark.asyncio
async def test_waiting_run_without_reply_stays_waiting(
    store, registry: StepRegistry, make_handler: type[RecordingHandler]
) -> None:
    executor = EventDrivenExecutor(store, registry, handler=make_handler({"a": _pause_once()}))

    with pytest.raises(WaitingForUser):
        await executor.start_or_resume("r1", ["a", "b"])

    result = await executor.start_or_resume("r1", ["a", "b"])
    assert result.status is RunStatus.WAITING_FOR_USER


@pytest.mark.asyncio
async def test_respond_requires_waiting_run(
    store, registry: StepRegistry, handler: RecordingHandler
) -> None:
    executor = EventDrivenExecutor(store, registry, handler=handler)
    assert executor.respond("missing", "hi") is None

    await executor.start_or_resume("r1", ["a"])
    assert executor.respond("r1", "hi") is None
    assert store.next_pending("r1") is None


@pytest.mark.asyncio
async def test_cancellation_leaves_event_pending(
    store, registry: StepRegistry, handler: RecordingHandler
) -> None:
    cancelled = {"value": True}

    async def is_cancelled() -> bool:
        return cancelled["value"]

    executor = EventDrivenExecutor(store, registry, handler=handler, is_cancelled=is_cancelled)

    with pytest.raises(RunCancelled):
        await executor.start_or_resume("r1", ["a", "b"], initial_input="in")

    assert handler.calls == []
    assert store.next_pending("r1").type == EventType.RUN_STARTED.value

    cancelled["value"] = False
    result = await executor.start_or_resume("r1", ["a", "b"])
    assert result.status is RunStatus.COMPLETED
    assert result.output == "b(in)"


@pytest.mark.asyncio
async def test_cancellation_inside_a_step_keeps_node_requested_pending(
    store, registry: StepRegistry, make_handler: type[RecordingHandler]
) -> None:
    def cancel(step_id: str, step_input: Any, ctx: RunContext) -> Any:
        raise RunCancelled(ctx.run_id)

    executor = EventDrivenExecutor(store, registry, handler=make_handler({"b": cancel}))

    with pytest.raises(RunCancelled):
        await executor.start_or_resume("r1", ["a", "b"])

    pending = store.next_pending("r1")
    assert pending.type == EventType.NODE_REQUESTED.value
    assert pending.payload == {"node_id": "b", "position": 1}

    executor.mark_cancelled("r1")
    assert store.get_state("r1").status is RunStatus.CANCELLED


@pytest.mark.asyncio
async def test_step_failure_can_be_retried_by_resuming(
    store, registry: StepRegistry, make_handler: type[RecordingHandler]
) -> None:
    attempts = {"count": 0}

    def flaky(step_id: str, step_input: Any, ctx: RunContext) -> str:
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise RuntimeError("transient")
        return "ok"

    executor = EventDrivenExecutor(store, registry, handler=make_handler({"a": flaky}))

    with pytest.raises(RuntimeError, match="transient"):
        await executor.start_or_resume("r1", ["a"])

    failed = store.get_state("r1")
    assert failed.status is RunStatus.RUNNING
    assert failed.trail[-1].error == "transient"

    result = await executor.start_or_resume("r1", ["a"])
    assert result.status is RunStatus.COMPLETED
    assert result.output == "ok"


@pytest.mark.asyncio
async def test_mark_failed_records_error(
    store, registry: StepRegistry, make_handler: type[RecordingHandler]
) -> None:
    def broken(step_id: str, step_input: Any, ctx: RunContext) -> Any:
        raise RuntimeError("broken")

    executor = EventDrivenExecutor(store, registry, handler=make_handler({"a": broken}))
    with pytest.raises(RuntimeError):
        await executor.start_or_resume("r1", ["a"])

    state = executor.mark_failed("r1", "broken")

    assert state.status is RunStatus.FAILED
    assert state.error == "broken"


@pytest.mark.asyncio
async def test_unknown_events_are_skipped(
    store, registry: StepRegistry, handler: RecordingHandler
) -> None:
    store.set_state(RunState(run_id="r1", current_node_id="a", input="in"))
    store.enqueue("r1", "FromTheFuture", {"x": 1})
    store.enqueue("r1", EventType.NODE_REQUESTED, {"node_id": "zzz"})
    store.enqueue("r1", EventType.NODE_REQUESTED, {"node_id": "a"})

    executor = EventDrivenExecutor(store, registry, handler=handler)
    result = await executor.start_or_resume("r1", ["a"])

    assert handler.calls == ["a"]
    assert result.status is RunStatus.COMPLETED
    assert result.output == "a(in)"
    assert all(e.processed for e in store.list_events("r1"))


@pytest.mark.asyncio
async def test_concurrent_calls_for_one_run_are_serialised(
    store, registry: StepRegistry, handler: RecordingHandler
) -> None:
    executor = EventDrivenExecutor(store, registry, handler=handler)

    first, second = await asyncio.gather(
        executor.start_or_resume("r1", ["a", "b"]),
        executor.start_or_resume("r1", ["a", "b"]),
    )

    assert handler.calls == ["a", "b"]
    assert first.status is RunStatus.COMPLETED
    assert second.status is RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_delegation_inside_a_durable_node(
    store, registry: StepRegistry, make_handler: type[RecordingHandler]
) -> None:
    handler = make_handler({"a": lambda step_id, step_input, ctx: DelegationResult("plan", ["d"])})
    executor = EventDrivenExecutor(store, registry, handler=handler)

    result = await executor.start_or_resume("r1", ["a", "b"], initial_input="in")

    assert handler.calls == ["a", "d", "b"]
    assert _pairs(result.trail) == [("a", "plan"), ("d", "d(in)"), ("b", "b(in)")]
    assert result.context["__output_a"] == "plan"


@pytest.mark.asyncio
async def test_edge_graph_policy_loops_until_max_rounds(
    store, registry: StepRegistry, handler: RecordingHandler
) -> None:
    policy = EdgeGraphPolicy(
        ["a", "b"],
        [{"source": "a", "target": "b"}, {"source": "b", "target": "a"}],
        max_rounds=2,
    )
    executor = EventDrivenExecutor(store, registry, handler=handler, policy=policy)

    result = await executor.start_or_resume("r1", ["a", "b"])

    assert handler.calls == ["a", "b", "a", "b"]
    assert result.status is RunStatus.COMPLETED
    assert store.get_state("r1").round == 2


@pytest.mark.asyncio
async def test_resume_from_a_fresh_process(
    sqlite_path: Path, registry: StepRegistry, make_handler: type[RecordingHandler]
) -> None:
    handler = make_handler({"b": _pause_once()})
    with pytest.raises(WaitingForUser):
        await EventDrivenExecutor(
            SqliteExecutionStore(sqlite_path), registry, handler=handler
        ).start_or_resume("r1", ["a", "b", "c"], initial_input="in")

    restarted = EventDrivenExecutor(SqliteExecutionStore(sqlite_path), registry, handler=handler)
    result = await restarted.start_or_resume("r1", ["a", "b", "c"], user_response="yes")

    assert result.status is RunStatus.COMPLETED
    assert _pairs(result.trail) == [("a", "a(in)"), ("b", "yes"), ("c", "c(in)")]


@pytest.mark.asyncio
async def test_repeated_ids_run_in_one_shot_order(
    store, registry: StepRegistry, make_handler: type[RecordingHandler]
) -> None:
    steps = ["a", ParallelGroup(("b", "c")), "a"]
    handler = make_handler()
    executor = EventDrivenExecutor(store, registry, handler=handler)

    result = await executor.start_or_resume("r1", steps, initial_input="in")
    one_shot = await run(steps, "in", make_handler(), registry)

    assert handler.calls == ["a", "b", "c", "a"]
    assert result.status is RunStatus.COMPLETED
    assert _pairs(result.trail) == _pairs(one_shot.context.steps)
    assert [s.sent_to for s in result.trail] == ["b", "c", "a", None]


@pytest.mark.asyncio
async def test_reply_to_a_repeated_id_continues_after_that_occurrence(
    store, registry: StepRegistry, make_handler: type[RecordingHandler]
) -> None:
    calls = {"a": 0}

    def second_a_asks(step_id: str, step_input: Any, ctx: RunContext) -> str:
        calls["a"] += 1
        if calls["a"] == 2:
            raise WaitingForUser(question="Again?")
        return "first a"

    handler = make_handler({"a": second_a_asks})
    executor = EventDrivenExecutor(store, registry, handler=handler)
    steps = ["a", "b", "a", "c"]

    with pytest.raises(WaitingForUser):
        await executor.start_or_resume("r1", steps)
    assert store.get_state("r1").position == 2

    result = await executor.start_or_resume("r1", steps, user_response="yes")

    assert handler.calls == ["a", "b", "a", "c"]
    assert [s.step_id for s in result.trail] == ["a", "b", "a", "c"]
    assert result.trail[2].sent_to == "c"
    assert result.status is RunStatus.COMPLETED


@pytest.mark.asyncio
async def test_pause_inside_delegated_step_can_be_resumed(
    store, registry: StepRegistry, make_handler: type[RecordingHandler]
) -> None:
    handler = make_handler(
        {
            "a": lambda step_id, step_input, ctx: DelegationResult("plan", ["d"]),
            "d": _pause_once(),
        }
    )
    executor = EventDrivenExecutor(store, registry, handler=handler)

    with pytest.raises(WaitingForUser) as exc_info:
        await executor.start_or_resume("r1", ["a", "b"], initial_input="in")

    assert exc_info.value.question == "Continue?"
    paused = store.get_state("r1")
    assert paused.status is RunStatus.WAITING_FOR_USER
    assert paused.waiting_at_node_id == "a"
    assert _pairs(paused.trail) == [("a", "plan")]
    assert store.next_pending("r1") is None

    assert executor.respond("r1", "done") is not None
    result = await executor.start_or_resume("r1", ["a", "b"])

    assert result.status is RunStatus.COMPLETED
    assert handler.calls == ["a", "d", "b"]
    assert _pairs(result.trail) == [("a", "plan"), ("a", "done"), ("b", "b(in)")]


@pytest.mark.asyncio
async def test_failure_inside_delegated_step_is_persisted(
    store, registry: StepRegistry, make_handler: type[RecordingHandler]
) -> None:
    def broken(step_id: str, step_input: Any, ctx: RunContext) -> Any:
        raise RuntimeError("sub-step broke")

    handler = make_handler(
        {"a": lambda step_id, step_input, ctx: DelegationResult("plan", ["d"]), "d": broken}
    )
    executor = EventDrivenExecutor(store, registry, handler=handler)

    with pytest.raises(RuntimeError, match="sub-step broke"):
        await executor.start_or_resume("r1", ["a", "b"])

    state = store.get_state("r1")
    assert state.status is RunStatus.RUNNING
    assert [(s.step_id, s.outcome, s.error) for s in state.trail] == [
        ("a", "plan", None),
        ("d", None, "sub-step broke"),
    ]
    assert store.next_pending("r1").payload == {"node_id": "a", "position": 0}


@pytest.mark.asyncio
async def test_durable_handlers_share_the_self_fix_budget(
    store, registry: StepRegistry, make_handler: type[RecordingHandler]
) -> None:
    failure = {"statusCode": 502}
    handler = make_handler(
        {
            "a": lambda step_id, step_input, ctx: ctx.self_fix.max_retries,
            "b": lambda step_id, step_input, ctx: ctx.self_fix.should_continue(
                ctx, last_result=failure
            ),
            "c": lambda step_id, step_input, ctx: ctx.self_fix.attempts(ctx),
        }
    )
    executor = EventDrivenExecutor(
        store, registry, handler=handler, options=RunOptions(max_self_fix_retries=2)
    )

    result = await executor.start_or_resume("r1", ["a", "b", "c"])

    outcomes = [s.outcome for s in result.trail]
    assert outcomes[0] == 2
    assert outcomes[1]["_selfFixContinue"] is True
    assert outcomes[2] == 1
    assert result.context[SELF_FIX_ATTEMPTS_KEY] == 1


class _CrashOnceStore(InMemoryExecutionStore):
    """Fails the first commit of a NodeRequested event, like a process dying mid-commit."""

    def __init__(self) -> None:
        super().__init__()
        self.crashed = False

    def complete_event(self, event, **kwargs):
        if not self.crashed and event.type == EventType.NODE_REQUESTED.value:
            self.crashed = True
            raise OSError("disk went away")
        return super().complete_event(event, **kwargs)


@pytest.mark.asyncio
async def test_crash_during_commit_does_not_duplicate_node_completed(
    registry: StepRegistry, handler: RecordingHandler
) -> None:
    store = _CrashOnceStore()
    executor = EventDrivenExecutor(store, registry, handler=handler)

    with pytest.raises(OSError):
        await executor.start_or_resume("r1", ["a", "b"], initial_input="in")
    assert store.next_pending("r1").event_type is EventType.NODE_REQUESTED
    assert store.get_state("r1").trail == []

    result = await executor.start_or_resume("r1", ["a", "b"])

    # The handler runs again; its first result was never committed.
    assert handler.calls == ["a", "a", "b"]
    assert _pairs(result.trail) == [("a", "a(in)"), ("b", "b(in)")]
    assert [e.type for e in store.list_events("r1")].count(EventType.NODE_COMPLETED.value) == 2


@pytest.mark.asyncio
async def test_cancelling_a_finished_run_keeps_its_status(
    store, registry: StepRegistry, handler: RecordingHandler
) -> None:
    executor = EventDrivenExecutor(store, registry, handler=handler)
    await executor.start_or_resume("r1", ["a"])

    assert executor.mark_cancelled("r1").status is RunStatus.COMPLETED
    assert executor.mark_failed("r1", "late").error is None
    assert executor.mark_cancelled("missing") is None
