"""Resumable, event-driven driver loop.

A durable run is an append-only event queue plus one run-state row. The loop
pulls the oldest pending event and applies its effect (possibly calling a step
handler). An event's state change, follow-up events and processed mark are
committed together. The loop runs until the run completes or pauses. Nothing
needed to continue is held in memory, so the loop can be re-entered after a
crash, a pause or a user reply.

Handlers may be invoked more than once for the same node: if the process dies
while a handler runs, its NodeRequested event is still pending on restart.

The default edge policy walks the DAG's steps by position, so a step list that
repeats an id runs each occurrence, in the same order as a one-shot run.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from dag_engine.engine.cancellation import raise_if_cancelled
from dag_engine.engine.config import RunOptions
from dag_engine.engine.context import (
    USER_RESPONSE_KEY,
    CancellationCheck,
    RunContext,
    SharedContextStore,
    StepRecord,
    output_key,
)
from dag_engine.engine.dag import DAG, StepSpec, build_dag
from dag_engine.engine.errors import RunCancelled, WaitingForUser
from dag_engine.engine.level_executor import (
    DelegationResult,
    LevelExecutor,
    StepHandler,
    StepRegistry,
)
from dag_engine.engine.serialization import KeyedTaskQueue
from dag_engine.engine.workflow.events import EventType, ExecutionEvent
from dag_engine.engine.workflow.policy import EdgeResolutionPolicy, LevelSequencePolicy
from dag_engine.engine.workflow.state_machine import RunState, RunStatus
from dag_engine.engine.workflow.store import ExecutionStore, FollowUp

logger = logging.getLogger(__name__)


class _Outcome(str, Enum):
    CONTINUE = "continue"
    COMPLETED = "completed"


@dataclass(frozen=True, slots=True)
class RunResult:
    run_id: str
    status: RunStatus | None
    output: Any = None
    context: dict[str, Any] = field(default_factory=dict)
    trail: list[StepRecord] = field(default_factory=list)


class EventDrivenExecutor:
    """Drives durable runs over an :class:`ExecutionStore`."""

    def __init__(
        self,
        store: ExecutionStore,
        registry: StepRegistry,
        *,
        handler: StepHandler | None = None,
        policy: EdgeResolutionPolicy | None = None,
        options: RunOptions | None = None,
        is_cancelled: CancellationCheck | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.handler = handler
        self.policy = policy
        self.options = options or RunOptions()
        self.is_cancelled = is_cancelled
        self._serial = KeyedTaskQueue()

    async def start_or_resume(
        self,
        run_id: str,
        steps: Sequence[StepSpec],
        *,
        initial_input: Any = None,
        initial_context: Mapping[str, Any] | None = None,
        user_response: str | None = None,
        policy: EdgeResolutionPolicy | None = None,
    ) -> RunResult:
        """Start `run_id`, or continue it from its persisted events.

        Calls for the same run id are serialised within this executor.

        Raises:
            WaitingForUser: when a step pauses the run; carries the trail.
            RunCancelled: when the cancellation predicate is observed true.
        """

        return await self._serial.run(
            run_id,
            lambda: self._start_or_resume(
                run_id,
                steps,
                initial_input=initial_input,
                initial_context=initial_context,
                user_response=user_response,
                policy=policy,
            ),
        )

    async def _start_or_resume(
        self,
        run_id: str,
        steps: Sequence[StepSpec],
        *,
        initial_input: Any,
        initial_context: Mapping[str, Any] | None,
        user_response: str | None,
        policy: EdgeResolutionPolicy | None,
    ) -> RunResult:
        dag = build_dag(steps, self.registry.known_ids)
        active_policy = policy or self.policy or LevelSequencePolicy.from_dag(dag)

        state = self.store.get_state(run_id)
        reply = (user_response or "").strip()
        if state is None:
            if dag.is_empty:
                logger.info("Nothing to run", extra={"run_id": run_id})
                return RunResult(run_id=run_id, status=None, context=dict(initial_context or {}))
            if reply:
                logger.warning(
                    "Ignoring reply for a run that never started", extra={"run_id": run_id}
                )
            self._seed(run_id, dag, initial_input, initial_context)
        elif reply:
            self.respond(run_id, reply)

        while True:
            event = self.store.next_pending(run_id)
            if event is None:
                state = self.store.get_state(run_id)
                if state is not None and state.status is RunStatus.RUNNING:
                    self.store.patch_state(run_id, status=RunStatus.COMPLETED)
                break
            await raise_if_cancelled(self.is_cancelled, run_id)
            outcome = await self._process(event, active_policy)
            if outcome is _Outcome.COMPLETED:
                break

        return self.result(run_id)

    def _seed(
        self,
        run_id: str,
        dag: DAG,
        initial_input: Any,
        initial_context: Mapping[str, Any] | None,
    ) -> None:
        start_node_id = dag.levels[0][0]
        self.store.start_run(
            RunState(
                run_id=run_id,
                status=RunStatus.RUNNING,
                current_node_id=start_node_id,
                position=0,
                round=0,
                shared_context=SharedContextStore(initial_context).snapshot(),
                input=initial_input,
            ),
            [
                (EventType.RUN_STARTED, None),
                (EventType.NODE_REQUESTED, _node_payload(start_node_id, 0)),
            ],
        )
        logger.info("Run started", extra={"run_id": run_id, "node_id": start_node_id})

    def respond(self, run_id: str, content: str) -> str | None:
        """Enqueue a user reply for a paused run; returns the event id.

        Returns None (and enqueues nothing) unless the run is waiting for the user.
        """

        state = self.store.get_state(run_id)
        if state is None or state.status is not RunStatus.WAITING_FOR_USER:
            logger.warning("Run is not waiting for a reply", extra={"run_id": run_id})
            return None
        return self.store.enqueue(run_id, EventType.USER_RESPONDED, {"content": content})

    def mark_cancelled(self, run_id: str) -> RunState | None:
        """Cancel a run; a run that already finished is returned unchanged."""

        state = self.store.get_state(run_id)
        if state is None or state.is_terminal:
            return state
        return self.store.patch_state(
            run_id, status=RunStatus.CANCELLED, waiting_at_node_id=None
        )

    def mark_failed(self, run_id: str, error: str) -> RunState | None:
        state = self.store.get_state(run_id)
        if state is None or state.is_terminal:
            return state
        return self.store.patch_state(
            run_id, status=RunStatus.FAILED, waiting_at_node_id=None, error=error
        )

    def result(self, run_id: str) -> RunResult:
        state = self.store.get_state(run_id)
        if state is None:
            return RunResult(run_id=run_id, status=None)
        output = (
            state.shared_context.get(output_key(state.current_node_id))
            if state.current_node_id is not None
            else None
        )
        return RunResult(
            run_id=run_id,
            status=state.status,
            output=output,
            context=dict(state.shared_context),
            trail=list(state.trail),
        )

    async def _process(self, event: ExecutionEvent, policy: EdgeResolutionPolicy) -> _Outcome:
        logger.debug(
            "Processing event",
            extra={"run_id": event.run_id, "event_type": event.type, "sequence": event.sequence},
        )
        event_type = event.event_type
        if event_type is EventType.RUN_STARTED:
            self.store.complete_event(event)
            return _Outcome.CONTINUE
        if event_type is EventType.NODE_REQUESTED:
            return await self._node_requested(event)
        if event_type is EventType.NODE_COMPLETED:
            return self._node_completed(event, policy)
        if event_type is EventType.USER_RESPONDED:
            return self._user_responded(event, policy)

        logger.info(
            "Ignoring unknown event type",
            extra={"run_id": event.run_id, "event_type": event.type},
        )
        self.store.complete_event(event)
        return _Outcome.CONTINUE

    async def _node_requested(self, event: ExecutionEvent) -> _Outcome:
        run_id = event.run_id
        node_id = str(event.payload_value("node_id", ""))
        position = _payload_position(event)
        if node_id not in self.registry.known_ids:
            logger.warning("Unknown node requested", extra={"run_id": run_id, "node_id": node_id})
            self.store.complete_event(event)
            return _Outcome.CONTINUE

        state = self.store.get_state(run_id)
        if state is None or state.status is not RunStatus.RUNNING:
            self.store.complete_event(event)
            return _Outcome.COMPLETED

        levels = LevelExecutor(
            self.registry,
            self.handler,
            self.options,
            is_cancelled=self.is_cancelled,
            run_id=run_id,
        )
        ctx = RunContext(
            steps=state.trail,
            store=SharedContextStore.from_snapshot(state.shared_context),
            run_id=run_id,
            is_cancelled=self.is_cancelled,
            max_steps=self.options.context_max_steps,
            self_fix=levels.self_fix,
        )
        handler = self.handler or self.registry.resolve(DAG(((node_id,),)))[node_id]

        # Set once the node's own outcome is recorded; later failures come from its sub-DAG.
        recorded = False
        try:
            result = await levels.invoke(handler, node_id, state.input, ctx)
            if isinstance(result, DelegationResult):
                output = result.outcome
                ctx.record(node_id, output)
                recorded = True
                await levels.delegate(node_id, result, state.input, ctx, depth=0)
            else:
                output = result
                ctx.record(node_id, output)
                recorded = True
        except WaitingForUser as exc:
            trail = list(ctx.steps)
            self.store.complete_event(
                event,
                changes={
                    "status": RunStatus.WAITING_FOR_USER,
                    "waiting_at_node_id": node_id,
                    "current_node_id": node_id,
                    "position": position,
                    "shared_context": ctx.store.snapshot(),
                    "trail": trail,
                },
            )
            logger.info("Run waiting for user", extra={"run_id": run_id, "node_id": node_id})
            raise WaitingForUser(trail, str(exc), question=exc.question) from exc
        except RunCancelled:
            raise
        except Exception as exc:
            if not recorded:
                ctx.record(node_id, error=str(exc) or type(exc).__name__)
            self.store.patch_state(run_id, trail=list(ctx.steps))
            logger.exception("Step failed", extra={"run_id": run_id, "node_id": node_id})
            raise

        ctx.store.set(output_key(node_id), output)
        self.store.complete_event(
            event,
            changes={
                "status": RunStatus.RUNNING,
                "current_node_id": node_id,
                "position": position,
                "shared_context": ctx.store.snapshot(),
                "trail": list(ctx.steps),
            },
            follow_ups=[
                (EventType.NODE_COMPLETED, _node_payload(node_id, position, output=output)),
            ],
        )
        return _Outcome.CONTINUE

    def _node_completed(self, event: ExecutionEvent, policy: EdgeResolutionPolicy) -> _Outcome:
        run_id = event.run_id
        state = self.store.get_state(run_id)
        if state is None or state.is_terminal:
            self.store.complete_event(event)
            return _Outcome.COMPLETED

        node_id = str(event.payload_value("node_id", ""))
        resolution = policy.resolve(
            node_id,
            event.payload_value("output"),
            state.round,
            position=_payload_position(event),
        )
        if resolution.completed:
            self.store.complete_event(
                event, changes={"status": RunStatus.COMPLETED, "round": resolution.next_round}
            )
            logger.info("Run completed", extra={"run_id": run_id, "round": resolution.next_round})
            return _Outcome.COMPLETED

        if resolution.next_node_id is None:
            self.store.complete_event(event)
            return _Outcome.CONTINUE

        self.store.complete_event(
            event,
            changes={
                "current_node_id": resolution.next_node_id,
                "position": resolution.next_position,
                "round": resolution.next_round,
                "trail": _mark_sent_to(state.trail, node_id, resolution.next_node_id),
            },
            follow_ups=[
                (
                    EventType.NODE_REQUESTED,
                    _node_payload(resolution.next_node_id, resolution.next_position),
                ),
            ],
        )
        return _Outcome.CONTINUE

    def _user_responded(self, event: ExecutionEvent, policy: EdgeResolutionPolicy) -> _Outcome:
        run_id = event.run_id
        state = self.store.get_state(run_id)
        if state is None or state.waiting_at_node_id is None:
            self.store.complete_event(event)
            return _Outcome.COMPLETED

        content = str(event.payload_value("content", ""))
        waiting_node_id = state.waiting_at_node_id
        shared = SharedContextStore.from_snapshot(state.shared_context)
        shared.set(USER_RESPONSE_KEY, content)
        shared.set(output_key(waiting_node_id), content)

        resolution = policy.resolve(
            waiting_node_id, content, state.round, position=state.position
        )
        trail = [
            *state.trail,
            StepRecord(
                step_id=waiting_node_id,
                outcome=content,
                is_user_reply=True,
                sent_to=resolution.next_node_id,
            ),
        ]
        follow_ups: list[FollowUp] = []
        if resolution.next_node_id is not None:
            follow_ups.append(
                (
                    EventType.NODE_REQUESTED,
                    _node_payload(resolution.next_node_id, resolution.next_position),
                )
            )
        self.store.complete_event(
            event,
            changes={
                "status": RunStatus.RUNNING,
                "waiting_at_node_id": None,
                "current_node_id": waiting_node_id,
                "round": resolution.next_round,
                "shared_context": shared.snapshot(),
                "trail": trail,
            },
            follow_ups=follow_ups,
        )
        logger.info(
            "User reply applied",
            extra={"run_id": run_id, "node_id": waiting_node_id, "next": resolution.next_node_id},
        )
        return _Outcome.CONTINUE


def _node_payload(node_id: str, position: int | None, **extra: Any) -> dict[str, Any]:
    payload: dict[str, Any] = {"node_id": node_id, **extra}
    if position is not None:
        payload["position"] = position
    return payload


def _payload_position(event: ExecutionEvent) -> int | None:
    value = event.payload_value("position")
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    return None


def _mark_sent_to(trail: list[StepRecord], node_id: str, next_node_id: str) -> list[StepRecord]:
    updated = [entry.model_copy() for entry in trail]
    for entry in reversed(updated):
        if entry.step_id == node_id and entry.error is None:
            entry.sent_to = next_node_id
            break
    return updated
