"""One-shot, level-by-level DAG execution with bounded delegation.

Steps of one level are dispatched together with ``asyncio.gather``; the next
level starts only when every step of the current one has finished. Results of a
level are recorded in declaration order once the whole level is done, and a
step's delegation (a nested sub-DAG) runs before the next step of the level is
recorded. `summary` is the last recorded outcome, which for a parallel level is
the last *declared* step of that level, not the one that finished last.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, TypeAlias

from dag_engine.engine.cancellation import SelfFixPolicy, raise_if_cancelled
from dag_engine.engine.config import RunOptions
from dag_engine.engine.context import CancellationCheck, RunContext
from dag_engine.engine.dag import DAG, StepId, StepSpec, build_dag
from dag_engine.engine.errors import RunCancelled, WaitingForUser

logger = logging.getLogger(__name__)

NO_STEPS_RUN = "No steps run."
NO_SPECIALISTS_AVAILABLE = "No specialists available."

StepHandler: TypeAlias = Callable[[StepId, Any, RunContext], Awaitable[Any] | Any]


class _SameInput:
    def __repr__(self) -> str:
        return "SAME_INPUT"


SAME_INPUT: Any = _SameInput()


@dataclass(frozen=True, slots=True)
class DelegationResult:
    """Handler result that asks for a sub-DAG to run before the parent continues."""

    outcome: Any
    delegate_steps: Sequence[StepSpec] = ()
    delegate_input: Any = SAME_INPUT


@dataclass(frozen=True, slots=True)
class RunOutcome:
    summary: Any
    context: RunContext


class StepRegistry:
    """Known step ids, their handlers, and the fallback entry points.

    Handlers are optional: a registry can also just declare which ids exist
    when the caller passes a single dispatching handler to the executor.
    """

    def __init__(
        self,
        handlers: Mapping[StepId, StepHandler] | None = None,
        *,
        ids: Iterable[StepId] = (),
        top_level_ids: Sequence[StepId] = (),
    ) -> None:
        self._handlers: dict[StepId, StepHandler] = dict(handlers or {})
        self._ids: dict[StepId, None] = dict.fromkeys([*ids, *self._handlers])
        self.top_level_ids: list[StepId] = list(top_level_ids)

    @property
    def known_ids(self) -> frozenset[StepId]:
        return frozenset(self._ids)

    def register(self, step_id: StepId, handler: StepHandler) -> None:
        self._handlers[step_id] = handler
        self._ids.setdefault(step_id, None)

    def resolve(self, dag: DAG) -> dict[StepId, StepHandler]:
        """Look up the handler of every step of a DAG.

        Raises:
            KeyError: if a step id is known but has no handler.
        """

        resolved: dict[StepId, StepHandler] = {}
        for step_id in dag.step_ids():
            handler = self._handlers.get(step_id)
            if handler is None:
                raise KeyError(f"No handler registered for step {step_id!r}")
            resolved[step_id] = handler
        return resolved


async def _call(handler: StepHandler, step_id: StepId, step_input: Any, ctx: RunContext) -> Any:
    result = handler(step_id, step_input, ctx)
    if inspect.isawaitable(result):
        result = await result
    return result


class LevelExecutor:
    """Runs DAG levels against a handler (or a registry of handlers)."""

    def __init__(
        self,
        registry: StepRegistry,
        handler: StepHandler | None = None,
        options: RunOptions | None = None,
        *,
        is_cancelled: CancellationCheck | None = None,
        run_id: str | None = None,
    ) -> None:
        self.registry = registry
        self.handler = handler
        self.options = options or RunOptions()
        self.is_cancelled = is_cancelled
        self.run_id = run_id
        self.self_fix = SelfFixPolicy(self.options.max_self_fix_retries)

    def new_context(self) -> RunContext:
        return RunContext(
            run_id=self.run_id,
            is_cancelled=self.is_cancelled,
            max_steps=self.options.context_max_steps,
            self_fix=self.self_fix,
        )

    def _handlers_for(self, dag: DAG) -> Callable[[StepId], StepHandler]:
        if self.handler is not None:
            handler = self.handler
            return lambda _step_id: handler
        return self.registry.resolve(dag).__getitem__

    async def invoke(
        self, handler: StepHandler, step_id: StepId, step_input: Any, ctx: RunContext
    ) -> Any:
        return await _call(handler, step_id, step_input, ctx)

    async def execute(
        self, dag: DAG, step_input: Any, ctx: RunContext, *, depth: int = 0
    ) -> list[Any]:
        """Run every level of `dag`; return outcomes in recording order."""

        handler_for = self._handlers_for(dag)
        outcomes: list[Any] = []
        for level_index, level in enumerate(dag.levels):
            await raise_if_cancelled(self.is_cancelled, self.run_id)
            logger.info(
                "DAG level",
                extra={
                    "run_id": self.run_id,
                    "level_index": level_index,
                    "step_ids": list(level),
                    "depth": depth,
                },
            )
            results = await asyncio.gather(
                *(self.invoke(handler_for(step_id), step_id, step_input, ctx) for step_id in level),
                return_exceptions=True,
            )
            self._raise_level_failure(level, results, ctx)
            for step_id, result in zip(level, results):
                await self._record(step_id, result, step_input, ctx, depth, outcomes)
        return outcomes

    def _raise_level_failure(
        self, level: Sequence[StepId], results: list[Any], ctx: RunContext
    ) -> None:
        failure: Exception | None = None
        for result in results:
            if isinstance(result, BaseException) and not isinstance(result, Exception):
                raise result
            if isinstance(result, Exception) and failure is None:
                failure = result
        if failure is None:
            return

        for step_id, result in zip(level, results):
            if isinstance(result, (WaitingForUser, RunCancelled)):
                continue
            if isinstance(result, Exception):
                ctx.record(step_id, error=str(result) or type(result).__name__)
            elif isinstance(result, DelegationResult):
                ctx.record(step_id, result.outcome)
            else:
                ctx.record(step_id, result)

        if isinstance(failure, (WaitingForUser, RunCancelled)):
            if isinstance(failure, WaitingForUser) and not failure.trail:
                failure.trail = list(ctx.steps)
            raise failure
        logger.warning(
            "Step failed",
            extra={"run_id": self.run_id, "step_ids": list(level), "error": repr(failure)},
        )
        raise failure

    async def _record(
        self,
        step_id: StepId,
        result: Any,
        step_input: Any,
        ctx: RunContext,
        depth: int,
        outcomes: list[Any],
    ) -> None:
        if not isinstance(result, DelegationResult):
            ctx.record(step_id, result)
            outcomes.append(result)
            return

        ctx.record(step_id, result.outcome)
        outcomes.append(result.outcome)
        sub_outcomes = await self.delegate(step_id, result, step_input, ctx, depth=depth)
        outcomes.extend(sub_outcomes[-1:])

    async def delegate(
        self,
        step_id: StepId,
        result: DelegationResult,
        step_input: Any,
        ctx: RunContext,
        *,
        depth: int,
    ) -> list[Any]:
        """Run the sub-DAG a step asked for; return its outcomes (empty if skipped).

        `depth` is the nesting depth of the delegating step (0 = top level).
        """

        if depth >= self.options.depth_limit:
            logger.info(
                "Delegation ignored: depth limit reached",
                extra={"run_id": self.run_id, "step_id": step_id, "depth": depth},
            )
            return []
        sub_dag = build_dag(result.delegate_steps, self.registry.known_ids)
        if sub_dag.is_empty:
            return []
        logger.info(
            "Delegating to sub-DAG",
            extra={
                "run_id": self.run_id,
                "step_id": step_id,
                "levels": sub_dag.to_json()["levels"],
                "depth": depth + 1,
            },
        )
        sub_input = step_input if result.delegate_input is SAME_INPUT else result.delegate_input
        return await self.execute(sub_dag, sub_input, ctx, depth=depth + 1)


async def run_from_dag(
    dag: DAG,
    initial_input: Any,
    handler: StepHandler | None,
    registry: StepRegistry,
    options: RunOptions | None = None,
    *,
    is_cancelled: CancellationCheck | None = None,
    run_id: str | None = None,
) -> RunOutcome:
    """Run a pre-built DAG once, without persistence."""

    executor = LevelExecutor(registry, handler, options, is_cancelled=is_cancelled, run_id=run_id)
    ctx = executor.new_context()
    outcomes = await executor.execute(dag, initial_input, ctx)
    summary = outcomes[-1] if outcomes else NO_STEPS_RUN
    return RunOutcome(summary=summary, context=ctx)


async def run(
    steps: Sequence[StepSpec],
    initial_input: Any,
    handler: StepHandler | None,
    registry: StepRegistry,
    options: RunOptions | None = None,
    *,
    is_cancelled: CancellationCheck | None = None,
    run_id: str | None = None,
    default_ids: Sequence[StepId] | None = None,
) -> RunOutcome:
    """Build a DAG from `steps` and run it once.

    An empty DAG falls back to a single call of the first default id
    (`default_ids`, else the registry's top-level ids). With no fallback the
    sentinel summary ``"No specialists available."`` is returned.
    """

    dag = build_dag(steps, registry.known_ids)
    if not dag.is_empty:
        return await run_from_dag(
            dag,
            initial_input,
            handler,
            registry,
            options,
            is_cancelled=is_cancelled,
            run_id=run_id,
        )

    executor = LevelExecutor(registry, handler, options, is_cancelled=is_cancelled, run_id=run_id)
    ctx = executor.new_context()
    candidates = list(default_ids) if default_ids is not None else registry.top_level_ids
    if not candidates:
        logger.info("No steps available", extra={"run_id": run_id})
        return RunOutcome(summary=NO_SPECIALISTS_AVAILABLE, context=ctx)

    fallback = candidates[0]
    logger.info("Empty DAG, using fallback step", extra={"run_id": run_id, "step_id": fallback})
    if handler is not None:
        fallback_handler = handler
    else:
        fallback_handler = registry.resolve(DAG(((fallback,),)))[fallback]
    try:
        result = await executor.invoke(fallback_handler, fallback, initial_input, ctx)
    except (WaitingForUser, RunCancelled):
        raise
    except Exception as exc:
        ctx.record(fallback, error=str(exc) or type(exc).__name__)
        raise
    outcome = result.outcome if isinstance(result, DelegationResult) else result
    ctx.record(fallback, outcome)
    return RunOutcome(summary=outcome, context=ctx)
