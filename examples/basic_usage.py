#!/usr/bin/env python3
"""Programmatic durable-run example.

This demonstrates using the engine components directly:

* load settings from `.env`
* run a three-step plan whose middle step pauses for the user
* resume the run from the SQLite store with a reply

The reply is passed as an argument; run the script twice to see the pause and
the resume.
"""

from __future__ import annotations

import argparse
import asyncio
from typing import Any, Sequence

from dag_engine.engine.config import EngineSettings
from dag_engine.engine.context import RunContext, output_key
from dag_engine.engine.dag import ParallelGroup
from dag_engine.engine.errors import WaitingForUser
from dag_engine.engine.level_executor import StepRegistry
from dag_engine.engine.logging import configure_logging
from dag_engine.engine.workflow.executor import EventDrivenExecutor
from dag_engine.engine.workflow.store import SqliteExecutionStore


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run or resume a durable plan (example).")
    parser.add_argument("--run-id", default="example-run", help="Run identifier")
    parser.add_argument("--reply", default=None, help="Reply for a paused run (optional)")
    return parser.parse_args(argv)


async def research(step_id: str, step_input: Any, ctx: RunContext) -> str:
    return f"notes on {step_input}"


async def outline(step_id: str, step_input: Any, ctx: RunContext) -> str:
    return f"outline of {step_input}"


async def review(step_id: str, step_input: Any, ctx: RunContext) -> str:
    notes = ctx.store.get(output_key("research"))
    raise WaitingForUser(question=f"Publish a draft based on {notes!r}?")


async def publish(step_id: str, step_input: Any, ctx: RunContext) -> str:
    return f"published ({ctx.store.get('__user_response')})"


def _registry() -> StepRegistry:
    return StepRegistry(
        {"research": research, "outline": outline, "review": review, "publish": publish},
        top_level_ids=["research"],
    )


async def _run(run_id: str, reply: str | None) -> int:
    settings = EngineSettings()
    configure_logging(settings.log_level)

    executor = EventDrivenExecutor(
        SqliteExecutionStore(settings.store_path),
        _registry(),
        options=settings.run_options(),
    )
    steps = [ParallelGroup(("research", "outline")), "review", "publish"]

    try:
        result = await executor.start_or_resume(
            run_id, steps, initial_input="durable execution", user_response=reply
        )
    except WaitingForUser as exc:
        print(f"Paused: {exc.question}")
        print(f"Resume with: --run-id {run_id} --reply yes")
        return 0

    print(f"Status: {result.status.value if result.status else 'not started'}")
    print(f"Output: {result.output}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)
    return asyncio.run(_run(args.run_id, args.reply))


if __name__ == "__main__":
    raise SystemExit(main())
