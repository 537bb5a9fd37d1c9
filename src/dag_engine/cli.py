"""CLI entrypoint for inspecting and steering durable runs.

Step handlers live in the host application, so the CLI never executes steps. It
builds DAGs, shows what the SQLite store holds for a run, and enqueues replies
that the host's next `start_or_resume` call will apply.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from dag_engine import __version__
from dag_engine.engine.config import EngineSettings
from dag_engine.engine.dag import build_dag, parse_steps
from dag_engine.engine.level_executor import StepRegistry
from dag_engine.engine.logging import configure_logging
from dag_engine.engine.workflow.executor import EventDrivenExecutor
from dag_engine.engine.workflow.store import SqliteExecutionStore

logger = logging.getLogger(__name__)


def _parse_ids(value: str | None) -> list[str]:
    if value is None:
        return []
    parts = [p.strip() for p in value.split(",")]
    return [p for p in parts if p]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dag-engine",
        description="Resumable, level-parallel DAG execution engine",
    )
    parser.add_argument(
        "--version", action="version", version=f"resumable-dag-engine {__version__}"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    build = subparsers.add_parser("build-dag", help="Print the levels of a JSON step list")
    build.add_argument(
        "--steps",
        required=True,
        help='JSON step list, e.g. \'["a", {"parallel": ["b", "c"]}]\'',
    )
    build.add_argument(
        "--known",
        default=None,
        help="Comma-separated known step ids (defaults to every id in the list)",
    )

    show = subparsers.add_parser("show-run", help="Print persisted state and events of a run")
    show.add_argument("--run-id", required=True, help="Run identifier")
    show.add_argument(
        "--db",
        type=Path,
        default=None,
        help="SQLite store path (defaults to DAG_ENGINE_STORE_PATH)",
    )

    respond = subparsers.add_parser("respond", help="Enqueue a user reply for a paused run")
    respond.add_argument("--run-id", required=True, help="Run identifier")
    respond.add_argument("--content", required=True, help="Reply text")
    respond.add_argument(
        "--db",
        type=Path,
        default=None,
        help="SQLite store path (defaults to DAG_ENGINE_STORE_PATH)",
    )

    return parser


def _build_dag(args: argparse.Namespace) -> int:
    raw = json.loads(args.steps)
    if not isinstance(raw, list):
        raise ValueError("--steps must be a JSON list")
    steps = parse_steps(raw)
    known = _parse_ids(args.known)
    if args.known is None:
        for step in steps:
            known.extend(step.ids if not isinstance(step, str) else [step])
    dag = build_dag(steps, known)
    print(json.dumps(dag.to_json()))
    return 0


def _show_run(args: argparse.Namespace, settings: EngineSettings) -> int:
    store = SqliteExecutionStore(args.db or settings.store_path)
    state = store.get_state(args.run_id)
    if state is None:
        print(f"Run not found: {args.run_id}", file=sys.stderr)
        return 1
    events = store.list_events(args.run_id)
    print(
        json.dumps(
            {
                "state": state.model_dump(mode="json"),
                "events": [event.model_dump(mode="json") for event in events],
            },
            indent=2,
            ensure_ascii=False,
        )
    )
    return 0


def _respond(args: argparse.Namespace, settings: EngineSettings) -> int:
    store = SqliteExecutionStore(args.db or settings.store_path)
    executor = EventDrivenExecutor(store, StepRegistry())
    content = args.content.strip()
    if not content:
        print("Reply must not be empty", file=sys.stderr)
        return 2
    event_id = executor.respond(args.run_id, content)
    if event_id is None:
        print(f"Run {args.run_id} is not waiting for a reply", file=sys.stderr)
        return 1
    print(event_id)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = EngineSettings()
    except ValidationError as e:
        print("Configuration error:\n" + str(e), file=sys.stderr)
        return 2

    # Logs go to stderr so command output on stdout stays machine-readable.
    configure_logging(settings.log_level, stream=sys.stderr)

    try:
        if args.command == "build-dag":
            return _build_dag(args)
        if args.command == "show-run":
            return _show_run(args, settings)
        if args.command == "respond":
            return _respond(args, settings)
    except Exception:
        logger.exception("Command failed", extra={"command": args.command})
        return 1

    parser.error(f"Unknown command: {args.command}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
