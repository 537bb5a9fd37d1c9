"""Resumable DAG Engine.

Level-parallel, event-sourced execution of step graphs:
- DAG building from priority-ordered step lists with parallel groups
- one-shot level execution with bounded delegation
- durable, resumable execution driven by a persisted event queue
"""

__version__ = "0.1.0"

from dag_engine.engine.config import EngineSettings, RunOptions
from dag_engine.engine.dag import DAG, ParallelGroup, build_dag
from dag_engine.engine.errors import EngineError, RunCancelled, WaitingForUser
from dag_engine.engine.level_executor import DelegationResult, StepRegistry, run, run_from_dag

__all__ = [
    "__version__",
    "DAG",
    "DelegationResult",
    "EngineError",
    "EngineSettings",
    "ParallelGroup",
    "RunCancelled",
    "RunOptions",
    "StepRegistry",
    "WaitingForUser",
    "build_dag",
    "run",
    "run_from_dag",
]
