"""DAG building from priority-ordered step lists.

A step list mixes bare step ids (run one after another) with parallel groups
(run together). The builder turns it into an ordered tuple of levels. It is a
pure function: no I/O, no randomness, no clock. One-shot and durable runs rely
on that to agree on what a step list means.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import TypeAlias

StepId: TypeAlias = str


@dataclass(frozen=True, slots=True)
class ParallelGroup:
    """A fan-out: every id in the group runs in the same level."""

    ids: tuple[StepId, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "ids", tuple(self.ids))


StepSpec: TypeAlias = StepId | ParallelGroup


@dataclass(frozen=True, slots=True)
class DAG:
    """Ordered levels; each level is a non-empty set of step ids."""

    levels: tuple[tuple[StepId, ...], ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.levels

    def step_ids(self) -> list[StepId]:
        """All step ids, levels flattened in declaration order."""

        return [step_id for level in self.levels for step_id in level]

    def to_json(self) -> dict[str, object]:
        return {"levels": [list(level) for level in self.levels]}


def build_dag(steps: Sequence[StepSpec], known_ids: Iterable[StepId]) -> DAG:
    """Translate a step list into levels.

    Unknown ids are dropped silently; upstream planners may reference stale or
    renamed ids. A parallel group left empty after filtering emits no level.
    """

    known = known_ids if isinstance(known_ids, (set, frozenset)) else frozenset(known_ids)
    levels: list[tuple[StepId, ...]] = []
    for step in steps:
        if isinstance(step, ParallelGroup):
            kept = tuple(step_id for step_id in step.ids if step_id in known)
            if kept:
                levels.append(kept)
        elif step in known:
            levels.append((step,))
    return DAG(levels=tuple(levels))


def parse_step(raw: object) -> StepSpec:
    """Parse the JSON form of one step: ``"id"`` or ``{"parallel": ["a", "b"]}``."""

    if isinstance(raw, ParallelGroup):
        return raw
    if isinstance(raw, str):
        return raw
    if isinstance(raw, Mapping):
        ids = raw.get("parallel")
        if isinstance(ids, (list, tuple)) and all(isinstance(i, str) for i in ids):
            return ParallelGroup(ids)
    raise ValueError(f"Invalid step: {raw!r}")


def parse_steps(raw: Iterable[object]) -> list[StepSpec]:
    return [parse_step(item) for item in raw]
