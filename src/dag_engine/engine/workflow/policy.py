from __future__ import annotations

import json
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Protocol

from dag_engine.engine.dag import DAG


@dataclass(frozen=True, slots=True)
class EdgeResolution:
    """What runs after a node: the next node, or completion.

    `next_position` is the index of the next node in a positional sequence, or
    None when the policy addresses nodes by id only.
    """

    next_node_id: str | None
    next_round: int
    completed: bool
    next_position: int | None = None


class EdgeResolutionPolicy(Protocol):
    """Policy: (current node, last output, round) -> next node.

    This is intentionally small and explicit. It must NOT call LLMs: the driver
    loop re-asks it while replaying a run and expects the same answer.
    `position` is the sequence index the current node was requested at, when
    known; sequences that repeat an id need it to tell the occurrences apart.
    """

    def resolve(
        self,
        current_node_id: str,
        last_output: object,
        round: int,
        *,
        position: int | None = None,
    ) -> EdgeResolution: ...


class LinearPolicy:
    """Run nodes in the given order, then complete.

    Ids may repeat. With a `position` the walk continues from that index;
    without one it continues from the first occurrence of the id.
    """

    def __init__(self, node_ids: Iterable[str]) -> None:
        self.node_ids = list(node_ids)
        self._first_index: dict[str, int] = {}
        for idx, node_id in enumerate(self.node_ids):
            self._first_index.setdefault(node_id, idx)

    @property
    def start_node_id(self) -> str | None:
        return self.node_ids[0] if self.node_ids else None

    def _index_of(self, node_id: str, position: int | None) -> int | None:
        if position is not None and 0 <= position < len(self.node_ids):
            if self.node_ids[position] == node_id:
                return position
        return self._first_index.get(node_id)

    def resolve(
        self,
        current_node_id: str,
        last_output: object,
        round: int,
        *,
        position: int | None = None,
    ) -> EdgeResolution:
        idx = self._index_of(current_node_id, position)
        if idx is None or idx >= len(self.node_ids) - 1:
            return EdgeResolution(next_node_id=None, next_round=round, completed=True)
        return EdgeResolution(
            next_node_id=self.node_ids[idx + 1],
            next_round=round,
            completed=False,
            next_position=idx + 1,
        )


class LevelSequencePolicy(LinearPolicy):
    """Durable counterpart of a DAG: levels flattened in declaration order.

    A durable run requests one node per event, so the members of a parallel
    level run one after another here. A repeated id runs once per occurrence,
    as it does in a one-shot run.
    """

    @classmethod
    def from_dag(cls, dag: DAG) -> LevelSequencePolicy:
        return cls(dag.step_ids())


@dataclass(frozen=True, slots=True)
class EdgeCondition:
    type: str
    value: str

    def matches(self, last_output: object) -> bool:
        content = last_output if isinstance(last_output, str) else json.dumps(
            last_output if last_output is not None else "", default=str
        )
        if self.type == "message_type":
            if content == self.value:
                return True
            return isinstance(last_output, Mapping) and last_output.get("type") == self.value
        if self.type == "content_contains":
            return self.value.lower() in content.lower()
        # Unknown condition types never block an edge.
        return True


@dataclass(frozen=True, slots=True)
class Edge:
    source: str
    target: str
    condition: EdgeCondition | None = None

    @classmethod
    def from_json(cls, raw: Mapping[str, object]) -> Edge:
        source = raw.get("source", raw.get("from", ""))
        target = raw.get("target", raw.get("to", ""))
        cond_raw = raw.get("condition")
        condition = None
        if isinstance(cond_raw, Mapping):
            condition = EdgeCondition(
                type=str(cond_raw.get("type", "")), value=str(cond_raw.get("value", ""))
            )
        return cls(source=str(source or ""), target=str(target or ""), condition=condition)


class EdgeGraphPolicy:
    """Follow outgoing edges; loop back to the start node at most `max_rounds` times.

    The first outgoing edge whose condition matches wins; if none matches the
    first outgoing edge is taken. A node with no outgoing edge completes the run.
    Without any edges the graph runs linearly in node order.
    """

    def __init__(
        self,
        node_ids: Sequence[str],
        edges: Iterable[Edge | Mapping[str, object]] = (),
        *,
        max_rounds: int | None = None,
    ) -> None:
        self.node_ids = list(node_ids)
        self.edges = [e if isinstance(e, Edge) else Edge.from_json(e) for e in edges]
        self.max_rounds = max_rounds if max_rounds is not None and max_rounds > 0 else None
        self._linear = LinearPolicy(self.node_ids)

    @property
    def start_node_id(self) -> str | None:
        return self.node_ids[0] if self.node_ids else None

    def resolve(
        self,
        current_node_id: str,
        last_output: object,
        round: int,
        *,
        position: int | None = None,
    ) -> EdgeResolution:
        start = self.start_node_id
        if not self.edges or start is None:
            return self._linear.resolve(current_node_id, last_output, round, position=position)

        outgoing = [e for e in self.edges if e.source == current_node_id]
        matching = [e for e in outgoing if e.condition is None or e.condition.matches(last_output)]
        edge = matching[0] if matching else (outgoing[0] if outgoing else None)
        next_id = edge.target if edge is not None and edge.target else None

        if next_id is None:
            return EdgeResolution(next_node_id=None, next_round=round, completed=True)
        if next_id != start:
            return EdgeResolution(next_node_id=next_id, next_round=round, completed=False)

        next_round = round + 1
        if self.max_rounds is not None and next_round >= self.max_rounds:
            return EdgeResolution(next_node_id=None, next_round=next_round, completed=True)
        return EdgeResolution(next_node_id=start, next_round=next_round, completed=False)
