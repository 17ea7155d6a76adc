from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any

from thinktree.deliberation.types import Blueprint, ExecutionStep


class NodeStatus(Enum):
    """Per-node lifecycle.

    pending -> decomposing -> executing -> complete
                           -> (children spawned) -> aggregating -> complete
    failed is reachable from decomposing, executing and aggregating.
    """

    PENDING = "pending"
    DECOMPOSING = "decomposing"
    EXECUTING = "executing"
    AGGREGATING = "aggregating"
    COMPLETE = "complete"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (NodeStatus.COMPLETE, NodeStatus.FAILED)


@dataclass(frozen=True)
class SubProblem:
    id: str
    title: str
    query: str
    # Reserved: parsed and kept, never used to order sibling execution.
    dependency: str | None = None


@dataclass(frozen=True)
class DecompositionResult:
    should_decompose: bool
    reasoning: str
    sub_problems: tuple[SubProblem, ...] = ()


@dataclass(frozen=True)
class ChildSolution:
    query: str
    solution: str


@dataclass(frozen=True)
class AggregationResult:
    aggregated_solution: str
    child_contributions: tuple[str, ...] = ()


@dataclass(frozen=True)
class LeafResult:
    blueprint: Blueprint
    trace: tuple[ExecutionStep, ...] = ()

    kind = "leaf"

    @property
    def solution(self) -> str:
        return self.blueprint.blueprint


@dataclass(frozen=True)
class AggregatedResult:
    aggregated_solution: str
    child_summaries: tuple[str, ...] = ()

    kind = "aggregated"

    @property
    def solution(self) -> str:
        return self.aggregated_solution


NodeResult = LeafResult | AggregatedResult


def new_node_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass(frozen=True)
class Node:
    id: str
    parent_id: str | None
    depth: int
    query: str
    title: str
    status: NodeStatus = NodeStatus.PENDING
    children: tuple[str, ...] = ()
    result: NodeResult | None = None
    error: str | None = None
    created_at: float = 0.0
    completed_at: float | None = None

    @classmethod
    def create(cls, query: str, title: str, *, parent_id: str | None, depth: int) -> "Node":
        return cls(
            id=new_node_id(),
            parent_id=parent_id,
            depth=depth,
            query=query,
            title=title,
            created_at=time.time(),
        )

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def solution(self) -> str:
        """Solution text of a completed node; empty when there is no usable result."""
        if self.result is None:
            return ""
        return self.result.solution

    def evolve(self, **changes: Any) -> "Node":
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] | None = None
        if self.result is not None:
            result = {"type": self.result.kind, **asdict(self.result)}
        return {
            "id": self.id,
            "parent_id": self.parent_id,
            "depth": self.depth,
            "query": self.query,
            "title": self.title,
            "status": self.status.value,
            "children": list(self.children),
            "result": result,
            "error": self.error,
            "created_at": self.created_at,
            "completed_at": self.completed_at,
        }
