from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping

from .node import Node


logger = logging.getLogger(__name__)


class TreeStatus(Enum):
    RUNNING = "running"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class TreeState:
    """Immutable snapshot of one reasoning session.

    The tree is an id-keyed map plus id lists: nodes reference parents and
    children by id only, so a snapshot is a shallow copy of one dict.
    """

    root_id: str
    nodes: Mapping[str, Node]
    node_order: tuple[str, ...]
    max_depth: int
    force_decomposition: bool = False
    status: TreeStatus = TreeStatus.RUNNING
    final_result: str | None = None

    @classmethod
    def start(cls, root: Node, *, max_depth: int, force_decomposition: bool) -> "TreeState":
        return cls(
            root_id=root.id,
            nodes=MappingProxyType({root.id: root}),
            node_order=(root.id,),
            max_depth=max_depth,
            force_decomposition=force_decomposition,
        )

    @property
    def root(self) -> Node:
        return self.nodes[self.root_id]

    def node(self, node_id: str) -> Node:
        return self.nodes[node_id]

    def children_of(self, node_id: str) -> list[Node]:
        return [self.nodes[cid] for cid in self.nodes[node_id].children]

    def iter_nodes(self) -> Iterable[Node]:
        for nid in self.node_order:
            yield self.nodes[nid]

    def with_node(self, node_id: str, **changes: Any) -> "TreeState":
        nodes = dict(self.nodes)
        nodes[node_id] = nodes[node_id].evolve(**changes)
        return replace(self, nodes=MappingProxyType(nodes))

    def with_children(self, parent_id: str, children: Iterable[Node]) -> "TreeState":
        nodes = dict(self.nodes)
        child_ids: list[str] = []
        for child in children:
            if child.id in nodes:
                raise ValueError(f"Duplicate node id: {child.id}")
            nodes[child.id] = child
            child_ids.append(child.id)
        nodes[parent_id] = nodes[parent_id].evolve(children=tuple(child_ids))
        return replace(
            self,
            nodes=MappingProxyType(nodes),
            node_order=self.node_order + tuple(child_ids),
        )

    def finish(self, status: TreeStatus, final_result: str | None = None) -> "TreeState":
        return replace(self, status=status, final_result=final_result)

    def to_dict(self) -> dict[str, Any]:
        return {
            "root_id": self.root_id,
            "nodes": {nid: self.nodes[nid].to_dict() for nid in self.node_order},
            "node_order": list(self.node_order),
            "max_depth": self.max_depth,
            "force_decomposition": self.force_decomposition,
            "status": self.status.value,
            "final_result": self.final_result,
        }


TreeObserver = Callable[[TreeState], None]


class TreeStateStore:
    """Single owner of the current TreeState.

    Every write goes through `apply`, which swaps in a new snapshot and
    publishes it. Writers never hold a reference across an await, so the
    sequence of published snapshots is totally ordered.
    """

    def __init__(self, initial: TreeState, observer: TreeObserver | None = None) -> None:
        self._state = initial
        self._observer = observer

    @property
    def state(self) -> TreeState:
        return self._state

    def apply(self, update: Callable[[TreeState], TreeState]) -> TreeState:
        self._state = update(self._state)
        self.publish()
        return self._state

    def publish(self) -> None:
        if self._observer is None:
            return
        try:
            self._observer(self._state)
        except Exception:
            # Observers render progress; a broken renderer must not fail the session.
            logger.exception("Tree state observer raised")
