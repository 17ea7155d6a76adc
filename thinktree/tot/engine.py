from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from thinktree.agents.types import AgentContext
from thinktree.config.load_config import validate_max_depth
from thinktree.deliberation.pipeline import DeliberationPipeline
from thinktree.deliberation.types import Blueprint
from thinktree.personas.prompts import PromptSet

from .aggregator import Aggregator
from .decomposer import DecompositionAnalyzer
from .node import AggregatedResult, ChildSolution, DecompositionResult, LeafResult, Node, NodeResult, NodeStatus
from .state import TreeState, TreeStateStore, TreeStatus


logger = logging.getLogger(__name__)

ROOT_TITLE = "Root Problem"
DECOMPOSED_ROOT_TITLE = "Decomposed Problem"
MIN_CHILDREN = 2


def failed_child_marker(error: str | None) -> str:
    return f"[Sub-problem failed: {error or 'unknown error'}]"


@dataclass(frozen=True)
class TreeRunResult:
    prompt: str
    state: TreeState

    @property
    def failed(self) -> bool:
        return self.state.status is TreeStatus.FAILED


class TreeEngine:
    """Recursive decompose -> (recurse | deliberate) -> aggregate over one query.

    One engine instance drives one session. All node writes go through the
    session's TreeStateStore, so observers see a totally ordered sequence of
    immutable snapshots.
    """

    def __init__(
        self,
        ctx: AgentContext,
        prompts: PromptSet,
        *,
        max_depth: int | None = None,
        force_decomposition: bool | None = None,
    ) -> None:
        engine_cfg = ctx.config.engine
        self._ctx = ctx
        self._prompts = prompts
        self._max_depth = validate_max_depth(max_depth, key="max_depth") if max_depth is not None else engine_cfg.max_depth
        self._force = engine_cfg.force_root_decomposition if force_decomposition is None else bool(force_decomposition)
        self._analyzer = DecompositionAnalyzer(ctx, prompts)
        self._aggregator = Aggregator(ctx, prompts)
        self._store: TreeStateStore | None = None

    @property
    def max_depth(self) -> int:
        return self._max_depth

    @property
    def store(self) -> TreeStateStore:
        if self._store is None:
            raise RuntimeError("TreeEngine.run() has not been called.")
        return self._store

    async def run(self, query: str) -> TreeRunResult:
        root = Node.create(query, ROOT_TITLE, parent_id=None, depth=0)
        self._store = TreeStateStore(
            TreeState.start(root, max_depth=self._max_depth, force_decomposition=self._force),
            observer=self._ctx.on_tree_update,
        )
        self._store.publish()
        self._ctx.trace("tree_started", {"root_id": root.id, "max_depth": self._max_depth, "force": self._force})

        try:
            await self.process_node(root.id)
        except Exception as e:
            logger.exception("Tree session crashed outside a node boundary")
            return self._fail_session(query, str(e))

        root_node = self.store.state.root
        if root_node.status is not NodeStatus.COMPLETE:
            return self._fail_session(query, root_node.error or "root did not complete")

        solution = root_node.solution or query
        state = self.store.apply(lambda s: s.finish(TreeStatus.COMPLETE, solution))
        self._ctx.trace("tree_complete", {"root_id": root.id, "nodes": len(state.node_order)})
        return TreeRunResult(prompt=self._prompts.final(query, solution), state=state)

    def _fail_session(self, query: str, error: str) -> TreeRunResult:
        self._ctx.trace("session_failed", {"error": error})
        state = self.store.apply(lambda s: s.finish(TreeStatus.FAILED))
        return TreeRunResult(prompt=query, state=state)

    async def process_node(self, node_id: str) -> None:
        """Drive one node to a terminal status. Never raises for node-level failures."""
        node = self.store.state.node(node_id)
        force = self._force and node.is_root

        self._set_status(node_id, NodeStatus.DECOMPOSING)
        try:
            # max_depth - 1 keeps the deepest level for leaf execution.
            decision = await self._analyzer.decide(node.query, node.depth, self._max_depth - 1, force)
        except Exception as e:
            self._fail_node(node_id, "decomposing", e)
            return

        if self._admissible(node, decision):
            await self._expand(node, decision)
        else:
            await self._execute_leaf(node)

    def _admissible(self, node: Node, decision: DecompositionResult) -> bool:
        return (
            node.depth < self._max_depth - 1
            and decision.should_decompose
            and len(decision.sub_problems) >= MIN_CHILDREN
        )

    async def _expand(self, node: Node, decision: DecompositionResult) -> None:
        children = [
            Node.create(sp.query, sp.title, parent_id=node.id, depth=node.depth + 1) for sp in decision.sub_problems
        ]
        title = DECOMPOSED_ROOT_TITLE if node.title == ROOT_TITLE else node.title
        try:
            self.store.apply(lambda s: s.with_children(node.id, children).with_node(node.id, title=title))
        except Exception as e:
            self._fail_node(node.id, "decomposing", e)
            return
        self._ctx.trace(
            "node_decomposed",
            {"node_id": node.id, "depth": node.depth, "children": [c.id for c in children]},
        )

        await asyncio.gather(*(self.process_node(c.id) for c in children))

        self._set_status(node.id, NodeStatus.AGGREGATING)
        try:
            solutions = [
                ChildSolution(query=c.query, solution=self._child_solution(c))
                for c in self.store.state.children_of(node.id)
            ]
            aggregation = await self._aggregator.combine(node.query, solutions)
        except Exception as e:
            self._fail_node(node.id, "aggregating", e)
            return

        self._complete_node(
            node.id,
            AggregatedResult(
                aggregated_solution=aggregation.aggregated_solution,
                child_summaries=aggregation.child_contributions,
            ),
        )

    @staticmethod
    def _child_solution(child: Node) -> str:
        if child.status is NodeStatus.FAILED:
            return failed_child_marker(child.error)
        return child.solution

    async def _execute_leaf(self, node: Node) -> None:
        self._set_status(node.id, NodeStatus.EXECUTING)
        pipeline = DeliberationPipeline(
            self._ctx.without_thinking_updates(),
            self._prompts,
            strategy_cap=self._ctx.config.engine.leaf_strategy_cap,
        )
        try:
            outcome = await pipeline.run(node.query)
        except Exception as e:
            self._fail_node(node.id, "executing", e)
            return

        blueprint = outcome.blueprint or Blueprint(
            blueprint=outcome.final_prompt,
            objective=node.query,
            tone="professional",
        )
        self._complete_node(node.id, LeafResult(blueprint=blueprint, trace=outcome.trace))

    def _set_status(self, node_id: str, status: NodeStatus) -> None:
        self.store.apply(lambda s: s.with_node(node_id, status=status))

    def _complete_node(self, node_id: str, result: NodeResult) -> None:
        self.store.apply(
            lambda s: s.with_node(node_id, status=NodeStatus.COMPLETE, result=result, completed_at=time.time())
        )

    def _fail_node(self, node_id: str, phase: str, exc: BaseException) -> None:
        error = str(exc) or type(exc).__name__
        self._ctx.trace("node_failed", {"node_id": node_id, "phase": phase, "error": error})
        self.store.apply(
            lambda s: s.with_node(node_id, status=NodeStatus.FAILED, error=error, completed_at=time.time())
        )
