from __future__ import annotations

from typing import Sequence

from thinktree.agents.types import AgentContext
from thinktree.personas.prompts import PromptSet
from thinktree.utils.json_extract import JSONExtractionError, as_str_list, decode_or_default, extract_first_json_object

from .node import AggregationResult, ChildSolution


def fallback_aggregation(children: Sequence[ChildSolution]) -> AggregationResult:
    """Concatenate every child under a "Part N" heading; never empty for a non-empty input."""
    blocks = [
        f"## Part {i}: {c.query}\n\n{c.solution or '(no solution)'}" for i, c in enumerate(children, start=1)
    ]
    return AggregationResult(
        aggregated_solution="\n\n---\n\n".join(blocks),
        child_contributions=tuple(f"Part {i}: {c.query}" for i, c in enumerate(children, start=1)),
    )


def parse_aggregation(text: str, n_children: int) -> AggregationResult:
    obj = extract_first_json_object(text)
    solution = obj.get("aggregated_solution", obj.get("aggregatedSolution"))
    if not isinstance(solution, str) or not solution.strip():
        raise JSONExtractionError("Missing 'aggregated_solution' in aggregation response.")
    raw = obj.get("child_contributions", obj.get("childContributions"))
    if isinstance(raw, list):
        contributions = tuple(as_str_list(raw))
    else:
        contributions = tuple(f"Child {i} contribution" for i in range(1, n_children + 1))
    return AggregationResult(aggregated_solution=solution, child_contributions=contributions)


class Aggregator:
    def __init__(self, ctx: AgentContext, prompts: PromptSet) -> None:
        self._ctx = ctx
        self._prompts = prompts

    async def combine(self, parent_query: str, child_solutions: Sequence[ChildSolution]) -> AggregationResult:
        children = list(child_solutions)
        if not children:
            return AggregationResult(aggregated_solution="No child solutions to aggregate.")
        if len(children) == 1:
            only = children[0]
            return AggregationResult(
                aggregated_solution=only.solution,
                child_contributions=(f"Directly used solution from: {only.query}",),
            )

        text = await self._ctx.complete(self._prompts.aggregation(parent_query, children), phase="aggregation")
        return decode_or_default(
            text,
            lambda t: parse_aggregation(t, len(children)),
            lambda: fallback_aggregation(children),
            site="aggregation",
        )
