from __future__ import annotations

import logging
from typing import Any

from thinktree.agents.types import AgentContext
from thinktree.personas.prompts import PromptSet
from thinktree.utils.json_extract import JSONExtractionError, as_str, decode_or_default, extract_first_json_object

from .node import DecompositionResult, SubProblem


logger = logging.getLogger(__name__)

MIN_SUB_PROBLEMS = 2


def default_decomposition() -> DecompositionResult:
    return DecompositionResult(
        should_decompose=False,
        reasoning="Decomposition analysis failed, defaulting to direct execution.",
    )


def _first(obj: dict[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in obj:
            return obj[k]
    return None


def _parse_sub_problems(raw: Any) -> tuple[SubProblem, ...]:
    if not isinstance(raw, list):
        return ()
    out: list[SubProblem] = []
    for item in raw:
        if not isinstance(item, dict):
            continue
        sp_id, title, query = item.get("id"), item.get("title"), item.get("query")
        if not (isinstance(sp_id, str) and isinstance(title, str) and isinstance(query, str)):
            continue
        if not query.strip():
            continue
        dep = item.get("dependency")
        out.append(
            SubProblem(
                id=sp_id,
                title=title,
                query=query,
                dependency=dep if isinstance(dep, str) and dep else None,
            )
        )
    return tuple(out)


def parse_decomposition(text: str) -> DecompositionResult:
    obj = extract_first_json_object(text)
    decision = _first(obj, "should_decompose", "shouldDecompose")
    if not isinstance(decision, bool):
        raise JSONExtractionError("Missing boolean 'should_decompose' in decomposition response.")

    reasoning = as_str(obj.get("reasoning")) or "No reasoning provided"
    sub_problems = _parse_sub_problems(_first(obj, "sub_problems", "subProblems")) if decision else ()

    if decision and len(sub_problems) < MIN_SUB_PROBLEMS:
        logger.warning("Decomposition requested with %d sub-problem(s); cancelling", len(sub_problems))
        return DecompositionResult(
            should_decompose=False,
            reasoning="Decomposition cancelled: insufficient sub-problems extracted.",
        )
    return DecompositionResult(should_decompose=decision, reasoning=reasoning, sub_problems=sub_problems)


class DecompositionAnalyzer:
    def __init__(self, ctx: AgentContext, prompts: PromptSet) -> None:
        self._ctx = ctx
        self._prompts = prompts

    async def decide(self, query: str, depth: int, max_depth: int, force: bool) -> DecompositionResult:
        """Decide whether `query` should be split.

        Never issues a request once `depth >= max_depth`. Malformed output collapses
        to "do not decompose"; completion errors propagate to the caller.
        """
        if depth >= max_depth:
            return DecompositionResult(
                should_decompose=False,
                reasoning=f"Max depth ({max_depth}) reached. Executing as leaf node.",
            )

        text = await self._ctx.complete(
            self._prompts.decomposition(query, depth, max_depth, force),
            phase="decomposition",
        )
        result = decode_or_default(text, parse_decomposition, default_decomposition, site="decomposition")
        self._ctx.trace(
            "decomposition_decided",
            {
                "depth": depth,
                "max_depth": max_depth,
                "force": force,
                "should_decompose": result.should_decompose,
                "sub_problems": len(result.sub_problems),
            },
        )
        return result
