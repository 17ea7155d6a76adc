from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Literal

from thinktree.utils.json_extract import as_str, decode_or_default, extract_first_json_object
from thinktree.utils.template import render_template

from .types import AgentContext


Complexity = Literal["simple", "moderate", "complex"]
_COMPLEXITIES = ("simple", "moderate", "complex")


class Engine(Enum):
    DELIBERATION = "deliberation"
    TREE = "tree"


@dataclass(frozen=True)
class TotNecessity:
    needs_tot: bool
    complexity: Complexity
    reasoning: str

    @property
    def wants_tree(self) -> bool:
        return self.needs_tot and self.complexity != "simple"


CLASSIFY_TEMPLATE = """
You are a Query Complexity Analyzer. Decide whether this query needs deep, multi-step
reasoning: decomposition into sub-problems that are solved separately and then combined.

# QUERY
"{{query}}"

# DOMAIN GUIDANCE
{{hint}}

# WHEN TO SKIP
- A simple factual question or a single obvious answer
- A straightforward request or a conceptual explanation
- Conversational or casual messages

# OUTPUT (JSON only)
{
  "needs_tot": true | false,
  "complexity": "simple" | "moderate" | "complex",
  "reasoning": "One sentence explanation"
}
"""


def fallback_necessity() -> TotNecessity:
    return TotNecessity(needs_tot=False, complexity="moderate", reasoning="Fallback: classification failed")


def parse_necessity(text: str) -> TotNecessity:
    obj = extract_first_json_object(text)
    raw = obj.get("needs_tot", obj.get("needsToT"))
    if not isinstance(raw, bool):
        raise ValueError("Missing boolean 'needs_tot' in classification response.")
    complexity = as_str(obj.get("complexity")).lower()
    if complexity not in _COMPLEXITIES:
        complexity = "moderate"
    return TotNecessity(
        needs_tot=raw,
        complexity=complexity,  # type: ignore[arg-type]
        reasoning=as_str(obj.get("reasoning")) or "No reasoning provided",
    )


class EngineSelector:
    """Picks the Deliberation Pipeline or the Tree Execution Engine for one query.

    Fails safe toward less work: any classification problem selects deliberation.
    """

    def __init__(self, ctx: AgentContext) -> None:
        self._ctx = ctx

    async def classify(self, query: str, domain_hint: str = "") -> TotNecessity:
        prompt = render_template(CLASSIFY_TEMPLATE, {"query": query, "hint": domain_hint.strip() or "(none)"})
        try:
            text = await self._ctx.complete(prompt, phase="classify", classifier=True)
        except Exception as e:
            self._ctx.trace("fallback", {"site": "classify", "error": str(e)})
            return fallback_necessity()
        return decode_or_default(text, parse_necessity, fallback_necessity, site="classify")

    async def select(self, query: str, force_deep_mode: bool, domain_hint: str = "") -> Engine:
        if force_deep_mode:
            return Engine.TREE
        necessity = await self.classify(query, domain_hint)
        choice = Engine.TREE if necessity.wants_tree else Engine.DELIBERATION
        self._ctx.trace(
            "engine_selected",
            {
                "engine": choice.value,
                "needs_tot": necessity.needs_tot,
                "complexity": necessity.complexity,
                "reasoning": necessity.reasoning,
            },
        )
        return choice
