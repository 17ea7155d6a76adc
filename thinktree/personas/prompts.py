from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Callable, Sequence

from thinktree.config.load_config import PersonaConfig, PromptTemplates
from thinktree.tot.node import ChildSolution
from thinktree.utils.template import render_template


DivergencePrompt = Callable[[str, "str | None"], str]
CritiquePrompt = Callable[[str, str, str], str]
SynthesisPrompt = Callable[[str, Sequence[dict[str, Any]]], str]
DecompositionPrompt = Callable[[str, int, int, bool], str]
AggregationPrompt = Callable[[str, Sequence[ChildSolution]], str]
FinalPrompt = Callable[[str, "str | None"], str]


@dataclass(frozen=True)
class PromptSet:
    """The six prompt builders a persona supplies to the engines.

    The engines only depend on the shape of the JSON each prompt elicits;
    wording is entirely the persona's business.
    """

    divergence: DivergencePrompt
    critique: CritiquePrompt
    synthesis: SynthesisPrompt
    decomposition: DecompositionPrompt
    aggregation: AggregationPrompt
    final: FinalPrompt

    @classmethod
    def from_templates(cls, templates: PromptTemplates) -> "PromptSet":
        def divergence(query: str, context: str | None = None) -> str:
            context_block = f"PREVIOUS CONTEXT: {context}" if context else ""
            return render_template(templates.divergence, {"query": query, "context_block": context_block})

        def critique(query: str, strategy: str, assumption: str) -> str:
            return render_template(
                templates.critique,
                {"query": query, "strategy": strategy, "assumption": assumption},
            )

        def synthesis(query: str, critiqued_strategies: Sequence[dict[str, Any]]) -> str:
            return render_template(
                templates.synthesis,
                {
                    "query": query,
                    "strategies_json": json.dumps(list(critiqued_strategies), ensure_ascii=False),
                },
            )

        def decomposition(query: str, depth: int, max_depth: int, force: bool) -> str:
            rules = templates.decomposition_forced if force else templates.decomposition_judgment
            return render_template(
                templates.decomposition,
                {
                    "query": query,
                    "depth": depth,
                    "max_depth": max_depth,
                    "remaining_depth": max(max_depth - depth, 0),
                    "force": "true" if force else "false",
                    "rules": rules.strip(),
                },
            )

        def aggregation(query: str, child_solutions: Sequence[ChildSolution]) -> str:
            return render_template(
                templates.aggregation,
                {"query": query, "child_solutions": format_child_solutions(child_solutions)},
            )

        def final(query: str, blueprint: str | None = None) -> str:
            analysis_block = f"## Analysis\n{blueprint}\n\n---\n" if blueprint else ""
            return render_template(templates.final, {"query": query, "analysis_block": analysis_block})

        return cls(
            divergence=divergence,
            critique=critique,
            synthesis=synthesis,
            decomposition=decomposition,
            aggregation=aggregation,
            final=final,
        )


def format_child_solutions(child_solutions: Sequence[ChildSolution]) -> str:
    blocks = [
        f"### Part {i}: {c.query}\n{c.solution}" for i, c in enumerate(child_solutions, start=1)
    ]
    return "\n\n---\n\n".join(blocks)


@dataclass(frozen=True)
class Persona:
    persona_id: str
    name: str
    description: str
    classification_hint: str
    tot_hint: str
    prompts: PromptSet

    @classmethod
    def from_config(cls, cfg: PersonaConfig) -> "Persona":
        return cls(
            persona_id=cfg.persona_id,
            name=cfg.name,
            description=cfg.description,
            classification_hint=cfg.classification_hint,
            tot_hint=cfg.tot_hint,
            prompts=PromptSet.from_templates(cfg.prompts),
        )
