from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Sequence

from thinktree.config.load_config import AppConfig, ConfigError
from thinktree.deliberation.pipeline import DeliberationError, DeliberationPipeline, condense_history
from thinktree.deliberation.types import DeliberationProcess
from thinktree.personas import Persona, load_personas
from thinktree.tot.engine import TreeEngine
from thinktree.tot.state import TreeState

from .selector import Engine, EngineSelector
from .types import AgentContext


@dataclass(frozen=True)
class OrchestratorResult:
    engine: Engine
    persona_id: str
    prompt: str
    thinking: DeliberationProcess | None = None
    tree: TreeState | None = None
    answer: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "engine": self.engine.value,
            "persona": self.persona_id,
            "prompt": self.prompt,
            "answer": self.answer,
            "thinking": self.thinking.to_dict() if self.thinking is not None else None,
            "tree": self.tree.to_dict() if self.tree is not None else None,
        }


class OrchestratorAgent:
    """Session boundary: one `run` per user query.

    Never fails on engine errors. The worst case is the persona's final prompt
    built from the bare query (flat mode) or the query itself (tree mode).
    """

    name = "orchestrator"

    def __init__(self, personas: dict[str, Persona], default_persona: str) -> None:
        if default_persona not in personas:
            raise ConfigError(f"Unknown default persona: {default_persona!r}")
        self._personas = dict(personas)
        self._default_persona = default_persona

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "OrchestratorAgent":
        return cls(load_personas(cfg), cfg.default_persona)

    @property
    def personas(self) -> dict[str, Persona]:
        return dict(self._personas)

    def persona(self, persona_id: str | None = None) -> Persona:
        pid = (persona_id or self._default_persona).strip()
        try:
            return self._personas[pid]
        except KeyError:
            raise ConfigError(f"Unknown persona: {pid!r}") from None

    async def run(
        self,
        ctx: AgentContext,
        query: str,
        *,
        persona_id: str | None = None,
        force_deep_mode: bool = False,
        history: Sequence[dict[str, Any]] | None = None,
        max_depth: int | None = None,
        generate: bool = False,
    ) -> OrchestratorResult:
        persona = self.persona(persona_id)
        engine = await EngineSelector(ctx).select(query, force_deep_mode, persona.tot_hint)
        ctx.trace("session_started", {"engine": engine.value, "persona": persona.persona_id})

        if engine is Engine.TREE:
            outcome = await TreeEngine(ctx, persona.prompts, max_depth=max_depth).run(query)
            result = OrchestratorResult(
                engine=engine,
                persona_id=persona.persona_id,
                prompt=outcome.prompt,
                tree=outcome.state,
            )
        else:
            result = await self._run_flat(ctx, persona, query, history)

        if generate:
            answer = await ctx.complete(result.prompt, phase="generation", json_output=False)
            result = replace(result, answer=answer)
        return result

    async def _run_flat(
        self,
        ctx: AgentContext,
        persona: Persona,
        query: str,
        history: Sequence[dict[str, Any]] | None,
    ) -> OrchestratorResult:
        pipeline = DeliberationPipeline(ctx, persona.prompts)
        try:
            outcome = await pipeline.run(query, condense_history(history))
        except DeliberationError as e:
            ctx.trace("fallback", {"site": "deliberation", "error": str(e)})
            return OrchestratorResult(
                engine=Engine.DELIBERATION,
                persona_id=persona.persona_id,
                prompt=persona.prompts.final(query, None),
                thinking=pipeline.process,
            )
        return OrchestratorResult(
            engine=Engine.DELIBERATION,
            persona_id=persona.persona_id,
            prompt=outcome.final_prompt,
            thinking=outcome.process,
        )
