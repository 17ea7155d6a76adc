from __future__ import annotations

import asyncio
import uuid
from dataclasses import replace
from typing import Any, Callable, Sequence

from thinktree.agents.types import AgentContext
from thinktree.llm.openai_compat import is_rate_limit_error
from thinktree.personas.prompts import PromptSet
from thinktree.utils.json_extract import (
    JSONExtractionError,
    as_str,
    as_str_list,
    decode_or_default,
    extract_first_json_array,
    extract_first_json_object,
)

from .types import Blueprint, Critique, DeliberationProcess, DeliberationResult, ExecutionStep, Strategy


class DeliberationError(RuntimeError):
    pass


def _new_step_id() -> str:
    return uuid.uuid4().hex[:8]


def fallback_strategies() -> list[Strategy]:
    return [
        Strategy(
            id="default",
            title="Standard Analysis",
            strategy="Direct execution.",
            assumption="Direct response",
        )
    ]


def fallback_critique() -> Critique:
    return Critique(invalidity_triggers=(), critical_flaws="Evaluation failed.")


def fallback_blueprint() -> Blueprint:
    return Blueprint(
        blueprint="Execute standard response.",
        objective="Help user",
        tone="professional",
        safeguards=(),
    )


def parse_strategies(text: str) -> list[Strategy]:
    items = extract_first_json_array(text)
    out: list[Strategy] = []
    for i, item in enumerate(items, start=1):
        if not isinstance(item, dict):
            continue
        strategy = as_str(item.get("strategy")) or as_str(item.get("description"))
        title = as_str(item.get("title"))
        if not strategy and not title:
            continue
        out.append(
            Strategy(
                id=as_str(item.get("id")) or f"h{i}",
                title=title or f"Strategy {i}",
                strategy=strategy or title,
                assumption=as_str(item.get("assumption")),
            )
        )
    if not out:
        raise JSONExtractionError("No strategies in response.")
    return out


def parse_critique(text: str) -> Critique:
    obj = extract_first_json_object(text)
    critique = Critique(
        strengths=tuple(as_str_list(obj.get("strengths"))),
        validity_conditions=as_str(obj.get("validity_conditions")),
        invalidity_triggers=tuple(as_str_list(obj.get("invalidity_triggers"))),
        critical_flaws=as_str(obj.get("critical_flaws")),
    )
    if not (critique.strengths or critique.invalidity_triggers or critique.critical_flaws):
        raise JSONExtractionError("Critique has none of the expected fields.")
    return critique


def parse_blueprint(text: str) -> Blueprint:
    obj = extract_first_json_object(text)
    blueprint = as_str(obj.get("blueprint"))
    if not blueprint:
        raise JSONExtractionError("Missing 'blueprint' in synthesis response.")
    return Blueprint(
        blueprint=blueprint,
        objective=as_str(obj.get("objective")) or "Help user",
        tone=as_str(obj.get("tone")) or "professional",
        safeguards=tuple(as_str_list(obj.get("safeguards"))),
    )


def condense_history(
    history: Sequence[dict[str, Any]] | None,
    *,
    keep: int = 4,
    max_chars: int = 100,
) -> str | None:
    """Squash the last few turns into one line for the divergence prompt."""
    if not history:
        return None
    parts: list[str] = []
    for m in list(history)[-keep:]:
        role = as_str(m.get("role")).upper() or "USER"
        text = as_str(m.get("text") or m.get("content"))
        parts.append(f"{role}: {text[:max_chars]}...")
    return " | ".join(parts)


class DeliberationPipeline:
    """Diverge -> Critique -> Synthesize -> Finalize over a single query.

    Malformed model output never fails a phase: every parse site has a typed
    fallback. Service errors do propagate (wrapped in DeliberationError), except
    rate limits during the critique fan-out, which degrade to small batches.
    """

    def __init__(
        self,
        ctx: AgentContext,
        prompts: PromptSet,
        *,
        strategy_cap: int | None = None,
    ) -> None:
        self._ctx = ctx
        self._prompts = prompts
        self._strategy_cap = strategy_cap
        self._process = DeliberationProcess()

    @property
    def process(self) -> DeliberationProcess:
        return self._process

    def _update(self, fn: Callable[[DeliberationProcess], DeliberationProcess]) -> None:
        self._process = fn(self._process)
        self._ctx.emit_thinking(self._process)

    def _add_step(self, phase: str, title: str) -> str:
        step_id = _new_step_id()
        step = ExecutionStep(id=step_id, phase=phase, title=title, status="running")  # type: ignore[arg-type]
        self._update(lambda p: p.with_step(step))
        return step_id

    def _update_step(self, step_id: str, **changes: Any) -> None:
        self._update(lambda p: p.with_step_update(step_id, **changes))

    async def run(self, query: str, history_context: str | None = None) -> DeliberationResult:
        self._process = DeliberationProcess()
        self._ctx.emit_thinking(self._process)

        phase = "divergence"
        try:
            strategies = await self._diverge(query, history_context)

            phase = "critique"
            self._update(lambda p: replace(p, state="critiquing", hypotheses=tuple(strategies)))
            critiqued = await self._critique_all(query, strategies)
            self._update(lambda p: replace(p, state="synthesizing", hypotheses=tuple(critiqued)))

            phase = "synthesis"
            blueprint = await self._synthesize(query, critiqued)
        except DeliberationError:
            raise
        except Exception as e:
            self._ctx.trace("deliberation_failed", {"phase": phase, "error": str(e)})
            raise DeliberationError(f"{phase} phase failed: {e}") from e

        final_prompt = self._prompts.final(query, blueprint.blueprint)
        self._update(lambda p: replace(p, state="complete", blueprint=blueprint))
        return DeliberationResult(final_prompt=final_prompt, process=self._process)

    async def _diverge(self, query: str, history_context: str | None) -> list[Strategy]:
        step_id = self._add_step("Divergence", "Path Generation")
        try:
            text = await self._ctx.complete(self._prompts.divergence(query, history_context), phase="divergence")
        except Exception:
            self._update_step(step_id, status="failed")
            raise
        strategies = decode_or_default(text, parse_strategies, fallback_strategies, site="divergence")

        if self._strategy_cap is not None and len(strategies) > self._strategy_cap:
            strategies = strategies[: self._strategy_cap]

        self._update_step(
            step_id,
            status="complete",
            thoughts=f"Explored {len(strategies)} strategic paths.",
            result=tuple(strategies),
        )
        return strategies

    async def _critique_one(self, query: str, strategy: Strategy, step_id: str) -> Strategy:
        try:
            text = await self._ctx.complete(
                self._prompts.critique(query, strategy.strategy, strategy.assumption),
                phase="critique",
            )
        except Exception:
            self._update_step(step_id, status="failed")
            raise
        critique = decode_or_default(text, parse_critique, fallback_critique, site="critique")
        self._update_step(step_id, status="complete", thoughts=critique.critical_flaws, result=critique)
        return strategy.with_critique(critique)

    async def _critique_all(self, query: str, strategies: list[Strategy]) -> list[Strategy]:
        step_ids = [self._add_step("Critique", f"Testing: {s.title}") for s in strategies]

        results = await asyncio.gather(
            *(self._critique_one(query, s, sid) for s, sid in zip(strategies, step_ids)),
            return_exceptions=True,
        )

        failed: list[int] = []
        for i, r in enumerate(results):
            if isinstance(r, BaseException):
                if not isinstance(r, Exception) or not is_rate_limit_error(r):
                    raise r
                failed.append(i)
        if not failed:
            return list(results)  # type: ignore[arg-type]

        self._ctx.trace(
            "critique_rate_limited",
            {
                "failed": len(failed),
                "total": len(strategies),
                "batch_size": self._ctx.config.critique.batch_size,
            },
        )
        retried = await self._critique_in_batches(query, [(i, strategies[i], step_ids[i]) for i in failed])

        merged: list[Strategy] = []
        for i, r in enumerate(results):
            merged.append(retried[i] if i in retried else r)  # type: ignore[arg-type]
        return merged

    async def _critique_in_batches(
        self,
        query: str,
        pending: list[tuple[int, Strategy, str]],
    ) -> dict[int, Strategy]:
        batch_size = self._ctx.config.critique.batch_size
        cooldown_s = self._ctx.config.critique.cooldown_s

        for _, _, step_id in pending:
            self._update_step(step_id, status="pending", thoughts="Rate limited; queued for retry.")

        out: dict[int, Strategy] = {}
        for start in range(0, len(pending), batch_size):
            if start > 0 and cooldown_s > 0:
                await asyncio.sleep(cooldown_s)
            batch = pending[start : start + batch_size]
            for _, _, step_id in batch:
                self._update_step(step_id, status="running", thoughts="")
            # Let the whole batch settle before surfacing a failure.
            critiqued = await asyncio.gather(
                *(self._critique_one(query, s, sid) for _, s, sid in batch),
                return_exceptions=True,
            )
            for r in critiqued:
                if isinstance(r, BaseException):
                    raise r
            for (i, _, _), strategy in zip(batch, critiqued):
                out[i] = strategy
        return out

    async def _synthesize(self, query: str, critiqued: list[Strategy]) -> Blueprint:
        step_id = self._add_step("Synthesis", "Blueprint Synthesis")
        try:
            text = await self._ctx.complete(
                self._prompts.synthesis(query, [s.to_dict() for s in critiqued]),
                phase="synthesis",
            )
        except Exception:
            self._update_step(step_id, status="failed")
            raise
        blueprint = decode_or_default(text, parse_blueprint, fallback_blueprint, site="synthesis")
        self._update_step(
            step_id,
            status="complete",
            thoughts=f"Master Blueprint synthesized with {len(blueprint.safeguards)} safeguards.",
            result=blueprint,
        )
        self._update(lambda p: replace(p, blueprint=blueprint))
        return blueprint
