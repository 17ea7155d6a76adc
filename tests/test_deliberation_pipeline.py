from __future__ import annotations

import asyncio

import pytest

import thinktree.deliberation.pipeline as pipeline_mod
from llm_fakes import FakeLLM, InFlight, RateLimitError, default_reply, make_config, make_ctx, tagged_prompts
from thinktree.agents.types import UsageIncrement
from thinktree.deliberation.pipeline import DeliberationError, DeliberationPipeline, condense_history
from thinktree.deliberation.types import DeliberationProcess
from thinktree.llm.openai_compat import is_rate_limit_error


def _run(llm: FakeLLM, query: str = "plan a trip", **kwargs):
    snapshots: list[DeliberationProcess] = []
    usage: list[UsageIncrement] = []
    cfg = kwargs.pop("cfg", None)
    ctx = make_ctx(llm, cfg, on_thinking_update=snapshots.append, on_usage=usage.append)
    pipeline = DeliberationPipeline(ctx, tagged_prompts(), **kwargs)
    result = asyncio.run(pipeline.run(query))
    return result, snapshots, usage


def _critique_steps(process: DeliberationProcess):
    return [t for t in process.trace if t.phase == "Critique"]


def test_four_phases_produce_final_prompt_and_trace() -> None:
    llm = FakeLLM()
    result, snapshots, usage = _run(llm)

    assert result.final_prompt == "FINAL|plan a trip|BP(plan a trip)"
    assert result.blueprint is not None
    assert result.blueprint.safeguards == ("s",)
    assert [t.phase for t in result.trace] == ["Divergence"] + ["Critique"] * 5 + ["Synthesis"]
    assert all(t.status == "complete" for t in result.trace)
    assert result.process.state == "complete"

    # One request (and one usage increment) per phase call.
    assert llm.count("DIVERGE|") == 1
    assert llm.count("CRITIQUE|") == 5
    assert llm.count("SYNTH|") == 1
    assert [u.phase for u in usage].count("critique") == 5
    assert len(usage) == 7
    assert all(u.model == "fake-llm" and u.requests == 1 for u in usage)

    # The synthesis prompt sees every critique.
    synth_prompt = next(p for p in llm.prompts if p.startswith("SYNTH|"))
    for i in range(1, 6):
        assert f"flaws of strategy {i} for plan a trip" in synth_prompt

    # An update after every individual critique.
    completed_counts = {sum(1 for t in _critique_steps(s) if t.status == "complete") for s in snapshots}
    assert {1, 2, 3, 4, 5} <= completed_counts
    assert snapshots[-1].state == "complete"


def test_hypotheses_keep_divergence_order() -> None:
    result, _, _ = _run(FakeLLM())
    hypotheses = result.process.hypotheses
    assert [h.id for h in hypotheses] == ["h1", "h2", "h3", "h4", "h5"]
    for i, h in enumerate(hypotheses, start=1):
        assert h.critique is not None
        assert h.critique.critical_flaws == f"flaws of strategy {i} for plan a trip"


def test_malformed_divergence_and_synthesis_fall_back() -> None:
    def _reply(prompt: str) -> str:
        if prompt.startswith(("DIVERGE|", "SYNTH|")):
            return "no json here"
        return default_reply(prompt)

    llm = FakeLLM(_reply)
    result, _, _ = _run(llm)

    assert llm.count("CRITIQUE|") == 1
    assert [h.id for h in result.process.hypotheses] == ["default"]
    assert result.blueprint is not None
    assert result.blueprint.blueprint == "Execute standard response."
    assert result.final_prompt == "FINAL|plan a trip|Execute standard response."


def test_strategy_cap_bounds_critique_fan_out() -> None:
    llm = FakeLLM()
    result, _, _ = _run(llm, strategy_cap=3)
    assert llm.count("CRITIQUE|") == 3
    assert [h.id for h in result.process.hypotheses] == ["h1", "h2", "h3"]


def test_rate_limited_critique_is_retried_and_order_preserved() -> None:
    calls = {"critique": 0}

    def _reply(prompt: str) -> str:
        if prompt.startswith("CRITIQUE|"):
            calls["critique"] += 1
            if calls["critique"] == 1:
                raise RateLimitError("slow down")
        return default_reply(prompt)

    llm = FakeLLM(_reply)
    result, snapshots, usage = _run(llm)

    hypotheses = result.process.hypotheses
    assert len(hypotheses) == 5
    for i, h in enumerate(hypotheses, start=1):
        assert h.strategy == f"strategy {i} for plan a trip"
        assert h.critique is not None
        assert h.critique.critical_flaws == f"flaws of strategy {i} for plan a trip"
    assert llm.count("CRITIQUE|") == 6
    assert [u.phase for u in usage].count("critique") == 6
    assert all(t.status == "complete" for t in result.trace)


def test_rate_limit_degrades_to_batches_of_three() -> None:
    inflight = InFlight()
    calls = {"critique": 0}

    def _reply(prompt: str):
        if prompt.startswith("CRITIQUE|"):
            calls["critique"] += 1
            if calls["critique"] <= 5:
                raise RateLimitError("429 Too Many Requests")
            return inflight.around(default_reply(prompt))
        return default_reply(prompt)

    llm = FakeLLM(_reply)
    result, snapshots, _ = _run(llm, cfg=make_config(cooldown_s=0.01))

    assert llm.count("CRITIQUE|") == 10
    assert inflight.peak == 3
    assert [h.id for h in result.process.hypotheses] == ["h1", "h2", "h3", "h4", "h5"]
    assert all(h.critique is not None and h.critique.critical_flaws.startswith("flaws") for h in result.process.hypotheses)

    # Retried strategies are shown as queued, then running, then complete.
    statuses_seen = {t.status for s in snapshots for t in _critique_steps(s)}
    assert {"pending", "running", "complete"} <= statuses_seen


def test_non_rate_limit_critique_error_is_not_retried() -> None:
    def _reply(prompt: str) -> str:
        if prompt.startswith("CRITIQUE|"):
            raise ValueError("bad gateway")
        return default_reply(prompt)

    llm = FakeLLM(_reply)
    ctx = make_ctx(llm)
    pipeline = DeliberationPipeline(ctx, tagged_prompts())
    with pytest.raises(DeliberationError, match="critique phase failed"):
        asyncio.run(pipeline.run("q"))

    assert llm.count("CRITIQUE|") == 5
    assert llm.count("SYNTH|") == 0
    assert any(t.status == "failed" for t in _critique_steps(pipeline.process))


def test_second_rate_limit_during_batches_propagates() -> None:
    def _reply(prompt: str) -> str:
        if prompt.startswith("CRITIQUE|"):
            raise RateLimitError("rate limit")
        return default_reply(prompt)

    pipeline = DeliberationPipeline(make_ctx(FakeLLM(_reply)), tagged_prompts())
    with pytest.raises(DeliberationError):
        asyncio.run(pipeline.run("q"))


def test_failed_retry_batch_settles_before_raising() -> None:
    inflight = InFlight()
    calls = {"critique": 0}

    def _reply(prompt: str):
        if prompt.startswith("CRITIQUE|"):
            calls["critique"] += 1
            # The parallel round and the first retry are rate limited.
            if calls["critique"] <= 6:
                raise RateLimitError("429 Too Many Requests")
            return inflight.around(default_reply(prompt), delay_s=0.05)
        return default_reply(prompt)

    llm = FakeLLM(_reply)
    pipeline = DeliberationPipeline(make_ctx(llm), tagged_prompts())

    async def _main() -> list[asyncio.Task]:
        with pytest.raises(DeliberationError, match="critique phase failed"):
            await pipeline.run("q")
        return [t for t in asyncio.all_tasks() if t is not asyncio.current_task()]

    assert asyncio.run(_main()) == []
    assert inflight.current == 0
    # Only the first batch ran; its two siblings finished before the error surfaced.
    assert llm.count("CRITIQUE|") == 8
    assert [t.status for t in _critique_steps(pipeline.process)].count("complete") == 2
    assert llm.count("SYNTH|") == 0


def test_cooldown_runs_between_retry_batches_only(monkeypatch: pytest.MonkeyPatch) -> None:
    events: list[str] = []
    real_sleep = asyncio.sleep

    async def _sleep(delay: float, *args, **kwargs):
        if delay == 0.25:
            events.append("cooldown")
        return await real_sleep(0)

    monkeypatch.setattr(pipeline_mod.asyncio, "sleep", _sleep)

    calls = {"critique": 0}

    def _reply(prompt: str) -> str:
        if prompt.startswith("CRITIQUE|"):
            calls["critique"] += 1
            events.append("critique")
            if calls["critique"] <= 5:
                raise RateLimitError("rate limit exceeded")
        return default_reply(prompt)

    _run(FakeLLM(_reply), cfg=make_config(cooldown_s=0.25))

    # Parallel round of 5, retry batch of 3, one cooldown, retry batch of 2.
    assert events == ["critique"] * 8 + ["cooldown"] + ["critique"] * 2


def test_divergence_service_error_raises_deliberation_error() -> None:
    def _reply(prompt: str) -> str:
        raise ConnectionError("network unreachable")

    pipeline = DeliberationPipeline(make_ctx(FakeLLM(_reply)), tagged_prompts())
    with pytest.raises(DeliberationError, match="divergence phase failed"):
        asyncio.run(pipeline.run("q"))
    assert pipeline.process.trace[0].status == "failed"


def test_observer_errors_do_not_break_the_pipeline() -> None:
    def _broken(_process: DeliberationProcess) -> None:
        raise RuntimeError("renderer crashed")

    ctx = make_ctx(FakeLLM(), on_thinking_update=_broken)
    result = asyncio.run(DeliberationPipeline(ctx, tagged_prompts()).run("q"))
    assert result.final_prompt == "FINAL|q|BP(q)"


def test_history_context_reaches_divergence() -> None:
    llm = FakeLLM()
    ctx = make_ctx(llm)
    asyncio.run(DeliberationPipeline(ctx, tagged_prompts()).run("q", "USER: hi..."))
    assert llm.prompts[0] == "DIVERGE|q|USER: hi..."


def test_condense_history_keeps_last_four_turns() -> None:
    history = [{"role": "user", "text": f"message {i} " + "x" * 200} for i in range(6)]
    history[-1] = {"role": "model", "content": "short"}
    out = condense_history(history)
    assert out is not None
    parts = out.split(" | ")
    assert len(parts) == 4
    assert parts[0].startswith("USER: message 2 ")
    assert parts[0].endswith("...")
    assert len(parts[0]) == len("USER: ") + 100 + 3
    assert parts[-1] == "MODEL: short..."
    assert condense_history([]) is None


def test_rate_limit_detection() -> None:
    assert is_rate_limit_error(RateLimitError("x"))
    assert is_rate_limit_error(RuntimeError("Resource exhausted: quota exceeded"))
    assert is_rate_limit_error(RuntimeError("HTTP 429"))
    assert not is_rate_limit_error(RuntimeError("HTTP 500 internal error"))
