from __future__ import annotations

import asyncio
import json

import pytest

from llm_fakes import CLASSIFIER_MARKER, FakeLLM, default_reply, make_ctx, tagged_persona
from thinktree.agents.orchestrator import OrchestratorAgent
from thinktree.agents.selector import Engine
from thinktree.config.load_config import ConfigError
from thinktree.tot.state import TreeStatus


def _orchestrator() -> OrchestratorAgent:
    return OrchestratorAgent({"general": tagged_persona("general")}, "general")


def _needs_tree(prompt: str) -> str:
    if CLASSIFIER_MARKER in prompt:
        return json.dumps({"needs_tot": True, "complexity": "complex", "reasoning": "many parts"})
    return default_reply(prompt)


def test_flat_mode_condenses_history_into_divergence_context() -> None:
    llm = FakeLLM()
    history = [{"role": "user", "text": "earlier question"}, {"role": "model", "text": "earlier answer"}]
    result = asyncio.run(_orchestrator().run(make_ctx(llm), "q", history=history))

    assert result.engine is Engine.DELIBERATION
    assert result.tree is None
    assert result.thinking is not None and result.thinking.state == "complete"
    assert result.prompt == "FINAL|q|BP(q)"
    diverge = next(p for p in llm.prompts if p.startswith("DIVERGE|"))
    assert diverge == "DIVERGE|q|USER: earlier question... | MODEL: earlier answer..."
    # Flat mode does not cap strategies.
    assert llm.count("CRITIQUE|") == 5


def test_flat_mode_service_error_degrades_to_bare_final_prompt() -> None:
    def _reply(prompt: str) -> str:
        if prompt.startswith("SYNTH|"):
            raise RuntimeError("synthesis backend down")
        return default_reply(prompt)

    result = asyncio.run(_orchestrator().run(make_ctx(FakeLLM(_reply)), "q"))
    assert result.engine is Engine.DELIBERATION
    assert result.prompt == "FINAL|q|"
    assert result.thinking is not None
    assert result.thinking.trace[-1].status == "failed"


def test_classifier_routes_to_tree_engine() -> None:
    llm = FakeLLM(_needs_tree)
    result = asyncio.run(_orchestrator().run(make_ctx(llm), "q", max_depth=1))
    assert result.engine is Engine.TREE
    assert result.tree is not None
    assert result.tree.status is TreeStatus.COMPLETE
    assert result.tree.max_depth == 1
    assert result.prompt == "FINAL|q|BP(q)"


def test_force_deep_mode_and_answer_generation() -> None:
    llm = FakeLLM()
    result = asyncio.run(_orchestrator().run(make_ctx(llm), "q", force_deep_mode=True, max_depth=1, generate=True))
    assert result.engine is Engine.TREE
    assert not any(CLASSIFIER_MARKER in p for p in llm.prompts)
    assert result.answer == "ANSWER"
    assert llm.prompts[-1] == result.prompt
    assert llm.json_flags[-1] is False

    payload = result.to_dict()
    json.dumps(payload)
    assert payload["engine"] == "tree"
    assert payload["tree"]["status"] == "complete"


def test_unknown_persona_is_a_config_error() -> None:
    with pytest.raises(ConfigError):
        asyncio.run(_orchestrator().run(make_ctx(FakeLLM()), "q", persona_id="nope"))
    with pytest.raises(ConfigError):
        OrchestratorAgent({"general": tagged_persona()}, "missing")


def test_unparsable_classifier_reply_selects_deliberation() -> None:
    nested = '{"a":' * 100000 + "1" + "}" * 100000

    def _reply(prompt: str) -> str:
        if CLASSIFIER_MARKER in prompt:
            return nested
        return default_reply(prompt)

    result = asyncio.run(_orchestrator().run(make_ctx(FakeLLM(_reply)), "q"))
    assert result.engine is Engine.DELIBERATION
    assert result.prompt == "FINAL|q|BP(q)"
