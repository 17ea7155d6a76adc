from __future__ import annotations

import copy
import tomllib
from pathlib import Path

import pytest

from thinktree.config.load_config import ConfigError, default_config_path, load_app_config, parse_app_config
from thinktree.personas import load_personas
from thinktree.tot.node import ChildSolution


def _raw() -> dict:
    return tomllib.loads(default_config_path().read_text(encoding="utf-8"))


def test_default_config_loads(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("LLM_MODEL", raising=False)
    monkeypatch.delenv("OPENAI_MODEL", raising=False)
    cfg = load_app_config()
    assert 1 <= cfg.engine.max_depth <= 5
    assert cfg.engine.leaf_strategy_cap == 3
    assert cfg.critique.batch_size == 3
    assert cfg.default_persona in cfg.personas
    assert cfg.llm.classifier_model == cfg.llm.model
    assert set(cfg.personas) >= {"general", "developer"}


def test_model_env_override(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("LLM_MODEL", "my-model")
    cfg = parse_app_config(_raw())
    assert cfg.llm.model == "my-model"


def test_config_path_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    missing = tmp_path / "nope.toml"
    monkeypatch.setenv("THINKTREE_CONFIG_PATH", str(missing))
    assert default_config_path() == missing.resolve()
    with pytest.raises(ConfigError, match="not found"):
        load_app_config()


@pytest.mark.parametrize("depth", [0, 6, -1])
def test_max_depth_is_validated(depth: int) -> None:
    raw = _raw()
    raw["engine"]["max_depth"] = depth
    with pytest.raises(ConfigError, match="max_depth"):
        parse_app_config(raw)


def test_unknown_default_persona_is_rejected() -> None:
    raw = _raw()
    raw["selector"]["default_persona"] = "pirate"
    with pytest.raises(ConfigError, match="default_persona"):
        parse_app_config(raw)


def test_templates_must_reference_the_query() -> None:
    raw = copy.deepcopy(_raw())
    raw["personas"]["general"]["prompts"]["critique"] = "Evaluate {{strategy}}"
    with pytest.raises(ConfigError, match="critique"):
        parse_app_config(raw)


def test_missing_template_is_rejected() -> None:
    raw = _raw()
    del raw["personas"]["developer"]["prompts"]["aggregation"]
    with pytest.raises(ConfigError, match="aggregation"):
        parse_app_config(raw)


def test_invalid_types_are_rejected() -> None:
    raw = _raw()
    raw["engine"]["force_root_decomposition"] = "yes"
    with pytest.raises(ConfigError):
        parse_app_config(raw)

    raw = _raw()
    raw["critique"]["batch_size"] = 0
    with pytest.raises(ConfigError, match="batch_size"):
        parse_app_config(raw)


def test_persona_prompt_sets_render_every_template() -> None:
    cfg = load_app_config()
    for persona in load_personas(cfg).values():
        p = persona.prompts
        assert "QUERY-X" in p.divergence("QUERY-X", None)
        assert "PREVIOUS CONTEXT: ctx" in p.divergence("QUERY-X", "ctx")
        assert "my strategy" in p.critique("QUERY-X", "my strategy", "my assumption")
        assert '"title": "T"' in p.synthesis("QUERY-X", [{"title": "T"}])

        forced = p.decomposition("QUERY-X", 0, 2, True)
        judged = p.decomposition("QUERY-X", 0, 2, False)
        assert forced != judged
        assert "{{" not in forced and "{{" not in judged

        agg = p.aggregation("QUERY-X", [ChildSolution("sub one", "sol one"), ChildSolution("sub two", "sol two")])
        assert "### Part 1: sub one" in agg
        assert "### Part 2: sub two" in agg

        assert "BLUEPRINT-Y" in p.final("QUERY-X", "BLUEPRINT-Y")
        assert "## Analysis" not in p.final("QUERY-X", None)
