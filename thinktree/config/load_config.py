from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from thinktree.utils.template import template_keys


class ConfigError(RuntimeError):
    pass


MAX_DEPTH_LIMIT = 5

_PROMPT_KEYS = (
    "divergence",
    "critique",
    "synthesis",
    "decomposition",
    "decomposition_forced",
    "decomposition_judgment",
    "aggregation",
    "final",
)
# Rule blocks are spliced into `decomposition`; they need not mention the query.
_QUERY_FREE_PROMPT_KEYS = {"decomposition_forced", "decomposition_judgment"}


def _as_int(value: Any, *, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid int for {key}: {value!r}")
    try:
        return int(value)
    except Exception as e:
        raise ConfigError(f"Invalid int for {key}: {value!r}") from e


def _as_str(value: Any, *, key: str) -> str:
    if value is None:
        raise ConfigError(f"Missing required config key: {key}")
    return str(value)


def _as_float(value: Any, *, key: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Invalid float for {key}: {value!r}")
    try:
        return float(value)
    except Exception as e:
        raise ConfigError(f"Invalid float for {key}: {value!r}") from e


def _as_bool(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    raise ConfigError(f"Invalid bool for {key}: {value!r}")


def _as_table(value: Any, *, key: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"Invalid table for {key}: expected table, got {type(value).__name__}")
    return value


@dataclass(frozen=True)
class LLMConfig:
    model: str
    classifier_model: str
    temperature: float
    timeout_s: float


@dataclass(frozen=True)
class EngineConfig:
    max_depth: int
    force_root_decomposition: bool
    leaf_strategy_cap: int


@dataclass(frozen=True)
class CritiqueConfig:
    """Degraded-mode settings used when the parallel critique fan-out is rate limited."""

    batch_size: int
    cooldown_s: float


@dataclass(frozen=True)
class PromptTemplates:
    divergence: str
    critique: str
    synthesis: str
    decomposition: str
    decomposition_forced: str
    decomposition_judgment: str
    aggregation: str
    final: str


@dataclass(frozen=True)
class PersonaConfig:
    persona_id: str
    name: str
    description: str
    classification_hint: str
    tot_hint: str
    prompts: PromptTemplates


@dataclass(frozen=True)
class AppConfig:
    llm: LLMConfig
    engine: EngineConfig
    critique: CritiqueConfig
    default_persona: str
    personas: dict[str, PersonaConfig]

    def persona(self, persona_id: str | None = None) -> PersonaConfig:
        pid = (persona_id or self.default_persona).strip()
        try:
            return self.personas[pid]
        except KeyError:
            raise ConfigError(f"Unknown persona: {pid!r}") from None


def validate_max_depth(value: int, *, key: str = "engine.max_depth") -> int:
    if value < 1 or value > MAX_DEPTH_LIMIT:
        raise ConfigError(f"Invalid {key}: must be in [1..{MAX_DEPTH_LIMIT}], got {value}")
    return value


def default_config_path() -> Path:
    raw = os.getenv("THINKTREE_CONFIG_PATH")
    if raw:
        return Path(raw).expanduser().resolve()
    # Repo layout: <repo>/thinktree/config/load_config.py -> <repo>/config/default.toml
    return (Path(__file__).resolve().parents[2] / "config" / "default.toml").resolve()


def _parse_prompts(raw: dict[str, Any], *, key: str) -> PromptTemplates:
    values: dict[str, str] = {}
    for name in _PROMPT_KEYS:
        tpl = _as_str(raw.get(name), key=f"{key}.{name}")
        if name not in _QUERY_FREE_PROMPT_KEYS and "query" not in template_keys(tpl):
            raise ConfigError(f"Invalid {key}.{name}: template must reference {{{{query}}}}")
        values[name] = tpl
    return PromptTemplates(**values)


def _parse_persona(persona_id: str, raw: dict[str, Any]) -> PersonaConfig:
    key = f"personas.{persona_id}"
    return PersonaConfig(
        persona_id=persona_id,
        name=_as_str(raw.get("name", persona_id), key=f"{key}.name"),
        description=_as_str(raw.get("description", ""), key=f"{key}.description"),
        classification_hint=_as_str(raw.get("classification_hint", ""), key=f"{key}.classification_hint"),
        tot_hint=_as_str(raw.get("tot_hint", ""), key=f"{key}.tot_hint"),
        prompts=_parse_prompts(_as_table(raw.get("prompts"), key=f"{key}.prompts"), key=f"{key}.prompts"),
    )


def parse_app_config(raw: dict[str, Any]) -> AppConfig:
    llm = _as_table(raw.get("llm"), key="llm")
    engine = _as_table(raw.get("engine"), key="engine")
    critique = _as_table(raw.get("critique"), key="critique")
    selector = _as_table(raw.get("selector"), key="selector")
    personas_raw = _as_table(raw.get("personas"), key="personas")

    model = os.getenv("LLM_MODEL") or os.getenv("OPENAI_MODEL") or _as_str(llm.get("model"), key="llm.model")
    classifier_model = str(llm.get("classifier_model") or "").strip() or model

    batch_size = _as_int(critique.get("batch_size", 3), key="critique.batch_size")
    if batch_size < 1:
        raise ConfigError(f"Invalid critique.batch_size: must be >= 1, got {batch_size}")
    cooldown_s = _as_float(critique.get("cooldown_s", 1.5), key="critique.cooldown_s")
    if cooldown_s < 0:
        raise ConfigError(f"Invalid critique.cooldown_s: must be >= 0, got {cooldown_s}")

    leaf_strategy_cap = _as_int(engine.get("leaf_strategy_cap", 3), key="engine.leaf_strategy_cap")
    if leaf_strategy_cap < 1:
        raise ConfigError(f"Invalid engine.leaf_strategy_cap: must be >= 1, got {leaf_strategy_cap}")

    personas: dict[str, PersonaConfig] = {}
    for persona_id, persona_raw in personas_raw.items():
        personas[persona_id] = _parse_persona(persona_id, _as_table(persona_raw, key=f"personas.{persona_id}"))
    if not personas:
        raise ConfigError("At least one [personas.<id>] table is required.")

    default_persona = _as_str(selector.get("default_persona"), key="selector.default_persona").strip()
    if default_persona not in personas:
        raise ConfigError(
            f"Invalid selector.default_persona: {default_persona!r} is not one of {sorted(personas)}"
        )

    return AppConfig(
        llm=LLMConfig(
            model=model,
            classifier_model=classifier_model,
            temperature=_as_float(llm.get("temperature", 0.7), key="llm.temperature"),
            timeout_s=_as_float(llm.get("timeout_s", 120), key="llm.timeout_s"),
        ),
        engine=EngineConfig(
            max_depth=validate_max_depth(_as_int(engine.get("max_depth", 3), key="engine.max_depth")),
            force_root_decomposition=_as_bool(
                engine.get("force_root_decomposition", True), key="engine.force_root_decomposition"
            ),
            leaf_strategy_cap=leaf_strategy_cap,
        ),
        critique=CritiqueConfig(batch_size=batch_size, cooldown_s=cooldown_s),
        default_persona=default_persona,
        personas=personas,
    )


def load_app_config(path: Path | None = None) -> AppConfig:
    cfg_path = path or default_config_path()
    if not cfg_path.exists():
        raise ConfigError(f"Config file not found: {cfg_path}")

    try:
        import tomllib  # py3.11+
    except Exception as e:
        raise ConfigError("tomllib is required (Python 3.11+).") from e

    try:
        raw = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Invalid TOML in {cfg_path}: {e}") from e
    return parse_app_config(raw)
