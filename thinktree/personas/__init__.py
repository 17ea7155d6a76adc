"""Persona prompt sets.

A persona is configuration data (see `config/default.toml`): a set of prompt
templates plus the hints the engine selector hands to its classifier. This
package turns that data into the `PromptSet` record the engines consume.
"""

from __future__ import annotations

from thinktree.config.load_config import AppConfig

from .prompts import Persona, PromptSet, format_child_solutions


def load_personas(cfg: AppConfig) -> dict[str, Persona]:
    return {pid: Persona.from_config(p) for pid, p in cfg.personas.items()}


__all__ = ["Persona", "PromptSet", "format_child_solutions", "load_personas"]
