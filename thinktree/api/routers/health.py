from __future__ import annotations

import importlib.metadata
import time
from typing import Any

from fastapi import APIRouter, Depends

from thinktree import __version__
from thinktree.agents.orchestrator import OrchestratorAgent
from thinktree.api.dependencies import get_app_config, get_orchestrator
from thinktree.config.load_config import AppConfig


router = APIRouter()


def _pkg_version(name: str) -> str | None:
    try:
        return str(importlib.metadata.version(name))
    except importlib.metadata.PackageNotFoundError:
        return None


@router.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/version")
def version() -> dict[str, Any]:
    return {
        "service": "thinktree",
        "version": __version__,
        "api": "v1",
        "deps": {
            "fastapi": _pkg_version("fastapi"),
            "uvicorn": _pkg_version("uvicorn"),
            "pydantic": _pkg_version("pydantic"),
            "openai": _pkg_version("openai"),
        },
        "ts": time.time(),
    }


@router.get("/personas")
def list_personas(
    cfg: AppConfig = Depends(get_app_config),
    orchestrator: OrchestratorAgent = Depends(get_orchestrator),
) -> dict[str, Any]:
    items = [
        {
            "persona_id": p.persona_id,
            "name": p.name,
            "description": p.description,
            "classification_hint": p.classification_hint,
            "tot_hint": p.tot_hint,
            "default": p.persona_id == cfg.default_persona,
        }
        for p in orchestrator.personas.values()
    ]
    return {"items": items, "default_persona": cfg.default_persona}
