from __future__ import annotations

import threading
from dataclasses import dataclass

from fastapi import Request

from thinktree.agents.orchestrator import OrchestratorAgent
from thinktree.agents.types import CompletionClient
from thinktree.api.errors import APIError
from thinktree.config.load_config import AppConfig, ConfigError, load_app_config
from thinktree.llm.openai_compat import LLMConfigError, OpenAICompatibleChatClient


_INIT_LOCK = threading.Lock()


@dataclass(frozen=True)
class LLMClients:
    llm: CompletionClient
    classifier: CompletionClient


def get_app_config(request: Request) -> AppConfig:
    """FastAPI dependency: the process-wide AppConfig, loaded once and cached in `app.state`."""
    cached = getattr(request.app.state, "app_config", None)
    if isinstance(cached, AppConfig):
        return cached

    with _INIT_LOCK:
        cached2 = getattr(request.app.state, "app_config", None)
        if isinstance(cached2, AppConfig):
            return cached2
        try:
            cfg = load_app_config()
        except ConfigError as e:
            raise APIError(status_code=500, code="config_error", message=str(e)) from e
        request.app.state.app_config = cfg
        return cfg


def get_orchestrator(request: Request) -> OrchestratorAgent:
    cached = getattr(request.app.state, "orchestrator", None)
    if isinstance(cached, OrchestratorAgent):
        return cached

    cfg = get_app_config(request)
    with _INIT_LOCK:
        cached2 = getattr(request.app.state, "orchestrator", None)
        if isinstance(cached2, OrchestratorAgent):
            return cached2
        orchestrator = OrchestratorAgent.from_config(cfg)
        request.app.state.orchestrator = orchestrator
        return orchestrator


def get_llm_clients(request: Request) -> LLMClients:
    """FastAPI dependency: cached completion clients (main model + classifier model).

    Creating the client is cheap but not free (HTTP pool); one per process is enough.
    """
    cached = getattr(request.app.state, "llm_clients", None)
    if isinstance(cached, LLMClients):
        return cached

    cfg = get_app_config(request)
    with _INIT_LOCK:
        cached2 = getattr(request.app.state, "llm_clients", None)
        if isinstance(cached2, LLMClients):
            return cached2
        try:
            llm = OpenAICompatibleChatClient(
                model=cfg.llm.model,
                temperature=cfg.llm.temperature,
                timeout_s=cfg.llm.timeout_s,
            )
        except LLMConfigError as e:
            raise APIError(status_code=503, code="dependency_unavailable", message=str(e)) from e
        clients = LLMClients(llm=llm, classifier=llm.with_model(cfg.llm.classifier_model))
        request.app.state.llm_clients = clients
        return clients
