from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from thinktree.agents.orchestrator import OrchestratorAgent
from thinktree.agents.types import AgentContext
from thinktree.api.dependencies import LLMClients, get_app_config, get_llm_clients, get_orchestrator
from thinktree.api.errors import APIError, error_payload
from thinktree.api.sse import format_sse
from thinktree.config.load_config import MAX_DEPTH_LIMIT, AppConfig, ConfigError


logger = logging.getLogger(__name__)

router = APIRouter()


class HistoryMessage(BaseModel):
    role: str = Field(min_length=1)
    text: str = Field(default="")


class ThinkRequest(BaseModel):
    query: str = Field(min_length=1, description="The raw user request.")
    persona: str | None = Field(default=None, description="Persona id; defaults to selector.default_persona.")
    force_deep_mode: bool = Field(default=False, description="Always use the tree engine.")
    max_depth: int | None = Field(default=None, ge=1, le=MAX_DEPTH_LIMIT)
    history: list[HistoryMessage] = Field(default_factory=list)
    generate: bool = Field(default=False, description="Also generate the final answer from the enriched prompt.")


def _check_persona(orchestrator: OrchestratorAgent, persona_id: str | None) -> None:
    try:
        orchestrator.persona(persona_id)
    except ConfigError as e:
        raise APIError(status_code=404, code="not_found", message=str(e)) from e


def _history(body: ThinkRequest) -> list[dict[str, Any]]:
    return [m.model_dump() for m in body.history]


@router.post("/think")
async def think(
    body: ThinkRequest,
    cfg: AppConfig = Depends(get_app_config),
    orchestrator: OrchestratorAgent = Depends(get_orchestrator),
    clients: LLMClients = Depends(get_llm_clients),
) -> dict[str, Any]:
    _check_persona(orchestrator, body.persona)
    ctx = AgentContext(llm=clients.llm, config=cfg, classifier_llm=clients.classifier)
    try:
        result = await orchestrator.run(
            ctx,
            body.query,
            persona_id=body.persona,
            force_deep_mode=body.force_deep_mode,
            history=_history(body),
            max_depth=body.max_depth,
            generate=body.generate,
        )
    except Exception as e:
        # Engines never raise; only the optional answer generation can get here.
        logger.exception("Think request failed")
        raise APIError(status_code=502, code="upstream_error", message=str(e)) from e
    return result.to_dict()


@router.post("/think/stream")
async def think_stream(
    body: ThinkRequest,
    cfg: AppConfig = Depends(get_app_config),
    orchestrator: OrchestratorAgent = Depends(get_orchestrator),
    clients: LLMClients = Depends(get_llm_clients),
) -> StreamingResponse:
    _check_persona(orchestrator, body.persona)

    queue: asyncio.Queue[tuple[str, Any] | None] = asyncio.Queue()
    ctx = AgentContext(
        llm=clients.llm,
        config=cfg,
        classifier_llm=clients.classifier,
        on_thinking_update=lambda p: queue.put_nowait(("thinking", p.to_dict())),
        on_tree_update=lambda s: queue.put_nowait(("tree_state", s.to_dict())),
        on_usage=lambda u: queue.put_nowait(("usage", asdict(u))),
    )

    async def _run() -> None:
        try:
            result = await orchestrator.run(
                ctx,
                body.query,
                persona_id=body.persona,
                force_deep_mode=body.force_deep_mode,
                history=_history(body),
                max_depth=body.max_depth,
                generate=body.generate,
            )
            queue.put_nowait(("result", result.to_dict()))
        except Exception as e:
            logger.exception("Streaming think request failed")
            queue.put_nowait(("error", error_payload(code="upstream_error", message=str(e))["error"]))
        finally:
            queue.put_nowait(None)

    async def _events() -> AsyncIterator[str]:
        task = asyncio.create_task(_run())
        try:
            while True:
                item = await queue.get()
                if item is None:
                    break
                event, data = item
                yield format_sse(event, data)
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(
        _events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
