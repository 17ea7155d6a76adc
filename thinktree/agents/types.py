from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Protocol

from thinktree.config.load_config import AppConfig
from thinktree.deliberation.types import DeliberationProcess
from thinktree.tot.state import TreeState


logger = logging.getLogger("thinktree.trace")

_WARNING_EVENTS = {"fallback", "node_failed", "session_failed", "critique_rate_limited"}


class CompletionClient(Protocol):
    model: str

    async def complete(self, prompt: str, *, json_output: bool = False) -> str: ...


@dataclass(frozen=True)
class UsageIncrement:
    """One completion request, reported for external accounting."""

    model: str
    phase: str
    requests: int = 1


ThinkingObserver = Callable[[DeliberationProcess], None]
TreeObserver = Callable[[TreeState], None]
UsageObserver = Callable[[UsageIncrement], None]


@dataclass
class AgentContext:
    llm: CompletionClient
    config: AppConfig
    on_thinking_update: ThinkingObserver | None = None
    on_tree_update: TreeObserver | None = None
    on_usage: UsageObserver | None = None
    # Cheaper model for routing decisions; falls back to `llm`.
    classifier_llm: CompletionClient | None = None

    def trace(self, event_type: str, payload: dict[str, Any]) -> None:
        level = logging.WARNING if event_type in _WARNING_EVENTS else logging.DEBUG
        if not logger.isEnabledFor(level):
            return
        logger.log(level, "%s %s", event_type, json.dumps(payload, ensure_ascii=False, default=str))

    def usage(self, phase: str, *, model: str) -> None:
        if self.on_usage is None:
            return
        try:
            self.on_usage(UsageIncrement(model=model, phase=phase))
        except Exception:
            logger.exception("Usage observer raised")

    def emit_thinking(self, process: DeliberationProcess) -> None:
        if self.on_thinking_update is None:
            return
        try:
            self.on_thinking_update(process)
        except Exception:
            logger.exception("Thinking observer raised")

    def without_thinking_updates(self) -> "AgentContext":
        return replace(self, on_thinking_update=None)

    async def complete(
        self,
        prompt: str,
        *,
        phase: str,
        json_output: bool = True,
        classifier: bool = False,
    ) -> str:
        """Issue exactly one completion request and report it as one usage increment."""
        llm = (self.classifier_llm or self.llm) if classifier else self.llm
        model = str(getattr(llm, "model", "") or "")
        self.usage(phase, model=model)
        started = time.time()
        self.trace("llm_request", {"phase": phase, "model": model, "prompt_chars": len(prompt)})
        text = await llm.complete(prompt, json_output=json_output)
        self.trace(
            "llm_response",
            {
                "phase": phase,
                "model": model,
                "duration_s": round(time.time() - started, 3),
                "content_chars": len(text or ""),
            },
        )
        return text or ""
