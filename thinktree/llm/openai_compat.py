from __future__ import annotations

import os
import re
from dataclasses import dataclass
from typing import Any


class LLMConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class ChatCompletionResult:
    content: str
    raw: dict[str, Any]


_RATE_LIMIT_RE = re.compile(
    r"\b429\b|rate[\s_-]?limit|resource[\s_-]?exhausted|too many requests|quota",
    re.IGNORECASE,
)


def is_rate_limit_error(exc: BaseException) -> bool:
    """Detect a provider rate-limit signal (HTTP 429 or a known message pattern)."""
    for attr in ("status_code", "status", "code"):
        value = getattr(exc, attr, None)
        if value == 429 or value == "429":
            return True
    return bool(_RATE_LIMIT_RE.search(str(exc)))


class OpenAICompatibleChatClient:
    """Async OpenAI-compatible completion client.

    One prompt in, raw text out. When `json_output` is requested the provider is
    asked for a JSON object, but callers still parse defensively: gateways are
    free to ignore `response_format`.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        timeout_s: float | None = None,
    ) -> None:
        self.base_url = (
            base_url
            or os.getenv("OPENAI_API_BASE")
            or os.getenv("OPENAI_BASE_URL")
            or "https://api.openai.com/v1"
        )
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model or os.getenv("LLM_MODEL") or os.getenv("OPENAI_MODEL") or "gpt-4o-mini"
        self.temperature = float(temperature)
        self.timeout_s = timeout_s

        if not self.api_key:
            raise LLMConfigError("Missing OPENAI_API_KEY (or provide api_key explicitly).")

        try:
            from openai import AsyncOpenAI  # type: ignore
        except Exception as e:
            raise LLMConfigError("Missing dependency: openai. Install it in the runtime environment.") from e

        self._client = AsyncOpenAI(base_url=self.base_url, api_key=self.api_key, timeout=self.timeout_s)

    def with_model(self, model: str) -> "OpenAICompatibleChatClient":
        """Return a client sharing this connection config but targeting another model."""
        if not model or model == self.model:
            return self
        return OpenAICompatibleChatClient(
            base_url=self.base_url,
            api_key=self.api_key,
            model=model,
            temperature=self.temperature,
            timeout_s=self.timeout_s,
        )

    async def chat(
        self,
        *,
        messages: list[dict[str, Any]],
        json_output: bool = False,
        extra: dict[str, Any] | None = None,
    ) -> ChatCompletionResult:
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
        }
        if json_output:
            payload["response_format"] = {"type": "json_object"}
        if extra:
            payload.update(extra)

        resp = await self._client.chat.completions.create(**payload)
        raw = resp.model_dump()
        msg = resp.choices[0].message
        return ChatCompletionResult(content=(msg.content or "").strip(), raw=raw)

    async def complete(self, prompt: str, *, json_output: bool = False) -> str:
        result = await self.chat(
            messages=[{"role": "user", "content": prompt}],
            json_output=json_output,
        )
        return result.content
