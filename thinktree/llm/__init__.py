from .openai_compat import (
    ChatCompletionResult,
    LLMConfigError,
    OpenAICompatibleChatClient,
    is_rate_limit_error,
)

__all__ = [
    "ChatCompletionResult",
    "LLMConfigError",
    "OpenAICompatibleChatClient",
    "is_rate_limit_error",
]
