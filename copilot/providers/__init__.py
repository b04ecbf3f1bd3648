"""Chat provider registry and fallback chain."""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from copilot.errors import ProviderError
from copilot.providers.base import ChatProvider

logger = logging.getLogger(__name__)


def create_provider(provider_type: str, **kwargs) -> ChatProvider:
    """Factory function to create a chat provider instance based on type.

    Args:
        provider_type: Type of provider to create ("openai" or "gemini")

    Returns:
        ChatProvider instance

    Raises:
        ValueError: If provider_type is not supported
    """
    provider_type = provider_type.lower()

    if provider_type == "openai":
        from copilot.providers.openai import OpenAIProvider
        return OpenAIProvider(**kwargs)
    elif provider_type == "gemini":
        from copilot.providers.gemini import GeminiProvider
        return GeminiProvider(**kwargs)
    else:
        raise ValueError(
            f"Unsupported provider type: '{provider_type}'. "
            f"Supported types are: 'openai', 'gemini'"
        )


# Fixed priority: OpenAI first, Gemini as the single fallback
DEFAULT_PRIORITY = ("openai", "gemini")


def create_chat_providers(priority: Sequence[str] = DEFAULT_PRIORITY) -> List[ChatProvider]:
    return [create_provider(name) for name in priority]


async def generate_with_fallback(
    providers: Sequence[ChatProvider],
    messages: List[Dict[str, Any]],
    *,
    text_only_messages: Optional[List[Dict[str, Any]]] = None,
    max_tokens: int = 1000,
    temperature: float = 0.7,
) -> Tuple[str, str]:
    """Try each configured provider once, in order.

    Providers without image support receive `text_only_messages` when given.

    Returns:
        (response text, provider name)

    Raises:
        ProviderError: If every provider failed or none is configured
    """
    errors = []
    for provider in providers:
        if not provider.configured:
            continue
        msgs = messages
        if text_only_messages is not None and not provider.supports_images:
            msgs = text_only_messages
        try:
            text = await provider.generate(msgs, max_tokens=max_tokens, temperature=temperature)
            return text, provider.name
        except Exception as e:
            logger.warning("[CHAT] %s generation failed: %s", provider.name, e)
            errors.append(e)

    if not errors:
        raise ProviderError("No AI provider configured (OPENAI_API_KEY/GEMINI_API_KEY missing)")
    raise ProviderError(f"Chat failed: {errors[-1]}")


async def open_first_stream(
    providers: Sequence[ChatProvider],
    messages: List[Dict[str, Any]],
    *,
    max_tokens: int = 1000,
    temperature: float = 0.7,
) -> Optional[AsyncIterator[str]]:
    """Open a token stream on the first streaming-capable provider.

    Returns None when the stream cannot be initiated; the caller then
    answers with a non-streamed response.
    """
    for provider in providers:
        if not (provider.configured and provider.supports_streaming):
            continue
        try:
            return await provider.open_stream(messages, max_tokens=max_tokens, temperature=temperature)
        except Exception as e:
            logger.warning("[CHAT] %s stream initiation failed: %s", provider.name, e)
            return None
    return None


def any_configured(providers: Sequence[ChatProvider]) -> bool:
    return any(p.configured for p in providers)


__all__ = [
    "ChatProvider",
    "create_provider",
    "create_chat_providers",
    "generate_with_fallback",
    "open_first_stream",
    "any_configured",
]
