"""Abstract base class for chat providers."""

from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List


class ChatProvider(ABC):
    """Common generate capability; providers are tried in priority order."""

    name = "base"
    supports_images = False
    supports_streaming = False

    @property
    @abstractmethod
    def configured(self) -> bool:
        """True when the provider has the credentials it needs."""
        pass

    @abstractmethod
    async def generate(
        self,
        messages: List[Dict[str, Any]],
        *,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> str:
        """Return one complete response for an OpenAI-style message list.

        Args:
            messages: [{"role": ..., "content": ...}] with the system prompt first
            max_tokens: Output token limit
            temperature: Sampling temperature

        Returns:
            Assistant response text
        """
        pass

    async def open_stream(
        self,
        messages: List[Dict[str, Any]],
        *,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> AsyncIterator[str]:
        """Start a token stream.

        Raises before returning when the stream cannot be initiated, so the
        caller can fall back to `generate`. The returned iterator yields text
        deltas in arrival order.
        """
        raise NotImplementedError(f"{self.name} does not stream")
