from __future__ import annotations
import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx

from copilot.config import Config
from copilot.providers.base import ChatProvider

logger = logging.getLogger(__name__)


class OpenAIProvider(ChatProvider):
    """OpenAI chat completions over REST (streaming and vision capable)."""

    name = "openai"
    supports_images = True
    supports_streaming = True

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 90,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = (api_key if api_key is not None else Config.OPENAI_API_KEY) or ""
        self.model = model or Config.OPENAI_CHAT_MODEL
        self.base_url = (base_url or Config.OPENAI_BASE_URL).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _client(self, timeout: Optional[float] = None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=timeout or self.timeout,
            headers={"Authorization": f"Bearer {self.api_key}"},
            transport=self._transport,
        )

    def _body(self, messages: List[Dict[str, Any]], max_tokens: int, temperature: float, stream: bool) -> Dict[str, Any]:
        return {
            "model": self.model,
            "messages": messages,
            "max_tokens": max_tokens,
            "temperature": temperature,
            "stream": stream,
        }

    async def generate(
        self,
        messages: List[Dict[str, Any]],
        *,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> str:
        if not self.configured:
            raise RuntimeError("OPENAI_API_KEY is not set.")

        async with self._client() as client:
            r = await client.post(
                f"{self.base_url}/chat/completions",
                json=self._body(messages, max_tokens, temperature, stream=False),
            )
            r.raise_for_status()
            data = r.json()

        choices = data.get("choices") or []
        content = ((choices[0] if choices else {}).get("message") or {}).get("content") or ""
        return content or "Sorry, I could not generate a response."

    async def open_stream(
        self,
        messages: List[Dict[str, Any]],
        *,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> AsyncIterator[str]:
        if not self.configured:
            raise RuntimeError("OPENAI_API_KEY is not set.")

        client = self._client()
        try:
            request = client.build_request(
                "POST",
                f"{self.base_url}/chat/completions",
                json=self._body(messages, max_tokens, temperature, stream=True),
            )
            response = await client.send(request, stream=True)
            if response.status_code >= 400:
                await response.aread()
                await response.aclose()
                response.raise_for_status()
        except Exception:
            await client.aclose()
            raise

        return self._iter_deltas(client, response)

    async def _iter_deltas(self, client: httpx.AsyncClient, response: httpx.Response) -> AsyncIterator[str]:
        """Parse server-sent `data:` lines into content deltas."""
        try:
            async for line in response.aiter_lines():
                line = line.strip()
                if not line.startswith("data:"):
                    continue
                payload = line[len("data:"):].strip()
                if payload == "[DONE]":
                    break
                try:
                    data = json.loads(payload)
                except ValueError:
                    continue
                choices = data.get("choices") or []
                delta = ((choices[0] if choices else {}).get("delta") or {}).get("content") or ""
                if delta:
                    yield delta
        finally:
            await response.aclose()
            await client.aclose()
