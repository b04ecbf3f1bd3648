from __future__ import annotations
import logging
from typing import Any, Dict, List, Optional

import httpx

from copilot.config import Config
from copilot.prompt import render_transcript
from copilot.providers.base import ChatProvider

logger = logging.getLogger(__name__)


def extract_text(data: Dict[str, Any]) -> str:
    """Concatenate the text parts of the first candidate."""
    candidates = data.get("candidates") or []
    if not candidates:
        return ""
    parts = ((candidates[0].get("content") or {}).get("parts") or [])
    return "".join(p.get("text", "") for p in parts if isinstance(p, dict))


class GeminiProvider(ChatProvider):
    """
    Gemini Developer API generateContent endpoint.
    Used as the fallback chat provider; history is flattened into one prompt.
    """

    name = "gemini"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 90,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = (api_key if api_key is not None else Config.GEMINI_API_KEY) or ""
        self.model = model or Config.GEMINI_MODEL
        self.base_url = (base_url or Config.GEMINI_BASE_URL).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def generate_content(
        self,
        parts: List[Dict[str, Any]],
        *,
        model: Optional[str] = None,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> str:
        """POST /v1beta/models/{model}:generateContent with one user turn."""
        if not self.configured:
            raise RuntimeError("GEMINI_API_KEY is not set.")

        url = f"{self.base_url}/v1beta/models/{model or self.model}:generateContent"
        body = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": {
                "maxOutputTokens": max_tokens,
                "temperature": temperature,
            },
        }
        headers = {
            "Content-Type": "application/json",
            "x-goog-api-key": self.api_key,
        }

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            r = await client.post(url, json=body, headers=headers)
            r.raise_for_status()
            data = r.json()

        return extract_text(data)

    async def generate(
        self,
        messages: List[Dict[str, Any]],
        *,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ) -> str:
        prompt = render_transcript(messages)
        text = await self.generate_content([{"text": prompt}], max_tokens=max_tokens, temperature=temperature)
        return text or "Sorry, I could not generate a response."
