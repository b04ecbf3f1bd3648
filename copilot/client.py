"""HTTP client for the co-pilot API; also the client-side transcription backend."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

import httpx

from copilot.config import Config
from copilot.errors import AllProvidersFailed, InsufficientCredits, ProviderError, Unauthorized
from copilot.models import AudioChunk, PersonaConfig

logger = logging.getLogger(__name__)

TokenProvider = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class CopilotApiClient:
    """Talks to `/api/copilot`. One instance per signed-in user."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        token: Union[str, TokenProvider, None] = None,
        timeout: float = 90,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_wait_s: float = 4.0,
    ):
        self.base_url = (base_url or Config.SERVER_URL).rstrip("/")
        self._token = token if token is not None else Config.AUTH_TOKEN
        self._token_wait_s = token_wait_s
        self._http = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def aclose(self) -> None:
        await self._http.aclose()

    async def __aenter__(self) -> "CopilotApiClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def _get_token(self) -> Optional[str]:
        if self._token is None or isinstance(self._token, str):
            return self._token
        result = self._token()
        if asyncio.iscoroutine(result):
            result = await result
        return result

    async def auth_headers(self) -> Dict[str, str]:
        """Wait briefly for a token so requests right after sign-in are not anonymous."""
        deadline = time.monotonic() + self._token_wait_s
        token = await self._get_token()
        while not token and callable(self._token) and time.monotonic() < deadline:
            await asyncio.sleep(0.15)
            token = await self._get_token()
        return {"Authorization": f"Bearer {token}"} if token else {}

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            return str(response.json().get("error", "")) or response.reason_phrase
        except ValueError:
            return response.reason_phrase

    def _raise_for_auth_and_credits(self, response: httpx.Response) -> None:
        if response.status_code == 401:
            raise Unauthorized()
        if response.status_code == 402:
            raise InsufficientCredits()

    async def transcribe(self, chunk: AudioChunk) -> str:
        """Send one chunk for transcription.

        Returns:
            Transcript text; "" when the server detected no speech

        Raises:
            Unauthorized, InsufficientCredits, AllProvidersFailed
        """
        headers = await self.auth_headers()
        if not chunk.is_final:
            # Interim requests are exempt from billing
            headers["x-interim"] = "true"

        try:
            r = await self._http.post(
                "/api/copilot",
                data={"type": "transcribe"},
                files={"audio": (chunk.filename, chunk.data, chunk.mime_type)},
                headers=headers,
            )
        except httpx.HTTPError as e:
            raise AllProvidersFailed(f"Transcription request failed: {e}", errors=[e]) from e

        self._raise_for_auth_and_credits(r)
        if r.status_code == 400 and self._error_message(r) == "No speech detected":
            return ""
        if r.status_code >= 400:
            raise AllProvidersFailed(f"Transcription failed ({r.status_code}): {self._error_message(r)}")

        return str(r.json().get("transcript", "")).strip()

    async def stream_chat(
        self,
        message: str,
        history: List[Dict[str, Any]],
        image_data: Optional[str] = None,
        persona: Optional[PersonaConfig] = None,
        on_accepted: Optional[Callable[[Optional[int]], None]] = None,
    ) -> AsyncIterator[str]:
        """Request a chat reply and yield text as it arrives.

        `on_accepted(remaining_credits)` runs once the server has accepted
        (and billed) the request, before the first token. A JSON reply (server-side
        non-streaming fallback) is yielded as a single piece.
        """
        body: Dict[str, Any] = {
            "type": "chat",
            "message": message,
            "conversationHistory": history,
            "stream": True,
        }
        if image_data:
            body["imageData"] = image_data
        if persona is not None:
            body["persona"] = persona.to_dict()

        headers = await self.auth_headers()
        try:
            async with self._http.stream("POST", "/api/copilot", json=body, headers=headers) as r:
                if r.status_code >= 400:
                    await r.aread()
                    self._raise_for_auth_and_credits(r)
                    raise ProviderError(f"Chat failed ({r.status_code}): {self._error_message(r)}")

                if r.headers.get("content-type", "").startswith("application/json"):
                    await r.aread()
                    data = r.json()
                    if not data.get("success"):
                        raise ProviderError(str(data.get("error", "Chat failed")))
                    if on_accepted is not None:
                        on_accepted(_as_int(data.get("remainingCredits")))
                    yield str(data.get("response", ""))
                    return

                if on_accepted is not None:
                    on_accepted(_as_int(r.headers.get("x-remaining-credits")))

                async for text in r.aiter_text():
                    if text:
                        yield text
        except httpx.HTTPError as e:
            raise ProviderError(f"Chat request failed: {e}") from e

    async def setup(self, persona: PersonaConfig) -> PersonaConfig:
        """Validate a persona with the server; returns the normalized (truncated) persona."""
        body = {"type": "setup", "useCase": persona.use_case, "userData": persona.user_data}
        r = await self._http.post("/api/copilot", json=body, headers=await self.auth_headers())
        if r.status_code >= 400:
            raise ValueError(self._error_message(r))
        return PersonaConfig.from_dict(r.json().get("persona")) or persona

    async def analyze_session(self, history: List[Dict[str, Any]]) -> str:
        """Markdown coaching report for the whole conversation."""
        body = {"type": "analyze_session", "history": history[-200:]}
        try:
            r = await self._http.post("/api/copilot", json=body, headers=await self.auth_headers())
        except httpx.HTTPError as e:
            raise ProviderError(f"Analysis request failed: {e}") from e
        self._raise_for_auth_and_credits(r)
        if r.status_code >= 400:
            raise ProviderError("Analysis failed")
        data = r.json()
        if data.get("success") and data.get("report"):
            return str(data["report"])
        raise ProviderError("Analysis failed")

    async def get_credits(self, plan: str = "free") -> int:
        r = await self._http.get("/api/credits", params={"plan": plan}, headers=await self.auth_headers())
        self._raise_for_auth_and_credits(r)
        r.raise_for_status()
        return int(r.json()["credits"])
