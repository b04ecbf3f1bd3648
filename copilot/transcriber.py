"""Transcriber abstraction for audio-to-text conversion."""

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence
import base64
import logging
import time

import httpx

from copilot.config import Config
from copilot.errors import AllProvidersFailed
from copilot.prompt import TRANSCRIBE_PROMPT
from copilot.providers.gemini import GeminiProvider

logger = logging.getLogger(__name__)


class Transcriber(ABC):
    """Abstract interface for transcription providers."""

    name = "base"

    @property
    @abstractmethod
    def configured(self) -> bool:
        """True when the provider has the credentials it needs."""
        pass

    @abstractmethod
    async def transcribe(self, audio: bytes, mime_type: str = "audio/wav", filename: str = "audio.wav") -> str:
        """Transcribe one audio file.

        Args:
            audio: Encoded audio bytes
            mime_type: Container type of `audio`
            filename: Name sent with multipart uploads

        Returns:
            Plain recognized text ("" when nothing was said)
        """
        pass


class WhisperTranscriber(Transcriber):
    """OpenAI Whisper transcription. Primary provider."""

    name = "whisper"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 60,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = (api_key if api_key is not None else Config.OPENAI_API_KEY) or ""
        self.model = model or Config.OPENAI_TRANSCRIBE_MODEL
        self.base_url = (base_url or Config.OPENAI_BASE_URL).rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def transcribe(self, audio: bytes, mime_type: str = "audio/wav", filename: str = "audio.wav") -> str:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            r = await client.post(
                f"{self.base_url}/audio/transcriptions",
                headers={"Authorization": f"Bearer {self.api_key}"},
                data={"model": self.model, "response_format": "text"},
                files={"file": (filename, audio, mime_type)},
            )
            r.raise_for_status()
        return r.text.strip()


class GeminiTranscriber(Transcriber):
    """Gemini inline-audio transcription on the lighter flash model. Fallback provider."""

    name = "gemini"

    def __init__(self, provider: Optional[GeminiProvider] = None, model: Optional[str] = None):
        self.provider = provider or GeminiProvider()
        self.model = model or Config.GEMINI_TRANSCRIBE_MODEL

    @property
    def configured(self) -> bool:
        return self.provider.configured

    async def transcribe(self, audio: bytes, mime_type: str = "audio/wav", filename: str = "audio.wav") -> str:
        parts = [
            {"text": TRANSCRIBE_PROMPT},
            {"inlineData": {"mimeType": mime_type, "data": base64.b64encode(audio).decode("ascii")}},
        ]
        text = await self.provider.generate_content(parts, model=self.model, max_tokens=1000, temperature=0)
        return text.strip()


class FallbackTranscriber(Transcriber):
    """Fixed priority list of transcribers, tried one after another.

    Attempts run sequentially so a slow primary is never billed twice
    alongside its fallback.
    """

    name = "fallback"

    def __init__(self, transcribers: Sequence[Transcriber]):
        self.transcribers: List[Transcriber] = list(transcribers)

    @property
    def configured(self) -> bool:
        return any(t.configured for t in self.transcribers)

    async def transcribe(self, audio: bytes, mime_type: str = "audio/wav", filename: str = "audio.wav") -> str:
        errors = []
        for transcriber in self.transcribers:
            if not transcriber.configured:
                continue
            start = time.monotonic()
            try:
                text = await transcriber.transcribe(audio, mime_type=mime_type, filename=filename)
            except Exception as e:
                logger.warning("[TRANSCRIBE] %s failed: %s", transcriber.name, e)
                errors.append(e)
                continue
            logger.info("[TRANSCRIBE] %s completed in %dms", transcriber.name, int((time.monotonic() - start) * 1000))
            return text

        raise AllProvidersFailed(errors=errors)


def create_transcriber() -> FallbackTranscriber:
    """Whisper first, Gemini flash as the single fallback."""
    return FallbackTranscriber([WhisperTranscriber(), GeminiTranscriber()])
