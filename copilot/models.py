"""Data models for the co-pilot runtime."""

from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional
import time


@dataclass(frozen=True)
class AudioChunk:
    """An immutable audio segment handed from the recorder to the transcription queue."""
    data: bytes  # WAV container, PCM16 mono
    is_final: bool  # True for the whole recording, False for the rolling window
    created_at: float = field(default_factory=time.time)
    mime_type: str = "audio/wav"

    @property
    def filename(self) -> str:
        return f"qa-{int(self.created_at * 1000)}.wav"


@dataclass(frozen=True)
class TranscriptionJob:
    """A queued request to transcribe one chunk."""
    chunk: AudioChunk

    @property
    def is_final(self) -> bool:
        return self.chunk.is_final


@dataclass
class ConversationTurn:
    """A message in the co-pilot conversation."""
    role: Literal["user", "assistant"]
    content: str
    image_data: Optional[str] = None  # data URL for screenshot turns
    failed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.image_data:
            out["imageData"] = self.image_data
        if self.failed:
            out["failed"] = True
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ConversationTurn":
        return cls(
            role=data.get("role", "user"),
            content=str(data.get("content", "")),
            image_data=data.get("imageData"),
            failed=bool(data.get("failed", False)),
        )

    def to_history(self) -> Dict[str, str]:
        """Plain {role, content} pair sent as conversation history."""
        return {"role": self.role, "content": self.content}


USE_CASES = ("interview", "sales", "meeting", "custom")


@dataclass(frozen=True)
class PersonaConfig:
    """Behavioral profile passed along with every chat request."""
    use_case: str = "custom"
    user_data: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"useCase": self.use_case, "userData": self.user_data}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["PersonaConfig"]:
        if not data:
            return None
        use_case = str(data.get("useCase", "")).strip().lower()
        if use_case not in USE_CASES:
            return None
        return cls(use_case=use_case, user_data=str(data.get("userData", "")))


@dataclass(frozen=True)
class DebitResult:
    """Outcome of a ledger debit."""
    ok: bool
    remaining: Optional[int] = None
