from __future__ import annotations
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from copilot.models import PersonaConfig


class Turn(BaseModel):
    """One entry of the conversation history sent by the client."""
    model_config = ConfigDict(extra="ignore")

    role: Literal["user", "assistant"]
    content: str = ""


class Persona(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    use_case: Literal["interview", "sales", "meeting", "custom"] = Field(alias="useCase")
    user_data: str = Field(default="", alias="userData")

    def to_config(self) -> PersonaConfig:
        return PersonaConfig(use_case=self.use_case, user_data=self.user_data)


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["chat"]
    message: str = ""
    conversation_history: List[Turn] = Field(default_factory=list, alias="conversationHistory")
    image_data: Optional[str] = Field(default=None, alias="imageData")
    stream: bool = False
    persona: Optional[Persona] = None


class SetupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["setup"]
    use_case: str = Field(default="", alias="useCase")
    user_data: str = Field(default="", alias="userData")


class AnalyzeRequest(BaseModel):
    type: Literal["analyze_session"]
    history: List[Turn] = Field(default_factory=list)


def history_dicts(turns: List[Turn]) -> List[Dict[str, Any]]:
    return [{"role": t.role, "content": t.content} for t in turns]
