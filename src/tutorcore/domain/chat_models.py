from __future__ import annotations

from typing import List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field


Role = Literal["user", "assistant"]


class ConversationTurn(BaseModel):
    model_config = ConfigDict(frozen=True)

    conversation_id: str
    role: Role
    content: str
    sequence: int = Field(ge=0)
    created_at: str


class TurnCreate(BaseModel):
    role: Role = "user"
    content: str


class FollowUpSet(BaseModel):
    conversation_id: str
    questions: List[str] = []
    updated_at: Optional[str] = None


# Realtime protocol frames: {"event": <name>, "data": {...}}


class GenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: str = Field(alias="conversationId", min_length=1)
    message: str
    user_id: Optional[str] = Field(default=None, alias="userId")
    role: Role = "user"


class ChunkEvent(BaseModel):
    event: Literal["chunk"] = "chunk"
    chunk: str

    def frame(self) -> dict:
        return {"event": self.event, "data": {"chunk": self.chunk}}


class CompleteEvent(BaseModel):
    event: Literal["complete"] = "complete"
    message: str
    conversation_id: str

    def frame(self) -> dict:
        return {
            "event": self.event,
            "data": {"message": self.message, "conversationId": self.conversation_id},
        }


class ErrorEvent(BaseModel):
    event: Literal["error"] = "error"
    error: str
    code: str = "generation_failure"

    def frame(self) -> dict:
        return {"event": self.event, "data": {"error": self.error, "code": self.code}}
