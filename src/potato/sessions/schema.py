from typing import Literal

from pydantic import BaseModel, Field


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: str
    model: str


class ChatSession(BaseModel):
    id: str
    title: str
    messages: list[ChatMessage] = Field(default_factory=list)
    created_at: str
    model: str
    backend_conversation_id: str | None = None
