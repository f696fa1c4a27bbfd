from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone

from common.ids import generate_id
from potato.sessions.schema import ChatMessage, ChatSession
from potato.sessions.store import derive_title


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Turn:
    message: str
    model: str
    streaming: bool = True
    status: str = "streaming"
    _parts: list[str] = field(default_factory=list)

    def append(self, text: str) -> None:
        self._parts.append(text)

    @property
    def accumulated_text(self) -> str:
        return "".join(self._parts)

    def finish(self, status: str) -> str:
        """End the turn and hand back the accumulated text."""
        self.streaming = False
        self.status = status
        text = self.accumulated_text
        self._parts.clear()
        return text


@dataclass
class SessionContext:
    session_id: str | None = None
    backend_conversation_id: str | None = None
    messages: list[ChatMessage] = field(default_factory=list)
    expired: bool = False
    created_at: str | None = None
    approved_tools: list[str] = field(default_factory=list)

    def ensure_id(self) -> str:
        if self.session_id is None:
            self.session_id = generate_id()
        return self.session_id

    @property
    def has_content(self) -> bool:
        return self.session_id is not None and bool(self.messages)

    def add_message(self, role: str, content: str, model: str) -> ChatMessage:
        message = ChatMessage(role=role, content=content, timestamp=now_iso(), model=model)
        if not self.messages and self.created_at is None:
            self.created_at = message.timestamp
        self.messages.append(message)
        return message

    def approve_tool(self, tool_name: str) -> None:
        if tool_name not in self.approved_tools:
            self.approved_tools.append(tool_name)

    def to_chat_session(self, model: str, title_max_chars: int = 50) -> ChatSession:
        return ChatSession(
            id=self.ensure_id(),
            title=derive_title(self.messages, title_max_chars),
            messages=list(self.messages),
            created_at=self.created_at or (self.messages[0].timestamp if self.messages else now_iso()),
            model=model,
            backend_conversation_id=self.backend_conversation_id,
        )

    @classmethod
    def from_chat_session(cls, session: ChatSession) -> SessionContext:
        return cls(
            session_id=session.id,
            backend_conversation_id=session.backend_conversation_id,
            messages=list(session.messages),
            created_at=session.created_at,
        )
