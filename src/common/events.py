from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, TypeAlias


@dataclass(frozen=True, slots=True)
class TurnStartedEvent:
    session_id: str
    message: str
    model: str


@dataclass(frozen=True, slots=True)
class TextDeltaEvent:
    text: str


@dataclass(frozen=True, slots=True)
class ToolStartEvent:
    tool_id: str
    tool_name: str
    input: dict = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ToolResultEvent:
    tool_id: str
    tool_name: str
    result: str
    is_error: bool = False
    truncated: bool = False


@dataclass(frozen=True, slots=True)
class AwaitingApprovalEvent:
    tool_id: str
    tool_name: str
    input: dict = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class AwaitingAnswerEvent:
    tool_id: str
    questions: tuple[Any, ...] = ()


@dataclass(frozen=True, slots=True)
class TurnCompletedEvent:
    content: str
    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass(frozen=True, slots=True)
class TurnStoppedEvent:
    partial: str = ""


@dataclass(frozen=True, slots=True)
class TurnErroredEvent:
    message: str
    partial: str = ""


@dataclass(frozen=True, slots=True)
class InactivityWarningEvent:
    seconds_left: float


@dataclass(frozen=True, slots=True)
class SessionExpiredEvent:
    session_id: str | None
    message: str


@dataclass(frozen=True, slots=True)
class NoticeEvent:
    message: str
    level: str = "info"


Event: TypeAlias = (
    TurnStartedEvent
    | TextDeltaEvent
    | ToolStartEvent
    | ToolResultEvent
    | AwaitingApprovalEvent
    | AwaitingAnswerEvent
    | TurnCompletedEvent
    | TurnStoppedEvent
    | TurnErroredEvent
    | InactivityWarningEvent
    | SessionExpiredEvent
    | NoticeEvent
)
EventCallback: TypeAlias = Callable[[Event], None] | None


class EventEmitter:
    def __init__(self, callback: EventCallback = None):
        self._callback = callback

    def emit(self, event: Event) -> None:
        if self._callback is not None:
            self._callback(event)

    def notice(self, message: str) -> None:
        self.emit(NoticeEvent(message=message))

    def error(self, message: str) -> None:
        self.emit(NoticeEvent(message=message, level="error"))
