from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict


class ToolPhase(str, Enum):
    START = "start"
    RESULT = "result"
    ASK = "ask"
    APPROVAL = "approval"

    @property
    def is_interrupt(self) -> bool:
        return self in (ToolPhase.ASK, ToolPhase.APPROVAL)


class UsageInfo(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0


class ToolActivity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tool_id: str = ""
    tool_name: str
    phase: ToolPhase
    input: dict[str, Any] | None = None
    result: str | None = None
    is_error: bool | None = None


class StreamChunk(BaseModel):
    """One unit on the backend channel; every field is optional."""

    model_config = ConfigDict(extra="ignore")

    content: str = ""
    done: bool = False
    session_id: str | None = None
    usage: UsageInfo | None = None
    tool: ToolActivity | None = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)
