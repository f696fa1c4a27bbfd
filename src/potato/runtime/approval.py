"""Tool approval state machine and resumption messages.

The backend process is already gone when an ``approval`` or ``ask`` unit
arrives, so every resolution is a new user turn whose text restates what
should happen next. The tool kinds below form a closed set; anything not
recognised is rendered by the generic arm.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import singledispatch
from typing import Any, TypeAlias

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from common.events import (
    AwaitingAnswerEvent,
    AwaitingApprovalEvent,
    Event,
    ToolResultEvent,
    ToolStartEvent,
)
from potato.errors import PreconditionError
from potato.protocol.decoder import ToolEvent
from potato.protocol.units import ToolPhase

logger = logging.getLogger(__name__)


class ApprovalState(str, Enum):
    IDLE = "idle"
    TOOL_RUNNING = "tool_running"
    TOOL_DONE = "tool_done"
    AWAITING_APPROVAL = "awaiting_approval"
    AWAITING_ANSWER = "awaiting_answer"


@dataclass(frozen=True, slots=True)
class WriteCall:
    file_path: str


@dataclass(frozen=True, slots=True)
class EditCall:
    file_path: str
    old_string: str | None = None
    new_string: str | None = None


@dataclass(frozen=True, slots=True)
class BashCall:
    command: str


@dataclass(frozen=True, slots=True)
class WebFetchCall:
    url: str


@dataclass(frozen=True, slots=True)
class WebSearchCall:
    query: str


@dataclass(frozen=True, slots=True)
class GenericCall:
    name: str
    params: dict[str, Any] = field(default_factory=dict)


ToolCall: TypeAlias = WriteCall | EditCall | BashCall | WebFetchCall | WebSearchCall | GenericCall


def _text(params: dict[str, Any], key: str) -> str | None:
    value = params.get(key)
    return value if isinstance(value, str) else None


def classify_tool_call(name: str, params: dict[str, Any]) -> ToolCall:
    if name == "Write" and _text(params, "file_path"):
        return WriteCall(file_path=params["file_path"])
    if name == "Edit" and _text(params, "file_path"):
        return EditCall(
            file_path=params["file_path"],
            old_string=_text(params, "old_string"),
            new_string=_text(params, "new_string"),
        )
    if name == "Bash" and _text(params, "command"):
        return BashCall(command=params["command"])
    if name == "WebFetch" and _text(params, "url"):
        return WebFetchCall(url=params["url"])
    if name == "WebSearch" and _text(params, "query"):
        return WebSearchCall(query=params["query"])
    return GenericCall(name=name, params=dict(params))


@singledispatch
def approval_instructions(call: Any, max_params_chars: int = 500) -> str:
    name = getattr(call, "name", "the tool")
    params = getattr(call, "params", {}) or {}
    text = f"Use {name} with the parameters you had planned."
    if params:
        rendered = json.dumps(params, ensure_ascii=False, separators=(",", ":"))
        text += "\nParameters: " + rendered[:max_params_chars]
    return text


@approval_instructions.register
def _(call: WriteCall, max_params_chars: int = 500) -> str:
    return (
        f'Create the file "{call.file_path}" with exactly the same content '
        "you were going to write. Do it now."
    )


@approval_instructions.register
def _(call: EditCall, max_params_chars: int = 500) -> str:
    text = f'Edit the file "{call.file_path}". '
    if call.old_string:
        return text + f"Replace:\n{call.old_string}\nWith:\n{call.new_string or ''}"
    return text + "Apply the change you were going to make."


@approval_instructions.register
def _(call: BashCall, max_params_chars: int = 500) -> str:
    return f"Run this command:\n{call.command}"


@approval_instructions.register
def _(call: WebFetchCall, max_params_chars: int = 500) -> str:
    return f"Fetch: {call.url}"


@approval_instructions.register
def _(call: WebSearchCall, max_params_chars: int = 500) -> str:
    return f"Search: {call.query}"


def approval_message(call: ToolCall, max_params_chars: int = 500) -> str:
    return "APPROVED. " + approval_instructions(call, max_params_chars=max_params_chars)


def denial_message(tool_name: str) -> str:
    return (
        f"DENIED: do NOT use {tool_name}. Find another way to solve the task "
        "without using that tool."
    )


def answers_message(pairs: list[tuple[str, str]]) -> str:
    lines = [f'"{question}" -> {answer}' for question, answer in pairs]
    if len(lines) == 1:
        return f"My answer: {lines[0]}"
    return "My answers:\n" + "\n".join(lines)


class QuestionOption(BaseModel):
    model_config = ConfigDict(extra="ignore")

    label: str
    description: str = ""


class Question(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    question: str
    header: str = ""
    options: list[QuestionOption] = Field(default_factory=list)
    multi_select: bool = Field(default=False, alias="multiSelect")


def parse_questions(params: dict[str, Any]) -> list[Question]:
    raw = params.get("questions")
    if not isinstance(raw, list):
        raw = [params] if isinstance(params.get("question"), str) else []

    questions = []
    for item in raw:
        try:
            questions.append(Question.model_validate(item))
        except ValidationError:
            logger.debug("Skipping malformed question: %r", item)
    if not questions:
        questions.append(Question(question="Claude is waiting for your input"))
    return questions


@dataclass
class ApprovalRequest:
    tool_id: str
    tool_name: str
    input: dict[str, Any]
    call: ToolCall


@dataclass
class AskRequest:
    tool_id: str
    questions: list[Question]
    answers: dict[int, str] = field(default_factory=dict)

    def answer(self, index: int, text: str) -> None:
        if not 0 <= index < len(self.questions):
            raise PreconditionError(f"No question number {index + 1}")
        text = text.strip()
        if text:
            self.answers[index] = text
        else:
            self.answers.pop(index, None)

    @property
    def can_submit(self) -> bool:
        return all(self.answers.get(i) for i in range(len(self.questions)))

    def pairs(self) -> list[tuple[str, str]]:
        return [(q.question, self.answers[i]) for i, q in enumerate(self.questions)]


class ToolApprovalMachine:
    def __init__(self, *, result_preview_chars: int = 2000, params_max_chars: int = 500):
        self.result_preview_chars = result_preview_chars
        self.params_max_chars = params_max_chars
        self.state = ApprovalState.IDLE
        self.running: dict[str, ToolEvent] = {}
        self.pending_approval: ApprovalRequest | None = None
        self.pending_ask: AskRequest | None = None

    @property
    def awaiting_input(self) -> bool:
        return self.state in (ApprovalState.AWAITING_APPROVAL, ApprovalState.AWAITING_ANSWER)

    def _move(self, state: ApprovalState) -> None:
        if state is not self.state:
            logger.debug("Approval state %s -> %s", self.state.value, state.value)
        self.state = state

    def handle(self, event: ToolEvent) -> Event | None:
        """Advance on one tool-phase event and return what to show, if anything."""
        if self.awaiting_input:
            logger.debug("Ignoring %s for %s while awaiting input", event.phase.value, event.tool_name)
            return None

        if event.phase is ToolPhase.START:
            self.running[event.tool_id] = event
            self._move(ApprovalState.TOOL_RUNNING)
            return ToolStartEvent(tool_id=event.tool_id, tool_name=event.tool_name, input=event.input)

        if event.phase is ToolPhase.RESULT:
            started = self.running.pop(event.tool_id, None)
            if started is None:
                logger.debug("Dropping result for unknown tool id %r", event.tool_id)
                return None
            self._move(ApprovalState.TOOL_DONE)
            self._move(ApprovalState.TOOL_RUNNING if self.running else ApprovalState.IDLE)
            body = event.result or ""
            truncated = len(body) > self.result_preview_chars
            return ToolResultEvent(
                tool_id=event.tool_id,
                tool_name=started.tool_name,
                result=body[: self.result_preview_chars],
                is_error=event.is_error,
                truncated=truncated,
            )

        self.running.clear()
        if event.phase is ToolPhase.APPROVAL:
            self.pending_approval = ApprovalRequest(
                tool_id=event.tool_id,
                tool_name=event.tool_name,
                input=event.input,
                call=classify_tool_call(event.tool_name, event.input),
            )
            self._move(ApprovalState.AWAITING_APPROVAL)
            return AwaitingApprovalEvent(
                tool_id=event.tool_id, tool_name=event.tool_name, input=event.input
            )

        self.pending_ask = AskRequest(tool_id=event.tool_id, questions=parse_questions(event.input))
        self._move(ApprovalState.AWAITING_ANSWER)
        return AwaitingAnswerEvent(tool_id=event.tool_id, questions=tuple(self.pending_ask.questions))

    def approve(self) -> tuple[str, str]:
        """Resolve a pending approval; returns the tool name and resumption message."""
        request = self._take_approval()
        return request.tool_name, approval_message(request.call, self.params_max_chars)

    def deny(self) -> str:
        request = self._take_approval()
        return denial_message(request.tool_name)

    def answer(self, index: int, text: str) -> None:
        if self.pending_ask is None:
            raise PreconditionError("No question is waiting for an answer")
        self.pending_ask.answer(index, text)

    @property
    def can_submit(self) -> bool:
        return self.pending_ask is not None and self.pending_ask.can_submit

    def submit(self) -> str:
        if self.pending_ask is None:
            raise PreconditionError("No question is waiting for an answer")
        if not self.pending_ask.can_submit:
            missing = len(self.pending_ask.questions) - len(self.pending_ask.answers)
            raise PreconditionError(f"{missing} question(s) still need an answer")
        message = answers_message(self.pending_ask.pairs())
        self.pending_ask = None
        self._move(ApprovalState.IDLE)
        return message

    def reset(self) -> None:
        self.running.clear()
        self.pending_approval = None
        self.pending_ask = None
        self._move(ApprovalState.IDLE)

    def _take_approval(self) -> ApprovalRequest:
        if self.pending_approval is None:
            raise PreconditionError("No tool is waiting for approval")
        request = self.pending_approval
        self.pending_approval = None
        self._move(ApprovalState.IDLE)
        return request
