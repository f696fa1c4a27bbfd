"""Classify backend protocol units into text, tool-phase or completion events.

The decoder is best-effort: a unit that does not match the shape of the kind
it claims to be is dropped with a debug log and never interrupts the stream.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, TypeAlias

from pydantic import ValidationError

from potato.errors import MalformedChunkError
from potato.protocol.units import ToolActivity, ToolPhase, UsageInfo

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TextDelta:
    content: str


@dataclass(frozen=True, slots=True)
class ToolEvent:
    tool_id: str
    tool_name: str
    phase: ToolPhase
    input: dict[str, Any] = field(default_factory=dict)
    result: str | None = None
    is_error: bool = False


@dataclass(frozen=True, slots=True)
class Completion:
    usage: UsageInfo | None = None


ChunkEvent: TypeAlias = TextDelta | ToolEvent | Completion


@dataclass(frozen=True, slots=True)
class DecodedUnit:
    conversation_id: str | None = None
    event: ChunkEvent | None = None


def _conversation_id(raw: Mapping[str, Any]) -> str | None:
    value = raw.get("session_id")
    if isinstance(value, str) and value:
        return value
    return None


def _tool_event(payload: Any) -> ToolEvent:
    try:
        activity = ToolActivity.model_validate(payload)
    except ValidationError as exc:
        raise MalformedChunkError(f"invalid tool payload: {exc.error_count()} errors") from exc
    if activity.phase is ToolPhase.RESULT and not activity.tool_id:
        raise MalformedChunkError("tool result without tool_id")
    return ToolEvent(
        tool_id=activity.tool_id,
        tool_name=activity.tool_name,
        phase=activity.phase,
        input=dict(activity.input or {}),
        result=activity.result,
        is_error=bool(activity.is_error),
    )


def _completion(raw: Mapping[str, Any]) -> Completion:
    usage = raw.get("usage")
    if usage is None:
        return Completion()
    try:
        return Completion(usage=UsageInfo.model_validate(usage))
    except ValidationError:
        logger.debug("Ignoring malformed usage block: %r", usage)
        return Completion()


def _classify(raw: Mapping[str, Any]) -> ChunkEvent | None:
    if raw.get("tool") is not None:
        return _tool_event(raw["tool"])
    if raw.get("done"):
        return _completion(raw)
    content = raw.get("content", "")
    if not isinstance(content, str):
        raise MalformedChunkError(f"content must be text, got {type(content).__name__}")
    return TextDelta(content) if content else None


def decode_unit(raw: Any) -> DecodedUnit:
    if not isinstance(raw, Mapping):
        logger.debug("Dropping non-mapping unit: %r", raw)
        return DecodedUnit()

    conversation_id = _conversation_id(raw)
    try:
        event = _classify(raw)
    except MalformedChunkError as exc:
        logger.debug("Dropping malformed unit: %s", exc)
        event = None
    return DecodedUnit(conversation_id=conversation_id, event=event)
