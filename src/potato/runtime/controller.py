"""Session controller: one conversation, its turns, and their interrupts.

All state lives on the controller's ``SessionContext``; several controllers
can run side by side on one event loop. At most one turn streams at a time,
enforced by the entry guard in ``send_message``.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, AsyncIterator, Protocol

from common.events import (
    EventEmitter,
    InactivityWarningEvent,
    SessionExpiredEvent,
    TextDeltaEvent,
    TurnCompletedEvent,
    TurnErroredEvent,
    TurnStartedEvent,
    TurnStoppedEvent,
)
from potato.backend.claude import InvocationRequest
from potato.config import AppConfig
from potato.errors import BackendError, ExpiryError, InvocationError, PreconditionError
from potato.protocol.decoder import Completion, TextDelta, ToolEvent, decode_unit
from potato.protocol.units import UsageInfo
from potato.runtime.approval import ToolApprovalMachine
from potato.runtime.commands import SlashCommands
from potato.runtime.inactivity import InactivityMonitor, Scheduler
from potato.runtime.router import InputRouter
from potato.runtime.session import SessionContext, Turn
from potato.sessions.schema import ChatSession
from potato.sessions.store import HistoryStore
from potato.settings import Settings, SettingsStore

logger = logging.getLogger(__name__)


class Backend(Protocol):
    async def version(self) -> str: ...

    def stream(self, request: InvocationRequest) -> AsyncIterator[dict[str, Any]]: ...

    def cancel(self, process_id: str) -> bool: ...


class TurnOutcome(str, Enum):
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    STOPPED = "stopped"
    EXPIRED = "expired"
    ERRORED = "errored"


class SessionController:
    def __init__(
        self,
        backend: Backend,
        history: HistoryStore,
        settings_store: SettingsStore,
        *,
        config: AppConfig | None = None,
        emitter: EventEmitter | None = None,
        scheduler: Scheduler | None = None,
    ):
        self.backend = backend
        self.history = history
        self.settings_store = settings_store
        self.config = config or AppConfig()
        self.emitter = emitter or EventEmitter()
        self.settings: Settings = settings_store.load()
        self.session = SessionContext()
        self.backend_available = False

        self.approvals = ToolApprovalMachine(
            result_preview_chars=self.config.tool_result_preview_chars,
            params_max_chars=self.config.approval_params_max_chars,
        )
        self.inactivity = InactivityMonitor(
            on_warning=self._on_inactivity_warning,
            on_expire=self.expire,
            is_armed=self._timers_armed,
            warn_after=self.config.warn_after_seconds,
            expire_after=self.config.expire_after_seconds,
            scheduler=scheduler,
        )
        self.commands = SlashCommands(self)
        self.router = InputRouter(self.commands, prefix=self.config.command_prefix)
        self._turn: Turn | None = None

    @property
    def model(self) -> str:
        return self.config.model

    @property
    def streaming(self) -> bool:
        return self._turn is not None and self._turn.streaming

    async def check_backend(self) -> str | None:
        try:
            version = await self.backend.version()
        except BackendError as exc:
            self.backend_available = False
            self.emitter.error(str(exc))
            return None
        self.backend_available = True
        return version

    def resolved_tool_policy(self) -> list[str] | None:
        """None means every tool runs without asking."""
        if self.settings.unrestricted:
            return None
        return list(dict.fromkeys([*self.settings.allowed_tools, *self.session.approved_tools]))

    def _check_ready(self) -> None:
        """Entry guards shared by every action that starts a turn."""
        if self.streaming:
            raise PreconditionError("A response is still being generated. Stop it first.")
        if self.session.expired:
            raise ExpiryError("This chat has expired. Start a new one with /new.")
        if not self.backend_available:
            raise PreconditionError("Claude Code is not available.")

    def _check_can_send(self, text: str) -> str:
        self._check_ready()
        text = text.strip()
        if not text:
            raise PreconditionError("Message is empty.")
        return text

    async def send_message(self, text: str) -> TurnOutcome | None:
        try:
            text = self._check_can_send(text)
        except PreconditionError as exc:
            self.emitter.error(str(exc))
            return None

        route = self.router.route(text)
        if route.kind != "prompt":
            self.commands.dispatch(route)
            return None

        if self.approvals.awaiting_input:
            logger.debug("Abandoning pending %s", self.approvals.state.value)
            self.approvals.reset()
        return await self._start_turn(text)

    async def _start_turn(self, text: str) -> TurnOutcome:
        session_id = self.session.ensure_id()
        self.session.add_message("user", text, self.model)
        self.inactivity.touch()
        return await self._run_turn(session_id, text)

    async def _run_turn(self, session_id: str, text: str) -> TurnOutcome:
        turn = Turn(message=text, model=self.model)
        self._turn = turn
        self.emitter.emit(TurnStartedEvent(session_id=session_id, message=text, model=turn.model))

        request = InvocationRequest(
            message=text,
            process_id=session_id,
            conversation_id=self.session.backend_conversation_id,
            model=turn.model,
            working_directory=self.settings.working_directory,
            allowed_tools=self.resolved_tool_policy(),
        )
        units = self.backend.stream(request)
        try:
            async for raw in units:
                if not turn.streaming:
                    break
                outcome = self._process_unit(turn, raw)
                if outcome is not None:
                    return outcome
        except Exception as exc:
            if not turn.streaming:
                logger.debug("Ignoring error from finished turn: %s", exc)
                return TurnOutcome(turn.status)
            error = InvocationError(str(exc) or type(exc).__name__, partial=turn.accumulated_text)
            return self._fail_turn(turn, error)
        finally:
            aclose = getattr(units, "aclose", None)
            if aclose is not None:
                await aclose()

        if not turn.streaming:
            return TurnOutcome(turn.status)
        # Channel closed without a completion unit.
        return self._complete_turn(turn, None)

    def _process_unit(self, turn: Turn, raw: Any) -> TurnOutcome | None:
        decoded = decode_unit(raw)
        if decoded.conversation_id:
            self.session.backend_conversation_id = decoded.conversation_id

        event = decoded.event
        if isinstance(event, TextDelta):
            turn.append(event.content)
            self.emitter.emit(TextDeltaEvent(text=event.content))
        elif isinstance(event, ToolEvent):
            if event.phase.is_interrupt:
                self._end_turn(turn, TurnOutcome.INTERRUPTED)
                self._save_current()
            shown = self.approvals.handle(event)
            if shown is not None:
                self.emitter.emit(shown)
            if event.phase.is_interrupt:
                return TurnOutcome.INTERRUPTED
        elif isinstance(event, Completion):
            return self._complete_turn(turn, event.usage)
        return None

    def _end_turn(self, turn: Turn, outcome: TurnOutcome) -> str:
        text = turn.finish(outcome.value)
        if text:
            self.session.add_message("assistant", text, turn.model)
        if self._turn is turn:
            self._turn = None
        return text

    def _complete_turn(self, turn: Turn, usage: UsageInfo | None) -> TurnOutcome:
        text = self._end_turn(turn, TurnOutcome.COMPLETED)
        self._save_current()
        self.emitter.emit(
            TurnCompletedEvent(
                content=text,
                input_tokens=usage.input_tokens if usage else None,
                output_tokens=usage.output_tokens if usage else None,
            )
        )
        return TurnOutcome.COMPLETED

    def _fail_turn(self, turn: Turn, error: InvocationError) -> TurnOutcome:
        logger.warning("Invocation failed: %s", error)
        text = self._end_turn(turn, TurnOutcome.ERRORED)
        self._save_current()
        self.emitter.emit(TurnErroredEvent(message=str(error), partial=text))
        return TurnOutcome.ERRORED

    def _cancel_backend(self) -> None:
        try:
            self.backend.cancel(self.session.session_id or "")
        except Exception as exc:
            logger.debug("Cancellation request failed: %s", exc)

    def stop_generation(self) -> bool:
        """Stop the current turn; returns whether one was streaming."""
        self._cancel_backend()
        turn = self._turn
        partial = ""
        stopped = turn is not None and turn.streaming
        if stopped:
            partial = self._end_turn(turn, TurnOutcome.STOPPED)
            self._save_current()
        self.emitter.emit(TurnStoppedEvent(partial=partial))
        return stopped

    def expire(self) -> None:
        if self.session.expired:
            return
        turn = self._turn
        if turn is not None and turn.streaming:
            self._cancel_backend()
            self._end_turn(turn, TurnOutcome.EXPIRED)
        self.inactivity.cancel()
        self.approvals.reset()
        self.session.expired = True
        self._save_current()
        minutes = self.config.expire_after_seconds / 60
        self.emitter.emit(
            SessionExpiredEvent(
                session_id=self.session.session_id,
                message=f"Chat ended after {minutes:g} min of inactivity.",
            )
        )

    def new_chat(self) -> None:
        if self.streaming:
            self.stop_generation()
        self._save_current()
        self._reset_session(SessionContext())
        self.emitter.notice("Started a new chat")

    def clear_messages(self) -> None:
        self.session.messages = []
        self.inactivity.touch()

    def list_sessions(self) -> list[ChatSession]:
        return self.history.list()

    def load_session(self, session_id: str) -> bool:
        if self.streaming:
            self.emitter.error("A response is still being generated. Stop it first.")
            return False
        session = self.history.load(session_id)
        if session is None:
            self.emitter.error(f"Session {session_id} not found")
            return False
        self._save_current()
        self._reset_session(SessionContext.from_chat_session(session))
        self.inactivity.touch()
        self.emitter.notice(f"Loaded chat: {session.title}")
        return True

    def delete_session(self, session_id: str) -> bool:
        if not self.history.delete(session_id):
            self.emitter.error(f"Session {session_id} not found")
            return False
        if session_id == self.session.session_id:
            if self.streaming:
                self.stop_generation()
            self._reset_session(SessionContext())
        self.emitter.notice(f"Deleted chat {session_id}")
        return True

    def _reset_session(self, session: SessionContext) -> None:
        self.inactivity.cancel()
        self.approvals.reset()
        self._turn = None
        self.session = session

    def update_settings(self, **changes: Any) -> Settings:
        self.settings = self.settings.model_copy(update=changes)
        self.settings_store.save(self.settings)
        return self.settings

    def _save_current(self) -> None:
        if not self.session.has_content:
            return
        session = self.session.to_chat_session(self.model, self.config.title_max_chars)
        try:
            self.history.save(session)
        except OSError as exc:
            logger.warning("Could not save chat %s: %s", session.id, exc)

    async def approve_tool(self) -> TurnOutcome | None:
        try:
            self._check_ready()
            tool_name, message = self.approvals.approve()
        except PreconditionError as exc:
            self.emitter.error(str(exc))
            return None
        self.session.approve_tool(tool_name)
        return await self._start_turn(message)

    async def deny_tool(self) -> TurnOutcome | None:
        try:
            self._check_ready()
            message = self.approvals.deny()
        except PreconditionError as exc:
            self.emitter.error(str(exc))
            return None
        return await self._start_turn(message)

    def answer_question(self, index: int, text: str) -> bool:
        """Record one answer; returns whether the answers can be submitted."""
        try:
            self.approvals.answer(index, text)
        except PreconditionError as exc:
            self.emitter.error(str(exc))
            return False
        return self.approvals.can_submit

    async def submit_answers(self) -> TurnOutcome | None:
        try:
            self._check_ready()
            message = self.approvals.submit()
        except PreconditionError as exc:
            self.emitter.error(str(exc))
            return None
        return await self._start_turn(message)

    def record_activity(self) -> None:
        if self.session.expired:
            return
        self.inactivity.touch()

    def dismiss_inactivity_warning(self) -> None:
        self.record_activity()

    def _timers_armed(self) -> bool:
        return (
            self.session.session_id is not None
            and bool(self.session.messages)
            and not self.session.expired
        )

    def _on_inactivity_warning(self) -> None:
        seconds_left = self.config.expire_after_seconds - self.config.warn_after_seconds
        self.emitter.emit(InactivityWarningEvent(seconds_left=seconds_left))
