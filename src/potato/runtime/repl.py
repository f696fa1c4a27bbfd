import asyncio
import json
import signal
from typing import Awaitable

from common.events import (
    AwaitingAnswerEvent,
    AwaitingApprovalEvent,
    Event,
    InactivityWarningEvent,
    NoticeEvent,
    SessionExpiredEvent,
    TextDeltaEvent,
    ToolResultEvent,
    ToolStartEvent,
    TurnCompletedEvent,
    TurnErroredEvent,
    TurnStartedEvent,
    TurnStoppedEvent,
)
from potato.runtime.controller import SessionController, TurnOutcome

_SUMMARY_KEYS = ("command", "file_path", "pattern", "path", "url", "query")


def _fmt_tokens(n: int) -> str:
    return f"{n / 1000:.1f}k" if n >= 1000 else str(n)


def summarize_input(tool_input: dict, limit: int = 200) -> str:
    for key in _SUMMARY_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            return value[:limit]
    if not tool_input:
        return ""
    return json.dumps(tool_input, ensure_ascii=False)[:limit]


class TerminalRenderer:
    def __init__(self):
        self._started = False

    def __call__(self, event: Event) -> None:
        if isinstance(event, TurnStartedEvent):
            self._started = False
        elif isinstance(event, TextDeltaEvent):
            if not self._started:
                print("\n🤖 Claude:", end=" ")
                self._started = True
            print(event.text, end="", flush=True)
        elif isinstance(event, ToolStartEvent):
            self._break_stream()
            print(f"🔧 Using {event.tool_name}: {summarize_input(event.input)}")
        elif isinstance(event, ToolResultEvent):
            preview = event.result[:200] + ("…" if event.truncated or len(event.result) > 200 else "")
            if event.is_error:
                print(f"❌ {event.tool_name} failed: {preview}")
            else:
                print(f"✅ {event.tool_name}: {preview or 'done'}")
        elif isinstance(event, AwaitingApprovalEvent):
            self._break_stream()
            print(f"🔐 Claude wants to use {event.tool_name}")
            if event.input:
                print(json.dumps(event.input, indent=2, ensure_ascii=False)[:2000])
        elif isinstance(event, AwaitingAnswerEvent):
            self._break_stream()
            print("❓ Claude has a question for you")
        elif isinstance(event, TurnCompletedEvent):
            self._break_stream()
            if event.input_tokens and event.output_tokens:
                print(
                    f"📊 {_fmt_tokens(event.input_tokens)} in / "
                    f"{_fmt_tokens(event.output_tokens)} out"
                )
        elif isinstance(event, TurnStoppedEvent):
            self._break_stream()
            print("⏹  Stopped")
        elif isinstance(event, TurnErroredEvent):
            self._break_stream()
            print(f"❌ Error: {event.message}")
        elif isinstance(event, InactivityWarningEvent):
            print(
                f"\n⏰ Are you still there? This chat closes in {event.seconds_left:.0f}s. "
                "Press Enter to keep it open."
            )
        elif isinstance(event, SessionExpiredEvent):
            self._break_stream()
            print(f"\n⏰ {event.message} Start a new chat with /new.")
        elif isinstance(event, NoticeEvent):
            if event.level == "error":
                print(f"❌ {event.message}")
            else:
                print(event.message)

    def _break_stream(self) -> None:
        if self._started:
            print()
            self._started = False


class PotatoREPL:
    def __init__(self, controller: SessionController):
        self.controller = controller

    async def _read(self, prompt: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, input, prompt)

    async def _interruptible(self, pending: Awaitable[TurnOutcome | None]) -> TurnOutcome | None:
        loop = asyncio.get_running_loop()
        try:
            loop.add_signal_handler(signal.SIGINT, self.controller.stop_generation)
            installed = True
        except (NotImplementedError, RuntimeError):
            installed = False
        try:
            return await pending
        finally:
            if installed:
                loop.remove_signal_handler(signal.SIGINT)

    async def run(self, initial_message: str | None = None) -> None:
        version = await self.controller.check_backend()
        print(f"🥔 potato-code (model: {self.controller.model})")
        if version:
            print(f"Claude Code {version}")
        print("Commands: /help for all commands, Ctrl+C stops a response")

        if initial_message:
            await self.send(initial_message)

        while True:
            try:
                user_input = (await self._read("\n> ")).strip()
            except EOFError:
                break
            self.controller.record_activity()

            if not user_input:
                continue
            if user_input.lower() in ("/quit", "/exit"):
                print("👋 Goodbye!")
                break
            if user_input.lower() == "/new":
                # Always available, including after the chat expired.
                self.controller.new_chat()
                continue
            await self.send(user_input)

    async def send(self, text: str) -> None:
        outcome = await self._interruptible(self.controller.send_message(text))
        while outcome is TurnOutcome.INTERRUPTED:
            outcome = await self._resolve_interrupt()

    async def _resolve_interrupt(self) -> TurnOutcome | None:
        approvals = self.controller.approvals
        if approvals.pending_approval is not None:
            answer = (await self._read("Allow? (y/n): ")).strip().lower()
            self.controller.record_activity()
            if answer in ("y", "yes"):
                return await self._interruptible(self.controller.approve_tool())
            return await self._interruptible(self.controller.deny_tool())

        if approvals.pending_ask is not None:
            for index, question in enumerate(approvals.pending_ask.questions):
                value = await self._ask(index, question)
                self.controller.answer_question(index, value)
            return await self._interruptible(self.controller.submit_answers())
        return None

    async def _ask(self, index: int, question) -> str:
        header = f"[{question.header}] " if question.header else ""
        print(f"\n{index + 1}. {header}{question.question}")
        for number, option in enumerate(question.options, start=1):
            description = f" - {option.description}" if option.description else ""
            print(f"   {number}) {option.label}{description}")
        hint = "numbers separated by commas" if question.multi_select else "a number"
        prompt = f"Answer ({hint} or free text): " if question.options else "Answer: "

        while True:
            raw = (await self._read(prompt)).strip()
            self.controller.record_activity()
            value = _pick_options(raw, question)
            if value:
                return value


def _pick_options(raw: str, question) -> str:
    if not raw or not question.options:
        return raw
    picks = [p.strip() for p in raw.split(",")] if question.multi_select else [raw]
    if not all(p.isdigit() and 1 <= int(p) <= len(question.options) for p in picks):
        return raw
    return ", ".join(question.options[int(p) - 1].label for p in picks)
