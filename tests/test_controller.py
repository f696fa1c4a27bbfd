import pytest

from common.events import (
    AwaitingAnswerEvent,
    AwaitingApprovalEvent,
    EventEmitter,
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
from potato.runtime.approval import ApprovalState
from potato.runtime.controller import SessionController, TurnOutcome
from potato.sessions.store import HistoryStore
from potato.settings import SettingsStore
from tests.helpers import FakeBackend, done, text, tool


def _of(events, kind):
    return [e for e in events if isinstance(e, kind)]


def _errors(events):
    return [e.message for e in events if isinstance(e, NoticeEvent) and e.level == "error"]


@pytest.mark.asyncio
async def test_completed_turn_concatenates_deltas(controller, backend, events):
    backend.scripts.append(
        [{"session_id": "conv-1"}, text("Hel"), text("lo"), text(" world"), done(12, 5)]
    )

    outcome = await controller.send_message("  say hello  ")

    assert outcome is TurnOutcome.COMPLETED
    assert [m.role for m in controller.session.messages] == ["user", "assistant"]
    assert controller.session.messages[0].content == "say hello"
    assert controller.session.messages[1].content == "Hello world"
    assert "".join(e.text for e in _of(events, TextDeltaEvent)) == "Hello world"
    completed = _of(events, TurnCompletedEvent)
    assert completed == [TurnCompletedEvent(content="Hello world", input_tokens=12, output_tokens=5)]
    assert controller.session.backend_conversation_id == "conv-1"
    assert controller.streaming is False


@pytest.mark.asyncio
async def test_turn_request_carries_session_settings(controller, backend, tmp_path):
    controller.update_settings(working_directory=str(tmp_path))
    backend.scripts.append([{"session_id": "conv-1"}, done()])
    backend.scripts.append([done()])

    await controller.send_message("first")
    await controller.send_message("second")

    first, second = backend.requests
    assert first.process_id == controller.session.session_id
    assert first.conversation_id is None
    assert first.model == controller.model
    assert first.working_directory == str(tmp_path)
    assert first.allowed_tools is None
    assert second.conversation_id == "conv-1"
    assert second.process_id == first.process_id


@pytest.mark.asyncio
async def test_turn_started_event(controller, backend, events):
    await controller.send_message("hi")

    started = _of(events, TurnStartedEvent)
    assert started == [
        TurnStartedEvent(session_id=controller.session.session_id, message="hi", model=controller.model)
    ]


@pytest.mark.asyncio
async def test_channel_closing_without_done_completes(controller, backend, events):
    backend.scripts.append([text("partial answer")])

    outcome = await controller.send_message("hi")

    assert outcome is TurnOutcome.COMPLETED
    assert controller.session.messages[-1].content == "partial answer"
    assert _of(events, TurnCompletedEvent)[0].input_tokens is None


@pytest.mark.asyncio
async def test_send_while_streaming_is_rejected(controller, backend, events):
    nested = []

    async def send_again():
        nested.append(await controller.send_message("again"))

    backend.scripts.append([text("a"), send_again, text("b"), done()])

    outcome = await controller.send_message("first")

    assert outcome is TurnOutcome.COMPLETED
    assert nested == [None]
    assert len(backend.requests) == 1
    assert "A response is still being generated. Stop it first." in _errors(events)
    assert [m.content for m in controller.session.messages] == ["first", "ab"]


@pytest.mark.asyncio
async def test_send_when_backend_unavailable(controller, backend, events):
    controller.backend_available = False

    assert await controller.send_message("hi") is None

    assert backend.requests == []
    assert controller.session.session_id is None
    assert _errors(events) == ["Claude Code is not available."]


@pytest.mark.asyncio
async def test_check_backend_reports_missing_install(config, events):
    controller = SessionController(
        FakeBackend(available=False),
        HistoryStore(config.sessions_dir),
        SettingsStore(config.settings_path),
        config=config,
        emitter=EventEmitter(events.append),
    )

    assert await controller.check_backend() is None
    assert controller.backend_available is False
    assert _errors(events) == ["Claude Code is not installed"]


@pytest.mark.asyncio
async def test_check_backend_returns_version(controller):
    controller.backend_available = False

    assert await controller.check_backend() == "2.0.0 (Claude Code)"
    assert controller.backend_available is True


@pytest.mark.asyncio
async def test_empty_message_is_rejected(controller, backend, events):
    assert await controller.send_message("   ") is None

    assert backend.requests == []
    assert controller.session.messages == []
    assert _errors(events) == ["Message is empty."]


@pytest.mark.asyncio
async def test_help_command_does_not_start_a_turn(controller, backend, events):
    assert await controller.send_message("/help") is None

    assert backend.requests == []
    assert controller.session.session_id is None
    notices = [e.message for e in _of(events, NoticeEvent)]
    assert any("/model" in n for n in notices)


@pytest.mark.asyncio
async def test_unknown_command(controller, backend, events):
    await controller.send_message("/frobnicate now")

    assert backend.requests == []
    assert _errors(events) == ["Unknown command: /frobnicate. Type /help for available commands."]


@pytest.mark.asyncio
async def test_tool_start_and_result_are_shown(controller, backend, events):
    backend.scripts.append(
        [
            tool("start", "Bash", input={"command": "ls"}),
            tool("result", "Tool", result="a.txt\nb.txt"),
            text("Two files."),
            done(),
        ]
    )

    outcome = await controller.send_message("list files")

    assert outcome is TurnOutcome.COMPLETED
    assert _of(events, ToolStartEvent)[0].input == {"command": "ls"}
    result = _of(events, ToolResultEvent)[0]
    assert result.tool_name == "Bash"
    assert result.result == "a.txt\nb.txt"
    assert controller.approvals.state is ApprovalState.IDLE


@pytest.mark.asyncio
async def test_approval_interrupt_then_approve(controller, backend, events):
    controller.update_settings(unrestricted=False, allowed_tools=["Read"])
    backend.scripts.append(
        [
            {"session_id": "conv-1"},
            text("Let me write it."),
            tool("approval", "Write", input={"file_path": "a.txt", "content": "hi"}),
            done(),
        ]
    )
    backend.scripts.append([text("Created."), done()])

    outcome = await controller.send_message("make a file")

    assert outcome is TurnOutcome.INTERRUPTED
    assert controller.streaming is False
    assert controller.approvals.state is ApprovalState.AWAITING_APPROVAL
    assert _of(events, AwaitingApprovalEvent)[0].tool_name == "Write"
    assert [m.content for m in controller.session.messages] == ["make a file", "Let me write it."]
    assert _of(events, TurnCompletedEvent) == []
    saved = controller.history.load(controller.session.session_id)
    assert saved is not None and len(saved.messages) == 2

    outcome = await controller.approve_tool()

    assert outcome is TurnOutcome.COMPLETED
    resumed = backend.requests[1]
    assert resumed.message == (
        'APPROVED. Create the file "a.txt" with exactly the same content '
        "you were going to write. Do it now."
    )
    assert resumed.conversation_id == "conv-1"
    assert resumed.allowed_tools == ["Read", "Write"]
    assert controller.session.approved_tools == ["Write"]
    assert controller.session.messages[-1].content == "Created."


@pytest.mark.asyncio
async def test_approval_interrupt_then_deny(controller, backend):
    backend.scripts.append([tool("approval", "Bash", input={"command": "rm -rf /"}), done()])
    backend.scripts.append([text("OK, I won't."), done()])

    await controller.send_message("clean up")
    outcome = await controller.deny_tool()

    assert outcome is TurnOutcome.COMPLETED
    assert backend.requests[1].message.startswith("DENIED: do NOT use Bash.")
    assert controller.session.approved_tools == []


@pytest.mark.asyncio
async def test_approve_without_pending_request(controller, backend, events):
    assert await controller.approve_tool() is None

    assert backend.requests == []
    assert _errors(events) == ["No tool is waiting for approval"]


@pytest.mark.asyncio
async def test_approve_when_backend_unavailable_keeps_pending_request(controller, backend, events):
    controller.update_settings(unrestricted=False)
    backend.scripts.append([tool("approval", "Bash", input={"command": "make"}), done()])
    backend.scripts.append([text("Built."), done()])
    await controller.send_message("build it")
    controller.backend_available = False

    assert await controller.approve_tool() is None

    assert _errors(events)[-1] == "Claude Code is not available."
    assert controller.approvals.pending_approval is not None
    assert controller.approvals.state is ApprovalState.AWAITING_APPROVAL
    assert controller.session.approved_tools == []
    assert len(backend.requests) == 1

    controller.backend_available = True
    assert await controller.approve_tool() is TurnOutcome.COMPLETED
    assert backend.requests[1].message == "APPROVED. Run this command:\nmake"
    assert controller.session.approved_tools == ["Bash"]


@pytest.mark.asyncio
async def test_deny_when_backend_unavailable_keeps_pending_request(controller, backend, events):
    backend.scripts.append([tool("approval", "Bash", input={"command": "make"}), done()])
    await controller.send_message("build it")
    controller.backend_available = False

    assert await controller.deny_tool() is None

    assert _errors(events)[-1] == "Claude Code is not available."
    assert controller.approvals.pending_approval is not None
    assert len(backend.requests) == 1


@pytest.mark.asyncio
async def test_submit_when_backend_unavailable_keeps_answers(controller, backend, events):
    backend.scripts.append(
        [tool("ask", "AskUserQuestion", input={"question": "Name?"}), done()]
    )
    await controller.send_message("new project")
    controller.answer_question(0, "potato")
    controller.backend_available = False

    assert await controller.submit_answers() is None

    assert _errors(events)[-1] == "Claude Code is not available."
    assert controller.approvals.state is ApprovalState.AWAITING_ANSWER
    assert controller.approvals.can_submit is True
    assert len(backend.requests) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("resolve", ["approve_tool", "deny_tool", "submit_answers"])
async def test_resolving_interrupt_after_expiry_reports_expiry(
    controller, backend, events, scheduler, resolve
):
    backend.scripts.append([tool("approval", "Bash", input={"command": "make"}), done()])
    await controller.send_message("build it")
    scheduler.advance(300)

    assert await getattr(controller, resolve)() is None

    assert _errors(events)[-1] == "This chat has expired. Start a new one with /new."
    assert controller.session.approved_tools == []
    assert len(backend.requests) == 1


@pytest.mark.asyncio
async def test_ask_interrupt_and_answers(controller, backend, events):
    questions = {
        "questions": [
            {"question": "Which language?", "options": [{"label": "Python"}, {"label": "Go"}]},
            {"question": "Tests?"},
        ]
    }
    backend.scripts.append([tool("ask", "AskUserQuestion", input=questions), done()])
    backend.scripts.append([text("Great."), done()])

    outcome = await controller.send_message("start a project")

    assert outcome is TurnOutcome.INTERRUPTED
    asked = _of(events, AwaitingAnswerEvent)[0]
    assert [q.question for q in asked.questions] == ["Which language?", "Tests?"]

    assert controller.answer_question(0, "Python") is False
    assert await controller.submit_answers() is None
    assert len(backend.requests) == 1

    assert controller.answer_question(1, "yes") is True
    outcome = await controller.submit_answers()

    assert outcome is TurnOutcome.COMPLETED
    assert backend.requests[1].message == (
        'My answers:\n"Which language?" -> Python\n"Tests?" -> yes'
    )


@pytest.mark.asyncio
async def test_unrelated_message_abandons_pending_interrupt(controller, backend):
    backend.scripts.append([tool("approval", "Bash", input={"command": "ls"}), done()])
    backend.scripts.append([text("Sure."), done()])

    await controller.send_message("look around")
    outcome = await controller.send_message("never mind, just say hi")

    assert outcome is TurnOutcome.COMPLETED
    assert controller.approvals.state is ApprovalState.IDLE
    assert controller.approvals.pending_approval is None
    assert backend.requests[1].message == "never mind, just say hi"


def test_resolved_tool_policy_merges_session_approvals(controller):
    controller.update_settings(unrestricted=False, allowed_tools=["Read"])
    controller.session.approve_tool("Bash")

    assert controller.resolved_tool_policy() == ["Read", "Bash"]


def test_resolved_tool_policy_unrestricted_and_deduplicated(controller):
    assert controller.resolved_tool_policy() is None

    controller.update_settings(unrestricted=False, allowed_tools=["Read", "Bash"])
    controller.session.approve_tool("Bash")
    controller.session.approve_tool("Write")

    assert controller.resolved_tool_policy() == ["Read", "Bash", "Write"]


@pytest.mark.asyncio
async def test_stop_mid_stream_keeps_partial(controller, backend, events):
    backend.scripts.append(
        [text("Hello "), lambda: controller.stop_generation(), text("ignored"), done()]
    )

    outcome = await controller.send_message("hi")

    assert outcome is TurnOutcome.STOPPED
    assert backend.cancelled == [controller.session.session_id]
    assert _of(events, TurnStoppedEvent) == [TurnStoppedEvent(partial="Hello ")]
    assert _of(events, TurnCompletedEvent) == []
    assert controller.session.messages[-1].content == "Hello "
    assert controller.history.load(controller.session.session_id) is not None


def test_stop_when_idle_still_emits(controller, events):
    assert controller.stop_generation() is False

    assert _of(events, TurnStoppedEvent) == [TurnStoppedEvent(partial="")]


@pytest.mark.asyncio
async def test_invocation_error_keeps_partial(controller, backend, events):
    backend.scripts.append([text("partial"), RuntimeError("boom")])

    outcome = await controller.send_message("hi")

    assert outcome is TurnOutcome.ERRORED
    assert _of(events, TurnErroredEvent) == [TurnErroredEvent(message="boom", partial="partial")]
    assert controller.session.messages[-1].content == "partial"
    assert controller.streaming is False

    backend.scripts.append([text("recovered"), done()])
    assert await controller.send_message("again") is TurnOutcome.COMPLETED


@pytest.mark.asyncio
async def test_malformed_units_do_not_break_the_stream(controller, backend):
    backend.scripts.append(
        [text("a"), {"tool": {"phase": "start"}}, {"content": 7}, text("b"), done()]
    )

    outcome = await controller.send_message("hi")

    assert outcome is TurnOutcome.COMPLETED
    assert controller.session.messages[-1].content == "ab"


@pytest.mark.asyncio
async def test_inactivity_warning_then_expiry(controller, backend, events, scheduler):
    await controller.send_message("hi")

    scheduler.advance(239)
    assert _of(events, InactivityWarningEvent) == []

    scheduler.advance(1)
    assert _of(events, InactivityWarningEvent) == [InactivityWarningEvent(seconds_left=60)]
    assert controller.session.expired is False

    scheduler.advance(60)
    assert controller.session.expired is True
    expired = _of(events, SessionExpiredEvent)
    assert len(expired) == 1
    assert expired[0].session_id == controller.session.session_id
    assert controller.history.load(controller.session.session_id) is not None


@pytest.mark.asyncio
async def test_activity_after_warning_postpones_expiry(controller, scheduler):
    await controller.send_message("hi")

    scheduler.advance(240)
    controller.dismiss_inactivity_warning()
    scheduler.advance(100)

    assert controller.session.expired is False
    scheduler.advance(200)
    assert controller.session.expired is True


def test_timers_not_armed_for_empty_session(controller, scheduler):
    controller.record_activity()

    assert scheduler.pending == []


@pytest.mark.asyncio
async def test_expired_chat_rejects_messages(controller, backend, events, scheduler):
    await controller.send_message("hi")
    scheduler.advance(300)

    assert await controller.send_message("still there?") is None
    assert "This chat has expired. Start a new one with /new." in _errors(events)
    assert len(backend.requests) == 1
    assert controller.session.expired is True

    controller.new_chat()
    assert controller.session.expired is False
    backend.scripts.append([text("hello again"), done()])
    assert await controller.send_message("hi") is TurnOutcome.COMPLETED


@pytest.mark.asyncio
async def test_expiry_mid_stream_cancels_turn(controller, backend, events, scheduler):
    backend.scripts.append(
        [text("thinking"), lambda: scheduler.advance(300), text("late"), done()]
    )

    outcome = await controller.send_message("hi")

    assert outcome is TurnOutcome.EXPIRED
    assert backend.cancelled == [controller.session.session_id]
    assert controller.session.expired is True
    assert controller.session.messages[-1].content == "thinking"
    assert _of(events, TurnCompletedEvent) == []


@pytest.mark.asyncio
async def test_new_chat_persists_then_resets(controller, backend, events):
    backend.scripts.append([{"session_id": "conv-1"}, text("hello"), done()])
    await controller.send_message("hi")
    controller.session.approve_tool("Bash")
    old_id = controller.session.session_id

    controller.new_chat()

    assert controller.session.session_id is None
    assert controller.session.backend_conversation_id is None
    assert controller.session.messages == []
    assert controller.session.approved_tools == []
    assert [s.id for s in controller.list_sessions()] == [old_id]
    assert events[-1] == NoticeEvent(message="Started a new chat")


def test_new_chat_on_empty_session_saves_nothing(controller):
    controller.new_chat()

    assert controller.list_sessions() == []


@pytest.mark.asyncio
async def test_load_session_restores_conversation(controller, backend):
    backend.scripts.append([{"session_id": "conv-7"}, text("answer"), done()])
    await controller.send_message("question")
    saved_id = controller.session.session_id
    controller.new_chat()

    assert controller.load_session(saved_id) is True

    assert controller.session.session_id == saved_id
    assert controller.session.backend_conversation_id == "conv-7"
    assert [m.content for m in controller.session.messages] == ["question", "answer"]


def test_load_unknown_session(controller, events):
    assert controller.load_session("nope") is False
    assert _errors(events) == ["Session nope not found"]


@pytest.mark.asyncio
async def test_delete_current_session_resets_without_resaving(controller, backend):
    await controller.send_message("hi")
    current = controller.session.session_id

    assert controller.delete_session(current) is True

    assert controller.session.session_id is None
    assert controller.list_sessions() == []


@pytest.mark.asyncio
async def test_clear_keeps_identifiers(controller, backend):
    backend.scripts.append([{"session_id": "conv-1"}, text("hello"), done()])
    await controller.send_message("hi")
    session_id = controller.session.session_id

    await controller.send_message("/clear")

    assert controller.session.messages == []
    assert controller.session.session_id == session_id
    assert controller.session.backend_conversation_id == "conv-1"


@pytest.mark.asyncio
async def test_save_failure_is_logged_not_raised(controller, backend, caplog):
    def broken_save(session):
        raise OSError("disk full")

    controller.history.save = broken_save

    outcome = await controller.send_message("hi")

    assert outcome is TurnOutcome.COMPLETED
    assert "disk full" in caplog.text


def test_update_settings_persists(controller):
    controller.update_settings(unrestricted=False, allowed_tools=["Read"])

    reloaded = controller.settings_store.load()
    assert reloaded.unrestricted is False
    assert reloaded.allowed_tools == ["Read"]
