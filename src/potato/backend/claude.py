"""Claude Code CLI backend.

Runs ``claude`` in ``stream-json`` mode and translates its newline-delimited
JSON events into protocol units (see ``potato.protocol.units``). Tool calls
that need a human decision are detected when their input block closes: the
process is terminated before the tool executes and the unit stream ends with
an ``ask`` or ``approval`` tool unit followed by a done unit.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from potato.backend.process import ProcessRegistry
from potato.errors import BackendError, BackendUnavailableError
from potato.protocol.units import StreamChunk, ToolActivity, ToolPhase, UsageInfo

logger = logging.getLogger(__name__)

ASK_TOOL_NAME = "AskUserQuestion"
INSTALL_HINT = (
    "Claude Code is not installed. Install it with: "
    "npm install -g @anthropic-ai/claude-code"
)
_STREAM_LIMIT = 16 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class InvocationRequest:
    message: str
    process_id: str
    conversation_id: str | None = None
    model: str | None = None
    working_directory: str | None = None
    allowed_tools: list[str] | None = None


@dataclass
class StreamJsonTranslator:
    allowed_tools: list[str] | None = None
    conversation_id: str | None = None
    usage: UsageInfo | None = None
    interrupted: bool = False
    _text: list[str] = field(default_factory=list)
    _tool_name: str | None = None
    _tool_id: str = ""
    _tool_index: int | None = None
    _tool_input: list[str] = field(default_factory=list)

    @property
    def response_text(self) -> str:
        return "".join(self._text)

    def needs_approval(self, tool_name: str) -> bool:
        if self.allowed_tools is None:
            return False
        return tool_name not in self.allowed_tools

    def feed(self, line: str) -> list[StreamChunk]:
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            logger.debug("Skipping non-JSON line: %.200s", line)
            return []
        if not isinstance(data, dict):
            return []

        chunks: list[StreamChunk] = []
        if self.conversation_id is None and isinstance(data.get("session_id"), str):
            self.conversation_id = data["session_id"]
            chunks.append(StreamChunk(session_id=self.conversation_id))

        line_type = data.get("type")
        if line_type == "stream_event":
            chunk = self._stream_event(data.get("event") or {})
            if chunk is not None:
                chunks.append(chunk)
        elif line_type == "user":
            chunks.extend(self._tool_results(data))
        elif line_type == "result":
            self._record_usage(data.get("usage"))
        return chunks

    def done_chunk(self) -> StreamChunk:
        return StreamChunk(done=True, usage=self.usage)

    def _stream_event(self, event: dict[str, Any]) -> StreamChunk | None:
        event_type = event.get("type")
        if event_type == "content_block_delta":
            delta = event.get("delta") or {}
            if delta.get("type") == "text_delta" and isinstance(delta.get("text"), str):
                self._text.append(delta["text"])
                return StreamChunk(content=delta["text"])
            if delta.get("type") == "input_json_delta":
                self._tool_input.append(delta.get("partial_json") or "")
            return None

        if event_type == "content_block_start":
            block = event.get("content_block") or {}
            if block.get("type") == "tool_use":
                self._tool_name = block.get("name") or "unknown"
                self._tool_id = block.get("id") or ""
                self._tool_index = event.get("index")
                self._tool_input = []
            return None

        if event_type == "content_block_stop":
            if self._tool_name is None or event.get("index") != self._tool_index:
                return None
            return self._close_tool_block()
        return None

    def _close_tool_block(self) -> StreamChunk:
        try:
            tool_input = json.loads("".join(self._tool_input) or "null")
        except json.JSONDecodeError:
            tool_input = None
        if not isinstance(tool_input, dict):
            tool_input = {}

        name = self._tool_name or "unknown"
        if name == ASK_TOOL_NAME:
            phase = ToolPhase.ASK
        elif self.needs_approval(name):
            phase = ToolPhase.APPROVAL
        else:
            phase = ToolPhase.START

        chunk = StreamChunk(
            tool=ToolActivity(
                tool_id=self._tool_id,
                tool_name=name,
                phase=phase,
                input=tool_input,
            )
        )
        if phase.is_interrupt:
            self.interrupted = True
        self._tool_name = None
        self._tool_id = ""
        self._tool_index = None
        self._tool_input = []
        return chunk

    def _tool_results(self, data: dict[str, Any]) -> list[StreamChunk]:
        content = (data.get("message") or {}).get("content")
        if not isinstance(content, list):
            return []

        tool_use_result = data.get("tool_use_result")
        tool_name = "Tool"
        if isinstance(tool_use_result, dict) and isinstance(tool_use_result.get("tool_name"), str):
            tool_name = tool_use_result["tool_name"]

        chunks = []
        for item in content:
            if not isinstance(item, dict) or item.get("type") != "tool_result":
                continue
            chunks.append(
                StreamChunk(
                    tool=ToolActivity(
                        tool_id=item.get("tool_use_id") or "",
                        tool_name=tool_name,
                        phase=ToolPhase.RESULT,
                        result=_result_text(item.get("content")),
                        is_error=bool(item.get("is_error", False)),
                    )
                )
            )
        return chunks

    def _record_usage(self, usage: Any) -> None:
        if not isinstance(usage, dict):
            return

        def count(key: str) -> int:
            value = usage.get(key)
            return value if isinstance(value, int) else 0

        self.usage = UsageInfo(
            input_tokens=count("input_tokens")
            + count("cache_creation_input_tokens")
            + count("cache_read_input_tokens"),
            output_tokens=count("output_tokens"),
        )


def _result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            block.get("text", "")
            for block in content
            if isinstance(block, dict) and block.get("type") == "text"
        ]
        return "\n".join(p for p in parts if isinstance(p, str))
    return ""


class ClaudeBackend:
    def __init__(self, claude_bin: str = "claude", registry: ProcessRegistry | None = None):
        self.claude_bin = claude_bin
        self.registry = registry or ProcessRegistry()

    async def version(self) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.claude_bin,
                "--version",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise BackendUnavailableError(INSTALL_HINT) from exc
        stdout, _ = await proc.communicate()
        if proc.returncode != 0:
            raise BackendUnavailableError(INSTALL_HINT)
        return stdout.decode("utf-8", errors="replace").strip()

    def build_args(self, request: InvocationRequest) -> list[str]:
        # Permissions are enforced here: the stream is cut before a tool
        # outside the allowed set executes.
        args = [
            "--print",
            "--verbose",
            "--output-format",
            "stream-json",
            "--include-partial-messages",
            "--dangerously-skip-permissions",
        ]
        if request.conversation_id:
            args.extend(["--resume", request.conversation_id])
        if request.model:
            args.extend(["--model", request.model])
        args.append(request.message)
        return args

    async def stream(self, request: InvocationRequest) -> AsyncIterator[dict[str, Any]]:
        try:
            proc = await asyncio.create_subprocess_exec(
                self.claude_bin,
                *self.build_args(request),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=request.working_directory or None,
                limit=_STREAM_LIMIT,
            )
        except OSError as exc:
            raise BackendError(f"Could not run {self.claude_bin}: {exc}") from exc

        self.registry.register(request.process_id, proc)
        logger.debug("Started %s (pid %s) for %s", self.claude_bin, proc.pid, request.process_id)
        stderr_task = asyncio.ensure_future(proc.stderr.read())
        translator = StreamJsonTranslator(allowed_tools=request.allowed_tools)

        try:
            async for raw_line in proc.stdout:
                line = raw_line.decode("utf-8", errors="replace").strip()
                if not line:
                    continue
                for chunk in translator.feed(line):
                    yield chunk.to_wire()
                if translator.interrupted:
                    self.registry.stop(request.process_id)
                    break
            returncode = await proc.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
        finally:
            if proc.returncode is None:
                if not self.registry.stop(request.process_id):
                    with contextlib.suppress(ProcessLookupError):
                        proc.terminate()
                await proc.wait()
            if not stderr_task.done():
                stderr_task.cancel()

        stopped = not self.registry.unregister(request.process_id, proc)
        yield translator.done_chunk().to_wire()

        if translator.interrupted or stopped:
            return
        if returncode != 0 and not translator.response_text.strip():
            raise BackendError(stderr or f"{self.claude_bin} exited with code {returncode}")

    def cancel(self, process_id: str) -> bool:
        return self.registry.stop(process_id)
