from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv

from common.events import EventEmitter
from potato.backend.claude import ClaudeBackend
from potato.config import AppConfig, resolve_model_alias
from potato.errors import ConfigError
from potato.runtime.controller import SessionController
from potato.runtime.repl import PotatoREPL, TerminalRenderer
from potato.sessions.store import HistoryStore
from potato.settings import SettingsStore


def main() -> int:
    load_dotenv()
    return _main(sys.argv[1:])


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        payload = {
            "ts": ts,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(verbose: bool = False, quiet: bool = False, log_format: str = "text") -> None:
    if quiet:
        level = logging.ERROR
    elif verbose:
        level = logging.DEBUG
    else:
        level = logging.WARNING

    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_format == "json":
        handlers[0].setFormatter(JsonFormatter())
        logging.basicConfig(level=level, handlers=handlers)
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    logging.getLogger("asyncio").setLevel(logging.WARNING)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="potato", description="potato-code - terminal chat for Claude Code"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    parser.add_argument("--quiet", "-q", action="store_true", help="Only log errors")
    parser.add_argument("--log-format", default="text", choices=["text", "json"])
    subparsers = parser.add_subparsers(dest="command", required=False)

    chat = subparsers.add_parser("chat", help="Start an interactive chat (default)")
    chat.add_argument(
        "--model",
        default=None,
        help="Model to use (supports aliases: sonnet, opus, haiku)",
    )
    chat.add_argument("--dir", default=None, help="Project folder for this run")
    chat.add_argument("--resume", default=None, help="Open a saved chat by id")
    chat.add_argument("--message", "-m", help="Send one message and exit")

    sessions = subparsers.add_parser("sessions", help="Manage saved chats")
    sessions_sub = sessions.add_subparsers(dest="sessions_cmd", required=False)
    sessions_list = sessions_sub.add_parser("list", help="List saved chats")
    sessions_list.add_argument("--limit", type=int, default=50)
    sessions_show = sessions_sub.add_parser("show", help="Print a saved chat")
    sessions_show.add_argument("session_id")
    sessions_show.add_argument("--json", action="store_true", help="Print raw JSON")
    sessions_delete = sessions_sub.add_parser("delete", help="Delete a saved chat")
    sessions_delete.add_argument("session_id")

    return parser


def _main(argv: list[str]) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose, args.quiet, args.log_format)
    logger = logging.getLogger(__name__)

    try:
        config = AppConfig()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        return 1

    cmd = args.command or "chat"
    if cmd == "chat":
        return _cmd_chat(
            config,
            model=getattr(args, "model", None),
            folder=getattr(args, "dir", None),
            resume=getattr(args, "resume", None),
            message=getattr(args, "message", None),
        )
    if cmd == "sessions":
        return _cmd_sessions(config, args)

    parser.print_help(sys.stderr)
    return 2


def _cmd_chat(
    config: AppConfig,
    *,
    model: str | None,
    folder: str | None,
    resume: str | None,
    message: str | None,
) -> int:
    if model:
        config.model = resolve_model_alias(model)

    controller = SessionController(
        ClaudeBackend(config.claude_bin),
        HistoryStore(config.sessions_dir),
        SettingsStore(config.settings_path),
        config=config,
        emitter=EventEmitter(TerminalRenderer()),
    )
    if folder:
        if not controller.settings_store.validate_folder(folder):
            print(f"Error: folder does not exist: {folder}", file=sys.stderr)
            return 1
        folder = str(Path(folder).expanduser().resolve())
        controller.settings = controller.settings.model_copy(update={"working_directory": folder})

    repl = PotatoREPL(controller)
    try:
        return asyncio.run(_run_chat(repl, resume=resume, message=message))
    except KeyboardInterrupt:
        print("\n\n⚠️  Interrupted")
        controller.stop_generation()
        return 0
    finally:
        controller.backend.registry.stop_all()


async def _run_chat(repl: PotatoREPL, *, resume: str | None, message: str | None) -> int:
    # Loading arms the inactivity timers, which need the running loop.
    if resume and not repl.controller.load_session(resume):
        return 1
    if message:
        if await repl.controller.check_backend() is None:
            return 1
        await repl.send(message)
        return 0
    await repl.run()
    return 0


def _cmd_sessions(config: AppConfig, args) -> int:
    store = HistoryStore(config.sessions_dir)
    sub = args.sessions_cmd or "list"

    if sub == "list":
        rows = store.list()[: max(0, int(getattr(args, "limit", 50)))]
        if not rows:
            print("No saved chats.")
            return 0
        print(f"{'ID':<16} {'Created':<26} {'Messages':<9} {'Title'}")
        for s in rows:
            print(f"{s.id:<16} {s.created_at[:25]:<26} {len(s.messages):<9} {s.title}")
        return 0

    if sub == "delete":
        if not store.delete(args.session_id):
            print(f"Session {args.session_id} not found", file=sys.stderr)
            return 1
        print(f"Deleted {args.session_id}")
        return 0

    session = store.load(args.session_id)
    if session is None:
        print(f"Session {args.session_id} not found", file=sys.stderr)
        return 1
    if args.json:
        print(json.dumps(session.model_dump(mode="json"), indent=2, ensure_ascii=False))
        return 0
    print(f"# {session.title}  ({session.model}, {session.created_at})")
    for m in session.messages:
        who = "You" if m.role == "user" else "Claude"
        print(f"\n[{who}]\n{m.content}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
