from pathlib import Path

from potato.config import KNOWN_TOOLS, MODEL_ALIASES, is_known_model, resolve_model_alias
from potato.runtime.router import RouteResult

HELP_TEXT = """Available commands:

/model [sonnet|opus|haiku]     Show or change the model
/dir /path/to/project          Show or change the project folder
/config                        Show settings
/config unrestricted on|off    Toggle unrestricted tool mode
/config tools Read Grep ...    Set the tools that run without asking
/config dir <path>|none        Set or clear the project folder
/sessions                      List saved chats
/load <id>                     Open a saved chat
/delete <id>                   Delete a saved chat
/clear                         Clear the chat (keeps the session)
/new                           Start a new chat
/help                          Show this help"""


class SlashCommands:
    def __init__(self, controller):
        self.controller = controller
        self._handlers = {
            "model": self.cmd_model,
            "dir": self.cmd_dir,
            "folder": self.cmd_dir,
            "project": self.cmd_dir,
            "config": self.cmd_config,
            "settings": self.cmd_config,
            "clear": self.cmd_clear,
            "new": self.cmd_new,
            "sessions": self.cmd_sessions,
            "load": self.cmd_load,
            "delete": self.cmd_delete,
            "help": self.cmd_help,
        }

    @property
    def emitter(self):
        return self.controller.emitter

    def has_command(self, name: str) -> bool:
        return name in self._handlers

    def dispatch(self, route: RouteResult) -> None:
        if route.kind != "command" or route.name not in self._handlers:
            prefix = self.controller.config.command_prefix
            self.emitter.error(
                f"Unknown command: {prefix}{route.name}. "
                f"Type {prefix}help for available commands."
            )
            return
        self._handlers[route.name](route.args)

    def cmd_model(self, args: str) -> None:
        aliases = " | ".join(MODEL_ALIASES)
        if not args:
            self.emitter.notice(
                f"Current model: {self.controller.config.model}\n\nUsage: /model {aliases}"
            )
            return
        model = resolve_model_alias(args)
        if not is_known_model(model):
            self.emitter.error(f"Model not found: {args}\nAvailable: {', '.join(MODEL_ALIASES)}")
            return
        self.controller.config.model = model
        self.emitter.notice(f"Model switched to: {model}")

    def cmd_dir(self, args: str) -> None:
        if not args:
            current = self.controller.settings.working_directory or "not set"
            self.emitter.notice(f"Project folder: {current}\n\nUsage: /dir /path/to/project")
            return
        self._set_folder(args)

    def _set_folder(self, raw: str) -> None:
        if not self.controller.settings_store.validate_folder(raw):
            self.emitter.error(f"Folder does not exist: {raw}")
            return
        path = str(Path(raw).expanduser().resolve())
        self.controller.update_settings(working_directory=path)
        self.emitter.notice(f"Project folder: {path}")

    def cmd_config(self, args: str) -> None:
        if not args:
            self.emitter.notice(self._render_settings())
            return

        parts = args.split()
        key, values = parts[0].lower(), parts[1:]
        if key == "unrestricted":
            if len(values) != 1 or values[0].lower() not in ("on", "off"):
                self.emitter.error("Usage: /config unrestricted on|off")
                return
            enabled = values[0].lower() == "on"
            self.controller.update_settings(unrestricted=enabled)
            self.emitter.notice(f"Unrestricted mode {'enabled' if enabled else 'disabled'}")
        elif key == "tools":
            unknown = [name for name in values if name not in KNOWN_TOOLS]
            if unknown:
                self.emitter.error(
                    f"Unknown tool: {', '.join(unknown)}\nAvailable: {', '.join(KNOWN_TOOLS)}"
                )
                return
            tools = list(dict.fromkeys(values))
            self.controller.update_settings(allowed_tools=tools)
            self.emitter.notice(f"Auto-approved tools: {', '.join(tools) or 'none'}")
        elif key == "dir":
            if len(values) == 1 and values[0].lower() == "none":
                self.controller.update_settings(working_directory=None)
                self.emitter.notice("Project folder cleared")
            elif values:
                self._set_folder(" ".join(values))
            else:
                self.emitter.error("Usage: /config dir <path>|none")
        else:
            self.emitter.error(f"Unknown setting: {key}\nType /help for available commands.")

    def _render_settings(self) -> str:
        settings = self.controller.settings
        lines = [
            "Settings",
            "",
            f"Project folder: {settings.working_directory or 'not set (current directory)'}",
            f"Unrestricted mode: {'on' if settings.unrestricted else 'off'}",
            "",
            "Tools that run without asking:",
        ]
        for name, description in KNOWN_TOOLS.items():
            if settings.unrestricted:
                mark = "*"
            else:
                mark = "x" if name in settings.allowed_tools else " "
            lines.append(f"  [{mark}] {name:<10} {description}")
        approved = self.controller.session.approved_tools
        if approved:
            lines.append("")
            lines.append(f"Approved in this chat: {', '.join(approved)}")
        return "\n".join(lines)

    def cmd_clear(self, args: str) -> None:
        self.controller.clear_messages()
        self.emitter.notice("Chat cleared")

    def cmd_new(self, args: str) -> None:
        self.controller.new_chat()

    def cmd_sessions(self, args: str) -> None:
        sessions = self.controller.list_sessions()
        if not sessions:
            self.emitter.notice("No saved chats")
            return
        current = self.controller.session.session_id
        lines = ["Saved chats:"]
        for session in sessions:
            marker = "*" if session.id == current else "•"
            lines.append(f"  {marker} {session.id} - {session.title}")
        self.emitter.notice("\n".join(lines))

    def cmd_load(self, args: str) -> None:
        if not args:
            self.emitter.error("Usage: /load <id>")
            return
        self.controller.load_session(args)

    def cmd_delete(self, args: str) -> None:
        if not args:
            self.emitter.error("Usage: /delete <id>")
            return
        self.controller.delete_session(args)

    def cmd_help(self, args: str) -> None:
        self.emitter.notice(HELP_TEXT)
