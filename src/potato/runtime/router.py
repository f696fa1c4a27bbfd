from dataclasses import dataclass
from typing import Literal

RouteKind = Literal["prompt", "command", "unknown"]


@dataclass(frozen=True)
class RouteResult:
    kind: RouteKind
    name: str | None
    args: str


class InputRouter:
    """Splits user input into prompts for Claude and local slash commands."""

    def __init__(self, commands, prefix: str = "/"):
        self.commands = commands
        self.prefix = prefix

    def is_command(self, user_input: str) -> bool:
        return user_input.startswith(self.prefix)

    def route(self, user_input: str) -> RouteResult:
        if not self.is_command(user_input):
            return RouteResult(kind="prompt", name=None, args=user_input)

        head, *tail = user_input.split(maxsplit=1)
        name = head[len(self.prefix) :].lower()
        args = tail[0].strip() if tail else ""
        kind: RouteKind = "command" if self.commands.has_command(name) else "unknown"
        return RouteResult(kind=kind, name=name, args=args)
