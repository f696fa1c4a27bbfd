import os
from dataclasses import dataclass, field
from pathlib import Path

from potato.errors import ConfigError

MODEL_ALIASES = {
    "sonnet": "claude-sonnet-4-5-20250929",
    "opus": "claude-opus-4-6",
    "haiku": "claude-haiku-4-5-20251001",
}

KNOWN_TOOLS = {
    "Read": "Read files",
    "Edit": "Edit files",
    "Write": "Create files",
    "Bash": "Run commands",
    "Glob": "Find files",
    "Grep": "Search file contents",
    "WebFetch": "Fetch web content",
    "WebSearch": "Search the web",
}


def resolve_model_alias(name: str) -> str:
    return MODEL_ALIASES.get(name.lower(), name)


def is_known_model(model: str) -> bool:
    return model in MODEL_ALIASES.values()


def get_optional_env(name: str, default: str) -> str:
    return os.environ.get(name) or default


def get_float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


def _default_config_dir() -> str:
    return get_optional_env(
        "POTATO_CONFIG_DIR", str(Path.home() / ".config" / "potato-code")
    )


@dataclass
class AppConfig:
    model: str = field(
        default_factory=lambda: resolve_model_alias(
            get_optional_env("POTATO_MODEL", "sonnet")
        )
    )
    claude_bin: str = field(
        default_factory=lambda: get_optional_env("POTATO_CLAUDE_BIN", "claude")
    )
    config_dir: str = field(default_factory=_default_config_dir)
    warn_after_seconds: float = field(
        default_factory=lambda: get_float_env("POTATO_WARN_AFTER_SECONDS", 240.0)
    )
    expire_after_seconds: float = field(
        default_factory=lambda: get_float_env("POTATO_EXPIRE_AFTER_SECONDS", 300.0)
    )
    command_prefix: str = "/"
    title_max_chars: int = 50
    tool_result_preview_chars: int = 2000
    approval_params_max_chars: int = 500

    def __post_init__(self) -> None:
        if self.warn_after_seconds >= self.expire_after_seconds:
            raise ConfigError(
                "Inactivity warning must fire before expiry "
                f"({self.warn_after_seconds}s >= {self.expire_after_seconds}s)"
            )
        if not self.command_prefix:
            raise ConfigError("command_prefix must not be empty")

    @property
    def sessions_dir(self) -> Path:
        return Path(self.config_dir).expanduser() / "sessions"

    @property
    def settings_path(self) -> Path:
        return Path(self.config_dir).expanduser() / "settings.json"
