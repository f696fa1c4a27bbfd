from pathlib import Path

from pydantic import BaseModel, Field

from common.jsonio import load_model, save_model


class Settings(BaseModel):
    working_directory: str | None = None
    allowed_tools: list[str] = Field(default_factory=list)
    unrestricted: bool = True


class SettingsStore:
    def __init__(self, path: str | Path):
        self.path = Path(path)

    def load(self) -> Settings:
        return load_model(self.path, Settings) or Settings()

    def save(self, settings: Settings) -> None:
        save_model(self.path, settings)

    @staticmethod
    def validate_folder(path: str) -> bool:
        return Path(path).expanduser().is_dir()
