"""JSON documents on disk, optionally validated as pydantic models.

Reads never raise for missing, unreadable or corrupt files: callers get
``None`` and decide on a default. Writes go through a sibling temp file and
``os.replace`` so a crash never leaves a half-written document.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


def load_json(path: str | Path) -> dict | None:
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except FileNotFoundError:
        return None
    except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
        logger.warning("Could not read %s: %s", path, exc)
        return None
    return data if isinstance(data, dict) else None


def atomic_write_json(path: str | Path, data: Any) -> None:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = target.with_name(f".{target.name}.{os.getpid()}.tmp")
    with open(tmp_path, "w", encoding="utf-8") as handle:
        json.dump(data, handle, indent=2, ensure_ascii=False)
        handle.write("\n")
    os.replace(tmp_path, target)


def load_model(path: str | Path, model: type[ModelT]) -> ModelT | None:
    data = load_json(path)
    if data is None:
        return None
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        logger.warning("Ignoring invalid %s in %s (%d errors)", model.__name__, path, exc.error_count())
        return None


def save_model(path: str | Path, instance: BaseModel) -> None:
    atomic_write_json(path, instance.model_dump(mode="json"))
