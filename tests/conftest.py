import pytest

from common.events import EventEmitter
from potato.config import AppConfig
from potato.runtime.controller import SessionController
from potato.sessions.store import HistoryStore
from potato.settings import SettingsStore
from tests.helpers import FakeBackend, ManualScheduler


@pytest.fixture
def events():
    return []


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        model="claude-sonnet-4-5-20250929",
        claude_bin="claude",
        config_dir=str(tmp_path / "config"),
        warn_after_seconds=240.0,
        expire_after_seconds=300.0,
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def controller(backend, config, events, scheduler):
    ctrl = SessionController(
        backend,
        HistoryStore(config.sessions_dir),
        SettingsStore(config.settings_path),
        config=config,
        emitter=EventEmitter(events.append),
        scheduler=scheduler,
    )
    ctrl.backend_available = True
    return ctrl
