"""Shared test fixtures for the loupe test suite."""

import logging

import pytest
from starlette.websockets import WebSocketState

import loupe
from loupe.pages import clear_template_cache
from loupe.server import LiveServer
from loupe.sessions import SessionRegistry
from loupe.storage import DiagramStore


@pytest.fixture(autouse=True)
def _isolated_data_dir(tmp_path, monkeypatch):
    """Point every test at its own data directory and reset module state."""
    data_dir = tmp_path / "loupe-data"
    monkeypatch.setenv("LOUPE_DATA_DIR", str(data_dir))
    monkeypatch.delenv("XDG_CONFIG_HOME", raising=False)
    monkeypatch.delenv("LOUPE_RENDERER", raising=False)
    monkeypatch.delenv("LOUPE_LOG_LEVEL", raising=False)
    monkeypatch.setattr(loupe, "_live_server", None)
    clear_template_cache()

    yield data_dir

    # Drop file handlers added by configure_logging()
    root = logging.getLogger("loupe")
    for handler in list(root.handlers):
        if isinstance(handler, logging.FileHandler):
            root.removeHandler(handler)
            handler.close()
    root.setLevel(logging.NOTSET)


class FakeWatcher:
    """Stands in for WatchfilesWatcher; ``fire()`` simulates a file change."""

    def __init__(self, path, on_change):
        self.path = path
        self.on_change = on_change
        self.closed = False

    def close(self):
        self.closed = True

    def fire(self):
        if not self.closed:
            self.on_change()


class FakeConnection:
    """Minimal viewer connection with the attributes the registry reads."""

    def __init__(self, fail=False):
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.fail = fail
        self.sent = []
        self.close_code = None

    async def send_text(self, data):
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(data)

    def disconnect(self):
        self.client_state = WebSocketState.DISCONNECTED

    async def close(self, code=1000):
        self.close_code = code
        self.disconnect()


@pytest.fixture
def watchers():
    """Every FakeWatcher created by the ``registry`` fixture, in order."""
    return []


@pytest.fixture
def registry(watchers):
    def factory(path, on_change):
        watcher = FakeWatcher(path, on_change)
        watchers.append(watcher)
        return watcher

    return SessionRegistry(watcher_factory=factory)


@pytest.fixture
def store(tmp_path):
    return DiagramStore(tmp_path / "live")


@pytest.fixture
def live(registry, store):
    return LiveServer(registry=registry, store=store)
