"""
Pytest fixtures and test configuration for schoolsync tests.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from schoolsync.queue import WriteBehindQueue
from schoolsync.storage import DurableStore, SQLiteStore
from schoolsync.tasks import BackgroundTasks
from schoolsync.types import Assessment, CloudIdentity

START = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class Clock:
    """Manually advanced clock passed as now_fn."""

    def __init__(self, start: datetime = START):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, when: datetime) -> None:
        self.now = when


class FakeRemote:
    """In-memory cloud settings service."""

    def __init__(self, settings: Optional[Dict[str, Any]] = None):
        self.settings = settings
        self.available = True
        self.push_ok = True
        self.fetches = 0
        self.pushes: List[Dict[str, Any]] = []

    async def fetch_remote_settings(self, identity: CloudIdentity) -> Optional[Dict[str, Any]]:
        self.fetches += 1
        if not self.available or self.settings is None:
            return None
        return dict(self.settings)

    async def push_remote_settings(self, identity: CloudIdentity, settings: Dict[str, Any]) -> bool:
        if not self.available or not self.push_ok:
            return False
        self.pushes.append(dict(settings))
        self.settings = dict(settings)
        return True


class FakeIdentity:
    def __init__(self, identity: Optional[CloudIdentity] = CloudIdentity("user-1", "token-1")):
        self.identity = identity

    async def get_identity(self) -> Optional[CloudIdentity]:
        return self.identity


class FakeNotifier:
    """Records sends; titles in ``fail_for`` raise, ``result`` overrides the return."""

    def __init__(self):
        self.sent: List[tuple] = []
        self.fail_for: set = set()
        self.result = True

    async def send(self, title: str, body: str, sound: Optional[str] = None) -> bool:
        if body in self.fail_for or title in self.fail_for:
            raise RuntimeError("notification daemon unavailable")
        if self.result:
            self.sent.append((title, body, sound))
        return self.result


class FakeResolver:
    def __init__(self):
        self.assessments: Dict[int, Assessment] = {}

    def add(self, *assessments: Assessment) -> None:
        for assessment in assessments:
            self.assessments[assessment.id] = assessment

    async def resolve(self, subject_entity_id: int) -> Optional[Assessment]:
        return self.assessments.get(subject_entity_id)


@pytest.fixture(autouse=True)
def data_home(tmp_path, monkeypatch):
    """Point the data directory at a temp dir and clear credential env vars."""
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("SCHOOLSYNC_DATA_DIR", str(home))
    for var in (
        "SCHOOLSYNC_USER_ID",
        "SCHOOLSYNC_AUTH_TOKEN",
        "SCHOOLSYNC_BACKEND_URL",
        "SCHOOLSYNC_PROFILE",
        "SCHOOLSYNC_DB_PATH",
        "SCHOOLSYNC_LOG_LEVEL",
    ):
        monkeypatch.delenv(var, raising=False)
    return home


@pytest.fixture
def isolated_logger():
    """Restore the schoolsync logger's handlers and level after the test."""
    logger = logging.getLogger("schoolsync")
    handlers = list(logger.handlers)
    level = logger.level
    yield logger
    for handler in logger.handlers:
        if handler not in handlers:
            handler.close()
    logger.handlers = handlers
    logger.setLevel(level)


@pytest.fixture
def start():
    """The instant every test clock starts at."""
    return START


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def backend(tmp_path, clock):
    store = SQLiteStore(db_path=tmp_path / "test.db", now_fn=clock)
    yield store
    store.close()


@pytest.fixture
def store(backend):
    return DurableStore(backend)


@pytest.fixture
def tasks():
    return BackgroundTasks()


@pytest.fixture
def queue(store):
    return WriteBehindQueue(store, drain_timeout=1.0)


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def resolver():
    return FakeResolver()
