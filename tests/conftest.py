"""Test configuration and fixtures."""

import shutil
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Generator

import pytest

from longmem.config import MemoryConfig
from longmem.memory.engine import MemoryEngine, set_memory_engine
from longmem.memory.store import MemoryStore

FIXTURE_MEMORIES = [
    {
        "content": "User prefers Python for data processing and machine learning tasks",
        "memory_type": "preference",
        "category": "user",
        "importance": 0.8,
    },
    {
        "content": "This project uses Express.js framework with TypeScript",
        "memory_type": "fact",
        "category": "project",
        "importance": 0.7,
    },
    {
        "content": "Decided to implement authentication using JWT tokens",
        "memory_type": "decision",
        "category": "code",
        "importance": 0.9,
    },
    {
        "content": "Database uses SQLite with better-sqlite3 driver",
        "memory_type": "fact",
        "category": "project",
        "importance": 0.6,
    },
    {
        "content": "UserController class handles user authentication and profile management",
        "memory_type": "entity",
        "category": "code",
        "importance": 0.5,
    },
]


class FakeClock:
    """Controllable replacement for datetime.now."""

    def __init__(self, start: datetime = datetime(2026, 3, 2, 9, 30, 0)):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> Generator[MemoryStore, None, None]:
    """In-memory store with a controllable clock."""
    memory_store = MemoryStore(":memory:", clock=clock)
    yield memory_store
    memory_store.close()


@pytest.fixture
def engine(clock) -> Generator[MemoryEngine, None, None]:
    """In-memory engine with default configuration and a controllable clock."""
    memory_engine = MemoryEngine(MemoryConfig(), db_path=":memory:", clock=clock)
    yield memory_engine
    memory_engine.close()


@pytest.fixture
def seeded_engine(engine, clock) -> MemoryEngine:
    """Engine holding the five standard fixture memories, one minute apart."""
    for fields in FIXTURE_MEMORIES:
        engine.store.create_memory(**fields)
        clock.advance(minutes=1)
    return engine


@pytest.fixture
def installed_engine(seeded_engine) -> Generator[MemoryEngine, None, None]:
    """Seeded engine installed as the process-wide instance used by the tools."""
    set_memory_engine(seeded_engine)
    yield seeded_engine
    set_memory_engine(None)


@pytest.fixture(autouse=True)
def isolated_xdg(tmp_path, monkeypatch):
    """Keep config and data lookups inside the test's temp directory."""
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("XDG_DATA_HOME", str(tmp_path / "data"))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
