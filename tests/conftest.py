"""
Pytest configuration and shared fixtures.

Environment variables must be in place before any streamchat import because
the settings object is built at import time.
"""

import asyncio
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from streamchat.config import get_settings
get_settings.cache_clear()

from streamchat.adapter import BackendStreamAdapter
from streamchat.models import Record
from streamchat.schemas import Identity
from streamchat.storage import RealtimeStore


ALICE = Identity(id="u1", display_name="Alice", avatar_url="https://cdn.example/alice.png")
BOB = Identity(id="u2", display_name="Bob")
MOD1 = Identity(id="m1", display_name="Mod1", is_moderator=True)
MOD2 = Identity(id="m2", display_name="Mod2", is_moderator=True)


class StepClock:
    """Deterministic store clock: every call advances by `step` milliseconds."""

    def __init__(self, start: int = 1_700_000_000_000, step: int = 1000):
        self.now = start
        self.step = step

    def __call__(self) -> int:
        value = self.now
        self.now += self.step
        return value


def insert_raw(store, key, data, path="messages"):
    """Write a record straight to the table, bypassing push()."""
    with store._session_factory() as db:
        db.add(Record(path=path, key=key, data=data, created_at="2024-01-01T00:00:00Z"))
        db.commit()


def run(coro):
    """Drive a coroutine to completion on a fresh event loop."""
    return asyncio.run(coro)


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def store(tmp_path, clock):
    """Realtime store backed by a fresh SQLite file for each test."""
    store = RealtimeStore(f"sqlite:///{tmp_path / 'chat.db'}", clock=clock)
    store.init_db()
    yield store
    store.dispose()


@pytest.fixture
def adapter(store):
    return BackendStreamAdapter(store)
