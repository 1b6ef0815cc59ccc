# Pytest configuration for the booking/occupancy tests.
# Forces a local SQLite DB, disables Redis and the background sweeper, and wires a JWT secret for deterministic runs.
import os
import threading
import time
from typing import Iterator

import pytest
from fastapi.testclient import TestClient

# Test-time environment: local SQLite DB, Redis disabled, no sweeper thread, predictable JWT secret
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_roomsync.db")
os.environ.setdefault("REDIS_ENABLED", "false")
os.environ.setdefault("SWEEPER_ENABLED", "false")
os.environ.setdefault("ROOMSYNC_JWT_SECRET", "test-secret")

import sys
# Ensure the repo root is on sys.path so 'roomsync' resolves when running pytest without installing
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from roomsync.main import app  # noqa: E402
from roomsync.db import Base, SessionLocal, engine  # noqa: E402
from roomsync import models  # noqa: E402


@pytest.fixture(autouse=True)
def _clean_db() -> Iterator[None]:
    """
    Function-level isolation: drop and recreate schema before each test.

    Simple but effective for this small suite; avoids transactional complexity.
    """
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture()
def client() -> Iterator[TestClient]:
    """FastAPI TestClient bound to the application for HTTP-level tests."""
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def db() -> Iterator:
    """A plain session for service-level tests; closed afterwards."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_user(db):
    """Insert a user directly (no password hashing) and return it."""
    counter = {"n": 0}

    def _make(role: str = "tenant") -> models.User:
        counter["n"] += 1
        user = models.User(email=f"{role}{counter['n']}@example.com", password_hash="x", role=role)
        db.add(user)
        db.commit()
        db.refresh(user)
        return user

    return _make


class InMemoryRedis:
    """Thread-safe SET NX PX and compare-and-delete; enough of Redis for the occupancy lock."""

    def __init__(self) -> None:
        self._data = {}
        self._mutex = threading.Lock()

    def _live(self, key):
        entry = self._data.get(key)
        if entry is not None and entry[1] is not None and entry[1] <= time.monotonic():
            del self._data[key]
            return None
        return entry

    def set(self, key, value, nx=False, px=None):
        with self._mutex:
            if nx and self._live(key) is not None:
                return None
            expires = time.monotonic() + px / 1000.0 if px else None
            self._data[key] = (value, expires)
            return True

    def get(self, key):
        with self._mutex:
            entry = self._live(key)
            return entry[0] if entry is not None else None

    def eval(self, script, numkeys, key, token):
        # Only the token-checked release script is ever evaluated
        with self._mutex:
            entry = self._live(key)
            if entry is not None and entry[0] == token:
                del self._data[key]
                return 1
            return 0


@pytest.fixture()
def fake_redis(monkeypatch) -> InMemoryRedis:
    """Route the occupancy lock to an in-memory Redis so waiting and release can be observed."""
    from roomsync import locks

    r = InMemoryRedis()
    monkeypatch.setattr(locks, "get_redis", lambda: r)
    return r
