from __future__ import annotations

import os
from typing import Any

import mongomock
import pytest
from fastapi.testclient import TestClient

# Keep bcrypt cheap during tests.
os.environ.setdefault("BCRYPT_ROUNDS", "4")

from directory import MessageLog, RoomDirectory, UserStore  # noqa: E402
from main import create_app  # noqa: E402
from realtime import Dispatcher, Session, SessionRegistry  # noqa: E402
from schemas import RegisterUser  # noqa: E402


class RecordingSession(Session):
    def __init__(self, sid: str | None = None) -> None:
        super().__init__(sid)
        self.received: list[tuple[str, Any]] = []

    async def send(self, event: str, data: Any) -> None:
        self.received.append((event, data))

    def events(self, name: str) -> list[Any]:
        return [data for event, data in self.received if event == name]


@pytest.fixture
def db():
    return mongomock.MongoClient().chat


@pytest.fixture
def client(db):
    with TestClient(create_app(db)) as test_client:
        yield test_client


@pytest.fixture
def users(db) -> UserStore:
    return UserStore(db, rounds=4)


@pytest.fixture
def rooms(db) -> RoomDirectory:
    return RoomDirectory(db)


@pytest.fixture
def messages(db) -> MessageLog:
    return MessageLog(db)


@pytest.fixture
def registry(rooms) -> SessionRegistry:
    return SessionRegistry(rooms)


@pytest.fixture
def dispatcher(registry, users, rooms, messages) -> Dispatcher:
    return Dispatcher(registry, users, rooms, messages)


@pytest.fixture
def make_user(users):
    def _make(name: str, password: str = "secret") -> dict[str, Any]:
        email = f"{name.lower()}@x.com"
        return users.register(RegisterUser(name=name, email=email, password=password))

    return _make
