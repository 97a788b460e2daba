"""
Pytest fixtures for realtime chat server tests.
"""

import asyncio
import itertools
import json
import os
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import jwt
import pytest
import pytest_asyncio
from aiohttp import ClientSession, web
from aiohttp.test_utils import TestServer

# Set test environment variables before importing app
os.environ["JWT_SECRET"] = "test_secret"
os.environ["PUBSUB_ENABLED"] = "false"
os.environ["ENFORCE_MEMBERSHIP"] = "false"

from chat_realtime.app import create_app
from chat_realtime.auth import create_token
from chat_realtime.exceptions import PersistenceError
from chat_realtime.services.chat_store import StoredMessage
from chat_realtime.services.presence import PresenceTracker
from chat_realtime.services.session_registry import Session, SessionRegistry
from chat_realtime.services.subscriptions import SubscriptionTable


def create_test_token(user_id: int, username: str, expired: bool = False) -> str:
    """Create a test JWT token."""
    if expired:
        return create_token(user_id, username, expires_in=timedelta(hours=-1))
    return create_token(user_id, username, expires_in=timedelta(hours=1))


def create_invalid_token() -> str:
    """Create an invalid JWT token."""
    return "invalid.token.here"


def create_wrong_secret_token(user_id: int, username: str) -> str:
    """Create a JWT token with wrong secret."""
    now = datetime.now(timezone.utc)
    payload = {
        "userId": user_id,
        "username": username,
        "iat": now,
        "exp": now + timedelta(hours=1),
    }
    return jwt.encode(payload, "wrong_secret", algorithm="HS256")


class FakeStore:
    """In-memory stand-in for ChatStore."""

    def __init__(self):
        self._ids = itertools.count(1)
        self.messages: list[StoredMessage] = []
        self.presence: dict[int, str] = {}
        self.presence_log: list[tuple[int, str]] = []
        self.last_seen: dict[int, datetime] = {}
        self.members: set[tuple[int, int]] = set()
        self.fail_messages = False
        self.fail_presence = False

    async def persist_message(
        self, channel_id: int, sender_id: int, content: str, message_type: str = "user"
    ) -> StoredMessage:
        if self.fail_messages:
            raise PersistenceError("database unavailable")
        msg = StoredMessage(
            id=next(self._ids),
            channel_id=channel_id,
            sender_id=sender_id,
            content=content,
            type=message_type,
            created_at=datetime(2024, 1, 1, 12, 0, 0),
        )
        self.messages.append(msg)
        return msg

    async def persist_presence(self, user_id: int, status: str, last_seen: datetime) -> None:
        if self.fail_presence:
            raise PersistenceError("database unavailable")
        # Yield so concurrent closes really interleave
        await asyncio.sleep(0)
        self.presence[user_id] = status
        self.last_seen[user_id] = last_seen
        self.presence_log.append((user_id, status))

    async def is_member(self, channel_id: int, user_id: int) -> bool:
        return (channel_id, user_id) in self.members


class FakeConnection:
    """Records frames sent to a session and close calls."""

    def __init__(self, fail: bool = False):
        self.sent: list[str] = []
        self.fail = fail
        self.close_code: Optional[int] = None
        self.close_message: Optional[bytes] = None

    async def send_str(self, data: str) -> None:
        if self.fail:
            raise ConnectionResetError("transport closed")
        self.sent.append(data)

    async def close(self, *, code: int = 1000, message: bytes = b"") -> bool:
        self.close_code = code
        self.close_message = message
        return True

    @property
    def frames(self) -> list[dict]:
        return [json.loads(frame) for frame in self.sent]

    def of_type(self, event_type: str) -> list[dict]:
        return [frame for frame in self.frames if frame["type"] == event_type]


async def flush(*sessions: Session) -> None:
    """Wait until every queued frame has reached the fake transports."""
    for session in sessions:
        await session.drain()


def make_session(user_id: int, username: Optional[str] = None, fail: bool = False) -> Session:
    session = Session(
        user_id=user_id,
        username=username or f"user{user_id}",
        connection=FakeConnection(fail=fail),
    )
    session.start()
    return session


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def registry() -> SessionRegistry:
    return SessionRegistry()


@pytest.fixture
def subscriptions() -> SubscriptionTable:
    return SubscriptionTable()


@pytest.fixture
def presence(store: FakeStore, subscriptions: SubscriptionTable) -> PresenceTracker:
    return PresenceTracker(store, subscriptions)


@pytest_asyncio.fixture
async def app(store: FakeStore) -> web.Application:
    """Create the test application."""
    return create_app(chat_store=store)


@pytest_asyncio.fixture
async def test_server(app: web.Application) -> AsyncGenerator[TestServer, None]:
    """Create a test server."""
    server = TestServer(app)
    await server.start_server()
    yield server
    await server.close()


@pytest_asyncio.fixture
async def http_client() -> AsyncGenerator[ClientSession, None]:
    async with ClientSession() as client:
        yield client


def ws_url(server: TestServer, token: Optional[str] = None) -> str:
    url = f"http://{server.host}:{server.port}/ws"
    if token is not None:
        url += f"?token={token}"
    return url


@pytest.fixture
def user1_token() -> str:
    return create_test_token(1, "alice")


@pytest.fixture
def user2_token() -> str:
    return create_test_token(2, "bob")


@pytest.fixture
def user3_token() -> str:
    return create_test_token(3, "carol")


async def receive_json(ws, timeout: float = 2.0) -> dict:
    """Receive the next JSON frame from a client websocket."""
    return await ws.receive_json(timeout=timeout)


async def eventually(predicate, timeout: float = 2.0) -> None:
    """Poll until predicate() is true; server-side teardown runs after the client closes."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


async def expect_silence(ws, timeout: float = 0.2) -> None:
    """Assert that no frame arrives within the timeout."""
    with pytest.raises(asyncio.TimeoutError):
        await ws.receive(timeout=timeout)
