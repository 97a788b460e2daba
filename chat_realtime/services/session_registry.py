"""
Live session tracking.

A user may hold several websocket sessions at once (tabs, devices). Every
session owns a bounded outbound queue drained by its own writer task, so a
slow transport only delays its own frames.
"""

import asyncio
import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Hashable, Iterable, Optional

from ..config import config

logger = logging.getLogger(__name__)


@dataclass(eq=False)
class Session:
    """One authenticated websocket connection."""

    user_id: int
    username: str
    connection: Any  # anything with an async send_str(str)
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    joined_channels: set[int] = field(default_factory=set)
    connected_at: float = field(default_factory=time.time)
    closed: bool = False
    broken: bool = False
    outbox_size: int = field(default_factory=lambda: config.SESSION_OUTBOX_SIZE)

    def __post_init__(self) -> None:
        self._outbox: asyncio.Queue[str] = asyncio.Queue(maxsize=self.outbox_size)
        self._writer: Optional[asyncio.Task] = None

    def start(self) -> None:
        """Start the writer task that drains the outbound queue."""
        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop())

    def send(self, event: dict[str, Any]) -> bool:
        """Queue an event for this session only."""
        return self.send_frame(json.dumps(event))

    def send_frame(self, frame: str) -> bool:
        """
        Queue an already-encoded frame.

        Returns False when the frame was dropped because the session is
        closed, its transport failed or its queue is full.
        """
        if self.closed or self.broken:
            return False
        try:
            self._outbox.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning(f"Outbox full for session {self.session_id}, dropping frame")
            return False
        return True

    async def drain(self) -> None:
        """Wait until every queued frame has been written or dropped."""
        await self._outbox.join()

    async def stop(self) -> None:
        """Cancel the writer task."""
        if self._writer is None:
            return
        self._writer.cancel()
        try:
            await self._writer
        except asyncio.CancelledError:
            pass
        self._writer = None

    async def _write_loop(self) -> None:
        while True:
            frame = await self._outbox.get()
            try:
                if not self.broken:
                    await self.connection.send_str(frame)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.broken = True
                logger.debug(f"Delivery to session {self.session_id} failed, dropping: {e}")
            finally:
                self._outbox.task_done()


class KeyedLock:
    """asyncio locks allocated per key and discarded once nobody holds or awaits them."""

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if not self._users[key]:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class SessionRegistry:
    """Maps user IDs to their live sessions."""

    def __init__(self):
        # user_id -> set of live sessions
        self._user_sessions: dict[int, set[Session]] = {}
        # user_id -> channels joined by sessions that closed while the user stayed online
        self._departed_channels: dict[int, set[int]] = {}
        self._locks = KeyedLock()

    def lock(self, user_id: int):
        """Serialise presence transitions for one user."""
        return self._locks.hold(user_id)

    def add(self, user_id: int, session: Session) -> None:
        """Register a new session for a user."""
        self._user_sessions.setdefault(user_id, set()).add(session)
        logger.info(
            f"Added session {session.session_id} for user {user_id} "
            f"({len(self._user_sessions[user_id])} open)"
        )

    def remove(self, user_id: int, session: Session, channels: Iterable[int] = ()) -> bool:
        """
        Remove a session.

        Args:
            user_id: Owner of the session
            session: The session to drop
            channels: Channels the session had joined, remembered for the
                eventual offline broadcast if other sessions remain

        Returns:
            True if this removal left the user with no sessions
        """
        sessions = self._user_sessions.get(user_id)
        if not sessions or session not in sessions:
            return False

        sessions.discard(session)
        if sessions:
            self._departed_channels.setdefault(user_id, set()).update(channels)
            logger.info(
                f"Removed session {session.session_id} for user {user_id} "
                f"({len(sessions)} still open)"
            )
            return False

        del self._user_sessions[user_id]
        logger.info(f"Removed last session {session.session_id} for user {user_id}")
        return True

    def pop_departed_channels(self, user_id: int) -> set[int]:
        """Channels joined by the user's earlier-closed sessions."""
        return self._departed_channels.pop(user_id, set())

    def is_online(self, user_id: int) -> bool:
        """Check if a user has any live sessions."""
        return bool(self._user_sessions.get(user_id))

    def get_sessions(self, user_id: int) -> set[Session]:
        """Get a copy of a user's live sessions."""
        return set(self._user_sessions.get(user_id, ()))

    def joined_channels(self, user_id: int) -> set[int]:
        """Union of channels joined by all of a user's live sessions."""
        channels: set[int] = set()
        for session in self._user_sessions.get(user_id, ()):
            channels.update(session.joined_channels)
        return channels

    def get_all_sessions(self) -> list[Session]:
        """Get all live sessions."""
        return [session for sessions in self._user_sessions.values() for session in sessions]

    def session_count(self) -> int:
        return sum(len(sessions) for sessions in self._user_sessions.values())

    def user_count(self) -> int:
        return len(self._user_sessions)
