"""
PostgreSQL access for message persistence, presence and membership checks.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import asyncpg

from ..config import config
from ..exceptions import PersistenceError

logger = logging.getLogger(__name__)

_DB_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


def utcnow() -> datetime:
    """Naive UTC timestamp, matching the schema's ``timestamp`` columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


@dataclass
class StoredMessage:
    """A message row as returned by INSERT ... RETURNING."""

    id: int
    channel_id: int
    sender_id: int
    content: str
    type: str  # 'user', 'bot', 'system'
    created_at: datetime


class ChatStore:
    """Writes chat messages and presence to PostgreSQL."""

    def __init__(self):
        self._pool: Optional[asyncpg.Pool] = None

    async def connect(self) -> None:
        """Connect to PostgreSQL."""
        logger.info("Connecting to PostgreSQL")
        self._pool = await asyncpg.create_pool(
            config.DATABASE_URL,
            min_size=config.DB_POOL_MIN_SIZE,
            max_size=config.DB_POOL_MAX_SIZE,
        )
        logger.info("Connected to PostgreSQL")

    async def close(self) -> None:
        """Close PostgreSQL connection."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("PostgreSQL connection closed")

    def _require_pool(self) -> asyncpg.Pool:
        if not self._pool:
            raise PersistenceError("PostgreSQL pool not initialized")
        return self._pool

    async def persist_message(
        self,
        channel_id: int,
        sender_id: int,
        content: str,
        message_type: str = "user",
    ) -> StoredMessage:
        """
        Insert a message and return the stored row.

        Raises:
            PersistenceError: if the insert fails
        """
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    INSERT INTO messages (channel_id, sender_id, content, type)
                    VALUES ($1, $2, $3, $4)
                    RETURNING id, channel_id, sender_id, content, type, created_at
                    """,
                    channel_id,
                    sender_id,
                    content,
                    message_type,
                )
        except _DB_ERRORS as e:
            logger.error(f"Failed to store message in channel {channel_id}: {e}")
            raise PersistenceError(f"Failed to store message: {e}") from e

        return StoredMessage(
            id=row["id"],
            channel_id=row["channel_id"],
            sender_id=row["sender_id"],
            content=row["content"],
            type=row["type"],
            created_at=row["created_at"],
        )

    async def persist_presence(self, user_id: int, status: str, last_seen: datetime) -> None:
        """
        Update a user's stored status and last-seen time.

        Raises:
            PersistenceError: if the update fails
        """
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                await conn.execute(
                    """
                    UPDATE users
                    SET status = $1, last_seen = $2, updated_at = $2
                    WHERE id = $3
                    """,
                    status,
                    last_seen,
                    user_id,
                )
        except _DB_ERRORS as e:
            logger.error(f"Failed to store presence for user {user_id}: {e}")
            raise PersistenceError(f"Failed to store presence: {e}") from e

    async def is_member(self, channel_id: int, user_id: int) -> bool:
        """Check whether a user belongs to a channel."""
        pool = self._require_pool()
        try:
            async with pool.acquire() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT 1 FROM channel_members
                    WHERE channel_id = $1 AND user_id = $2
                    """,
                    channel_id,
                    user_id,
                )
        except _DB_ERRORS as e:
            logger.error(f"Failed membership check for user {user_id} in channel {channel_id}: {e}")
            raise PersistenceError(f"Failed membership check: {e}") from e
        return row is not None
