"""
Presence tracking.

Stored status follows connection occupancy: a user goes online with their
first session and offline when their last session closes. In between, the
client may switch explicitly between online, idle and offline.
"""

import logging
from typing import Iterable

from .. import events
from ..exceptions import PersistenceError
from .chat_store import utcnow
from .subscriptions import SubscriptionTable

logger = logging.getLogger(__name__)


class PresenceTracker:
    """Persists presence transitions and announces them to joined channels."""

    def __init__(self, store, subscriptions: SubscriptionTable):
        self._store = store
        self._subscriptions = subscriptions

    async def mark_connected(self, user_id: int) -> None:
        """
        Record that a user has at least one live session.

        Raises:
            PersistenceError: if the status could not be stored
        """
        await self._store.persist_presence(user_id, events.STATUS_ONLINE, utcnow())
        logger.info(f"User {user_id} is online")

    async def mark_disconnected(
        self, user_id: int, username: str, channels: Iterable[int]
    ) -> None:
        """
        Record that a user's last session closed and tell their channels.

        The channels must be captured before the sessions were unsubscribed.
        A storage failure is logged; the broadcast still goes out because
        the user is gone either way.
        """
        try:
            await self._store.persist_presence(user_id, events.STATUS_OFFLINE, utcnow())
        except PersistenceError as e:
            logger.error(f"Failed to persist offline status for user {user_id}: {e}")

        self._broadcast(user_id, username, events.STATUS_OFFLINE, channels)
        logger.info(f"User {user_id} is offline")

    async def set_status(
        self, user_id: int, username: str, status: str, channels: Iterable[int]
    ) -> None:
        """
        Apply a client-requested status change.

        Raises:
            ValueError: if the status is not online, idle or offline
            PersistenceError: if the status could not be stored; nothing is
                broadcast in that case
        """
        if status not in events.VALID_STATUSES:
            raise ValueError(f"Invalid status: {status}")

        await self._store.persist_presence(user_id, status, utcnow())
        self._broadcast(user_id, username, status, channels)
        logger.info(f"User {user_id} set status to {status}")

    def _broadcast(self, user_id: int, username: str, status: str, channels: Iterable[int]) -> None:
        event = events.status_changed(user_id, username, status)
        for channel_id in sorted(set(channels)):
            self._subscriptions.publish(channel_id, event)
