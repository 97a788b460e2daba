"""
Channel topic subscriptions.

A session is listed under a channel's topic exactly when that channel is
in the session's ``joined_channels``; both are updated together here.
"""

import json
import logging
from typing import Any, Optional

from .session_registry import Session

logger = logging.getLogger(__name__)


class SubscriptionTable:
    """Maps channel topics to subscribed sessions and fans events out to them."""

    def __init__(self):
        # topic -> set of sessions
        self._topics: dict[str, set[Session]] = {}

    @staticmethod
    def channel_topic(channel_id: int) -> str:
        """Get the topic name for a channel."""
        return f"channel:{channel_id}"

    def subscribe(self, channel_id: int, session: Session) -> None:
        """Subscribe a session to a channel's topic."""
        topic = self.channel_topic(channel_id)
        self._topics.setdefault(topic, set()).add(session)
        session.joined_channels.add(channel_id)
        logger.debug(f"Session {session.session_id} subscribed to {topic}")

    def unsubscribe(self, channel_id: int, session: Session) -> bool:
        """
        Unsubscribe a session from a channel's topic.

        Returns:
            True if the session was subscribed
        """
        topic = self.channel_topic(channel_id)
        session.joined_channels.discard(channel_id)
        subscribers = self._topics.get(topic)
        if not subscribers or session not in subscribers:
            return False

        subscribers.discard(session)
        if not subscribers:
            del self._topics[topic]
        logger.debug(f"Session {session.session_id} unsubscribed from {topic}")
        return True

    def unsubscribe_all(self, session: Session) -> set[int]:
        """Remove a session from every topic it joined. Returns those channels."""
        channels = set(session.joined_channels)
        for channel_id in channels:
            self.unsubscribe(channel_id, session)
        return channels

    def is_subscribed(self, channel_id: int, session: Session) -> bool:
        return session in self._topics.get(self.channel_topic(channel_id), ())

    def subscribers(self, channel_id: int) -> set[Session]:
        """Get a copy of a channel's subscribers."""
        return set(self._topics.get(self.channel_topic(channel_id), ()))

    def publish(
        self,
        channel_id: int,
        event: dict[str, Any],
        exclude: Optional[Session] = None,
    ) -> int:
        """
        Deliver an event to every session subscribed to a channel.

        Delivery is best-effort: frames for a broken or backed-up session
        are dropped without affecting the others.

        Args:
            channel_id: Target channel
            event: Outbound event dict
            exclude: Session to skip (typically the sender)

        Returns:
            Number of sessions the frame was queued for
        """
        subscribers = list(self._topics.get(self.channel_topic(channel_id), ()))
        if not subscribers:
            return 0

        frame = json.dumps(event)
        delivered = 0
        for session in subscribers:
            if session is exclude:
                continue
            if session.send_frame(frame):
                delivered += 1

        logger.debug(
            f"Published {event.get('type')} to channel {channel_id}: "
            f"{delivered}/{len(subscribers)} sessions"
        )
        return delivered

    def topic_count(self) -> int:
        return len(self._topics)
