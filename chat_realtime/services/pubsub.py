"""
Redis pub/sub relay for events produced by the REST API.

Messages posted through the REST fallback and admin member removals happen
outside this process; the REST API publishes them on CHAT_EVENTS_CHANNEL and
this service hands them to the local fan-out.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import redis.asyncio as redis

from ..config import config

logger = logging.getLogger(__name__)

# Channel names
CHAT_EVENTS_CHANNEL = "chat:events"

# Event names
MESSAGE_CREATED = "message_created"
MEMBER_REMOVED = "member_removed"

EventHandler = Callable[[dict], Awaitable[None]]


class PubSubService:
    """Handles Redis pub/sub for chat events from the REST API."""

    def __init__(self, redis_url: Optional[str] = None):
        self._redis_url = redis_url or config.REDIS_URL
        self._redis: Optional[redis.Redis] = None
        self._pubsub: Optional[redis.client.PubSub] = None
        self._listener_task: Optional[asyncio.Task] = None
        self._handlers: dict[str, EventHandler] = {}

    async def connect(self) -> None:
        """Connect to Redis and subscribe to the events channel."""
        logger.info("Connecting to Redis pub/sub")
        self._redis = redis.from_url(
            self._redis_url,
            encoding="utf-8",
            decode_responses=True,
        )
        self._pubsub = self._redis.pubsub()
        await self._pubsub.subscribe(CHAT_EVENTS_CHANNEL)
        logger.info(f"Subscribed to channel: {CHAT_EVENTS_CHANNEL}")

    async def start_listener(
        self,
        on_message_created: EventHandler,
        on_member_removed: Optional[EventHandler] = None,
    ) -> None:
        """Start the background listener task."""
        self._handlers = {MESSAGE_CREATED: on_message_created}
        if on_member_removed:
            self._handlers[MEMBER_REMOVED] = on_member_removed
        self._listener_task = asyncio.create_task(self._listen())
        logger.info("Started pub/sub listener task")

    async def dispatch(self, raw: Any) -> None:
        """Decode one pub/sub payload and run the matching handler."""
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.error(f"Invalid JSON in pub/sub message: {raw}")
            return

        if not isinstance(data, dict):
            logger.error(f"Pub/sub message is not an object: {raw}")
            return

        event_type = data.get("event")
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.warning(f"Unknown event type: {event_type}")
            return

        try:
            await handler(data)
        except Exception as e:
            logger.error(f"Error handling pub/sub event {event_type}: {e}")

    async def _listen(self) -> None:
        """Listen for messages and dispatch to handlers.

        Auto-reconnects with exponential backoff on connection failures.
        """
        backoff = 1  # seconds
        max_backoff = 60
        while True:
            try:
                async for message in self._pubsub.listen():
                    backoff = 1
                    if message["type"] != "message":
                        continue
                    await self.dispatch(message["data"])

            except asyncio.CancelledError:
                logger.info("Pub/sub listener cancelled")
                return
            except Exception as e:
                logger.error(f"Pub/sub listener error, reconnecting in {backoff}s: {e}")
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, max_backoff)
                try:
                    await self._reconnect()
                except Exception as re:
                    logger.error(f"Pub/sub reconnect failed: {re}")

    async def _reconnect(self) -> None:
        """Re-establish pub/sub subscription after a connection failure."""
        try:
            if self._pubsub:
                await self._pubsub.aclose()
            if self._redis:
                await self._redis.aclose()
        except Exception as e:
            logger.debug(f"Ignoring error while dropping stale Redis connection: {e}")

        await self.connect()
        logger.info("Pub/sub reconnected successfully")

    async def close(self) -> None:
        """Close the pub/sub connection."""
        if self._listener_task:
            self._listener_task.cancel()
            try:
                await self._listener_task
            except asyncio.CancelledError:
                pass

        if self._pubsub:
            await self._pubsub.unsubscribe(CHAT_EVENTS_CHANNEL)
            await self._pubsub.aclose()

        if self._redis:
            await self._redis.aclose()

        logger.info("Pub/sub connection closed")


async def _publish(redis_url: str, event: dict) -> None:
    r = redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
    try:
        await r.publish(CHAT_EVENTS_CHANNEL, json.dumps(event))
    finally:
        await r.aclose()


# Utility functions for the REST API to publish events
async def publish_message_created(redis_url: str, message: dict) -> None:
    """
    Announce a message stored by the REST API so live sessions receive it.

    Args:
        redis_url: Redis connection URL
        message: The stored message as the REST API returns it
            (id, channelId, senderId, senderUsername, content, type, createdAt)
    """
    event = {
        "event": MESSAGE_CREATED,
        "id": message["id"],
        "channelId": message["channelId"],
        "senderId": message["senderId"],
        "senderUsername": message.get("senderUsername", "unknown"),
        "content": message.get("content"),
        "messageType": message.get("type", "user"),
        "createdAt": message["createdAt"],
    }
    await _publish(redis_url, event)
    logger.info(f"Published {MESSAGE_CREATED} for message {message['id']}")


async def publish_member_removed(redis_url: str, channel_id: int, user_id: int) -> None:
    """Announce that an admin removed a member from a channel."""
    await _publish(
        redis_url,
        {"event": MEMBER_REMOVED, "channelId": channel_id, "userId": user_id},
    )
    logger.info(f"Published {MEMBER_REMOVED} for user {user_id} in channel {channel_id}")
