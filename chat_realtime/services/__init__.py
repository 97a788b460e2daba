"""
Service layer for the realtime chat server.
"""

import logging

from aiohttp import web

from .. import events
from ..config import config
from .chat_store import ChatStore
from .presence import PresenceTracker
from .pubsub import PubSubService
from .session_registry import SessionRegistry
from .subscriptions import SubscriptionTable

logger = logging.getLogger(__name__)

# Global service instances
chat_store = None
session_registry: SessionRegistry = None
subscriptions: SubscriptionTable = None
presence_tracker: PresenceTracker = None
pubsub_service: PubSubService = None


async def initialize_services(app: web.Application) -> None:
    """
    Initialize all services on application startup.

    A store placed in ``app["chat_store"]`` before startup is used as-is;
    otherwise a PostgreSQL-backed ChatStore is connected.
    """
    global chat_store, session_registry, subscriptions, presence_tracker, pubsub_service

    logger.info("Initializing services...")

    chat_store = app.get("chat_store")
    if chat_store is None:
        chat_store = ChatStore()
        await chat_store.connect()

    # In-memory routing state, empty at process start
    session_registry = SessionRegistry()
    subscriptions = SubscriptionTable()
    presence_tracker = PresenceTracker(chat_store, subscriptions)

    pubsub_service = None
    if config.PUBSUB_ENABLED:
        pubsub_service = PubSubService()
        await pubsub_service.connect()
        await pubsub_service.start_listener(
            on_message_created=_handle_message_created,
            on_member_removed=_handle_member_removed,
        )

    # Store services in app for access
    app["chat_store"] = chat_store
    app["session_registry"] = session_registry
    app["subscriptions"] = subscriptions
    app["presence_tracker"] = presence_tracker
    app["pubsub_service"] = pubsub_service

    logger.info("Services initialized successfully")


async def cleanup_services(app: web.Application) -> None:
    """Cleanup services on application shutdown."""
    logger.info("Cleaning up services...")

    if pubsub_service:
        await pubsub_service.close()
    if isinstance(chat_store, ChatStore):
        await chat_store.close()

    logger.info("Services cleaned up")


async def _handle_message_created(data: dict) -> None:
    """
    Fan out a message the REST API stored.

    Expected data: {"id", "channelId", "senderId", "senderUsername",
    "content", "messageType", "createdAt"}
    """
    channel_id = events.coerce_id(data.get("channelId"))
    message_id = events.coerce_id(data.get("id"))
    sender_id = events.coerce_id(data.get("senderId"))

    if channel_id is None or message_id is None or sender_id is None:
        logger.error(f"Invalid message_created event data: {data}")
        return

    delivered = subscriptions.publish(
        channel_id,
        events.message(
            message_id=message_id,
            channel_id=channel_id,
            sender_id=sender_id,
            sender_username=data.get("senderUsername", "unknown"),
            content=data.get("content"),
            message_type=data.get("messageType", "user"),
            timestamp=data.get("createdAt"),
        ),
    )
    logger.info(f"Relayed message {message_id} to channel {channel_id} ({delivered} sessions)")


async def _handle_member_removed(data: dict) -> None:
    """
    Drop a removed member's sessions from a channel.

    Expected data: {"channelId", "userId"}
    """
    channel_id = events.coerce_id(data.get("channelId"))
    user_id = events.coerce_id(data.get("userId"))

    if channel_id is None or user_id is None:
        logger.error(f"Invalid member_removed event data: {data}")
        return

    removed = 0
    for session in session_registry.get_sessions(user_id):
        if subscriptions.unsubscribe(channel_id, session):
            removed += 1

    if removed:
        subscriptions.publish(channel_id, events.user_left(channel_id, user_id))
    logger.info(f"User {user_id} removed from channel {channel_id} ({removed} sessions)")


def get_chat_store():
    """Get the chat store instance."""
    if chat_store is None:
        raise RuntimeError("Chat store not initialized")
    return chat_store


def get_session_registry() -> SessionRegistry:
    """Get the session registry instance."""
    if session_registry is None:
        raise RuntimeError("Session registry not initialized")
    return session_registry


def get_subscriptions() -> SubscriptionTable:
    """Get the subscription table instance."""
    if subscriptions is None:
        raise RuntimeError("Subscription table not initialized")
    return subscriptions


def get_presence_tracker() -> PresenceTracker:
    """Get the presence tracker instance."""
    if presence_tracker is None:
        raise RuntimeError("Presence tracker not initialized")
    return presence_tracker

