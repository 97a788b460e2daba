"""
Inbound event dispatch for authenticated sessions.
"""

import logging
from typing import Union

from .. import events
from ..events import (
    InboundEvent,
    JoinChannel,
    LeaveChannel,
    SendMessage,
    StatusUpdate,
    TypingStart,
    TypingStop,
)
from ..exceptions import PersistenceError, ProtocolError
from ..services.presence import PresenceTracker
from ..services.session_registry import Session, SessionRegistry
from ..services.subscriptions import SubscriptionTable

logger = logging.getLogger(__name__)


class EventRouter:
    """
    Validates client events, applies their side effects and fans out the
    resulting server events.

    Errors are reported to the sending session only and never close the
    connection.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        subscriptions: SubscriptionTable,
        presence: PresenceTracker,
        store,
        enforce_membership: bool = False,
    ):
        self._registry = registry
        self._subscriptions = subscriptions
        self._presence = presence
        self._store = store
        self._enforce_membership = enforce_membership

    async def dispatch(self, session: Session, raw: Union[str, bytes]) -> None:
        """Handle one raw frame from a session."""
        if session.closed:
            logger.debug(f"Ignoring frame for closed session {session.session_id}")
            return

        try:
            event = events.parse_event(raw)
            await self.handle(session, event)
        except ProtocolError as e:
            logger.debug(f"Protocol error from session {session.session_id}: {e.code} {e.message}")
            session.send(events.error(e.code, e.message, e.event_type))
        except PersistenceError as e:
            logger.error(f"Persistence failure for user {session.user_id}: {e}")
            session.send(events.error(events.PERSISTENCE_FAILED, "Failed to process message"))
        except Exception:
            logger.exception(f"Unhandled error processing frame from user {session.user_id}")
            session.send(events.error(events.INTERNAL_ERROR, "Failed to process message"))

    async def handle(self, session: Session, event: InboundEvent) -> None:
        """Apply a parsed event."""
        if isinstance(event, JoinChannel):
            await self._join_channel(session, event)
        elif isinstance(event, LeaveChannel):
            self._leave_channel(session, event)
        elif isinstance(event, SendMessage):
            await self._send_message(session, event)
        elif isinstance(event, TypingStart):
            self._subscriptions.publish(
                event.channel_id,
                events.user_typing(event.channel_id, session.user_id, session.username),
                exclude=session,
            )
        elif isinstance(event, TypingStop):
            self._subscriptions.publish(
                event.channel_id,
                events.user_stopped_typing(event.channel_id, session.user_id),
                exclude=session,
            )
        elif isinstance(event, StatusUpdate):
            await self._status_update(session, event)
        else:
            raise TypeError(f"Unhandled event {event!r}")

    async def _check_membership(self, session: Session, channel_id: int, event_type: str) -> None:
        if not self._enforce_membership:
            return
        if not await self._store.is_member(channel_id, session.user_id):
            raise ProtocolError(
                events.NOT_MEMBER, "Not a member of this channel", event_type
            )

    async def _join_channel(self, session: Session, event: JoinChannel) -> None:
        await self._check_membership(session, event.channel_id, "join-channel")

        self._subscriptions.subscribe(event.channel_id, session)
        self._subscriptions.publish(
            event.channel_id,
            events.user_joined(event.channel_id, session.user_id, session.username),
        )
        session.send(events.joined_channel(event.channel_id))

        logger.info(f"User {session.user_id} joined channel {event.channel_id}")

    def _leave_channel(self, session: Session, event: LeaveChannel) -> None:
        if event.channel_id not in session.joined_channels:
            raise ProtocolError(
                events.NOT_IN_CHANNEL, "Not in this channel", "leave-channel"
            )

        self._subscriptions.unsubscribe(event.channel_id, session)
        self._subscriptions.publish(
            event.channel_id, events.user_left(event.channel_id, session.user_id)
        )

        logger.info(f"User {session.user_id} left channel {event.channel_id}")

    async def _send_message(self, session: Session, event: SendMessage) -> None:
        await self._check_membership(session, event.channel_id, "message")

        stored = await self._store.persist_message(
            event.channel_id, session.user_id, event.content
        )
        outbound = events.message(
            message_id=stored.id,
            channel_id=stored.channel_id,
            sender_id=session.user_id,
            sender_username=session.username,
            content=stored.content,
            message_type=stored.type,
            timestamp=stored.created_at,
        )

        self._subscriptions.publish(event.channel_id, outbound)
        # The sender sees its own message even without having joined the channel
        if not self._subscriptions.is_subscribed(event.channel_id, session):
            session.send(outbound)

        logger.debug(f"Message {stored.id} sent to channel {event.channel_id} by user {session.user_id}")

    async def _status_update(self, session: Session, event: StatusUpdate) -> None:
        async with self._registry.lock(session.user_id):
            await self._presence.set_status(
                session.user_id,
                session.username,
                event.status,
                self._registry.joined_channels(session.user_id),
            )
