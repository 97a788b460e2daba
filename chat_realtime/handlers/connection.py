"""
Connection lifecycle: authenticate on open, tear down on close.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from aiohttp import WSMsgType, web

from .. import events
from ..auth import AuthenticatedUser, authenticate
from ..config import config
from ..exceptions import AuthenticationError, PersistenceError
from ..services.presence import PresenceTracker
from ..services.session_registry import Session, SessionRegistry
from ..services.subscriptions import SubscriptionTable
from .router import EventRouter

logger = logging.getLogger(__name__)


class LifecycleManager:
    """Creates sessions for authenticated connections and cleans up after them."""

    def __init__(
        self,
        registry: SessionRegistry,
        subscriptions: SubscriptionTable,
        presence: PresenceTracker,
        authenticator: Callable[[Optional[str]], AuthenticatedUser] = authenticate,
    ):
        self._registry = registry
        self._subscriptions = subscriptions
        self._presence = presence
        self._authenticate = authenticator
        self._pending: set[asyncio.Task] = set()

    async def on_open(self, connection: Any, token: Optional[str]) -> Optional[Session]:
        """
        Authenticate a new connection and register its session.

        Rejected connections are closed with the auth-failure close code and
        leave no trace in the registry.

        Returns:
            The live session, or None if authentication failed
        """
        try:
            user = self._authenticate(token)
        except AuthenticationError as e:
            logger.warning(f"Connection rejected: {e.reason}")
            await connection.close(
                code=config.AUTH_FAILED_CLOSE_CODE, message=e.reason.encode("utf-8")
            )
            return None
        except Exception as e:
            logger.error(f"WebSocket auth error: {e}")
            await connection.close(
                code=config.AUTH_FAILED_CLOSE_CODE, message=b"authentication failed"
            )
            return None

        session = Session(user_id=user.user_id, username=user.username, connection=connection)
        session.start()

        # Registration and the online write finish even if the handler is
        # cancelled; a cancelled open is then torn down like a close.
        registering = self._detach(self._register(session))
        try:
            presence_stored = await asyncio.shield(registering)
        except asyncio.CancelledError:
            self._detach(self._close_after(registering, session))
            raise

        session.send(events.connected(user.user_id, user.username))
        if not presence_stored:
            session.send(events.error(events.PERSISTENCE_FAILED, "Failed to update presence"))

        logger.info(f"User {user.username} connected via WebSocket (session {session.session_id})")
        return session

    async def on_close(self, session: Session) -> None:
        """
        Tear down a session. Safe to call more than once.

        The user goes offline only when this was their last session; the
        per-user lock makes sure exactly one of several concurrent closes
        observes that. Once started, teardown runs to completion even if
        the caller is cancelled.
        """
        if session.closed:
            return
        session.closed = True

        await asyncio.shield(self._detach(self._teardown(session)))

    async def wait_idle(self) -> None:
        """Wait for detached registrations and teardowns to finish."""
        while self._pending:
            await asyncio.wait(set(self._pending))

    def _detach(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _register(self, session: Session) -> bool:
        async with self._registry.lock(session.user_id):
            self._registry.add(session.user_id, session)
            try:
                await self._presence.mark_connected(session.user_id)
            except PersistenceError as e:
                logger.error(f"Failed to persist online status for user {session.user_id}: {e}")
                return False
        return True

    async def _close_after(self, registering: asyncio.Task, session: Session) -> None:
        await asyncio.wait([registering])
        await self.on_close(session)

    async def _teardown(self, session: Session) -> None:
        channels = self._subscriptions.unsubscribe_all(session)

        try:
            async with self._registry.lock(session.user_id):
                went_offline = self._registry.remove(session.user_id, session, channels)
                if went_offline:
                    channels |= self._registry.pop_departed_channels(session.user_id)
                    await self._presence.mark_disconnected(
                        session.user_id, session.username, channels
                    )
        finally:
            await session.stop()
        logger.info(f"User {session.username} disconnected (session {session.session_id})")


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    """Serve one websocket connection for its whole lifetime."""
    ws = web.WebSocketResponse(heartbeat=config.WS_HEARTBEAT_SECONDS)
    await ws.prepare(request)

    lifecycle: LifecycleManager = request.app["lifecycle_manager"]
    router: EventRouter = request.app["event_router"]

    session = await lifecycle.on_open(ws, request.query.get("token"))
    if session is None:
        return ws

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                await router.dispatch(session, msg.data)
            elif msg.type == WSMsgType.BINARY:
                await router.dispatch(session, msg.data)
            elif msg.type == WSMsgType.ERROR:
                logger.warning(
                    f"WebSocket error for session {session.session_id}: {ws.exception()}"
                )
                break
    finally:
        await lifecycle.on_close(session)

    return ws
