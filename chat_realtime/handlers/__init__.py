"""
WebSocket route and event handlers.
"""

import logging

from aiohttp import WSCloseCode, web

from ..config import config
from ..services import (
    get_chat_store,
    get_presence_tracker,
    get_session_registry,
    get_subscriptions,
)
from .connection import LifecycleManager, websocket_handler
from .router import EventRouter

logger = logging.getLogger(__name__)


def register_handlers(app: web.Application) -> None:
    """Register the websocket route and wire handlers once services exist."""
    app.router.add_get("/ws", websocket_handler)
    app.on_startup.append(_create_handlers)
    app.on_shutdown.append(_close_connections)


async def _create_handlers(app: web.Application) -> None:
    registry = get_session_registry()
    subscriptions = get_subscriptions()
    presence = get_presence_tracker()

    app["event_router"] = EventRouter(
        registry,
        subscriptions,
        presence,
        get_chat_store(),
        enforce_membership=config.ENFORCE_MEMBERSHIP,
    )
    app["lifecycle_manager"] = LifecycleManager(registry, subscriptions, presence)


async def _close_connections(app: web.Application) -> None:
    """Close every live websocket so handlers run their teardown."""
    sessions = get_session_registry().get_all_sessions()
    if sessions:
        logger.info(f"Closing {len(sessions)} live sessions")
    for session in sessions:
        await session.connection.close(
            code=WSCloseCode.GOING_AWAY, message=b"server shutdown"
        )
    await app["lifecycle_manager"].wait_idle()
