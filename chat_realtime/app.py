"""
Main application setup for the realtime chat server.
"""

import logging

from aiohttp import web

from .config import config

# Configure logging
logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def health_check(request: web.Request) -> web.Response:
    """Health check endpoint for container orchestration."""
    registry = request.app.get("session_registry")
    return web.json_response({
        "status": "healthy",
        "service": "chat-realtime",
        "connections": registry.session_count() if registry else 0,
        "onlineUsers": registry.user_count() if registry else 0,
    })


def create_app(chat_store=None) -> web.Application:
    """
    Create and configure a new application instance.

    Args:
        chat_store: Optional store to use instead of connecting to PostgreSQL
    """
    from .handlers import register_handlers
    from .services import cleanup_services, initialize_services

    config.validate()

    app = web.Application()
    if chat_store is not None:
        app["chat_store"] = chat_store

    # Add health check route
    app.router.add_get("/health", health_check)

    # Initialize services (PostgreSQL, Redis) before handlers are wired
    app.on_startup.append(initialize_services)
    app.on_cleanup.append(cleanup_services)

    # Register the websocket endpoint
    register_handlers(app)

    logger.info(f"Chat server configured on {config.HOST}:{config.PORT}")
    return app
