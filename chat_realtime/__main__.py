"""
Entry point for the realtime chat server.
"""

import logging

from aiohttp import web

from .app import create_app
from .config import config

logger = logging.getLogger(__name__)


def main() -> None:
    """Main entry point. SIGINT/SIGTERM run the app's shutdown hooks."""
    app = create_app()

    logger.info(f"Starting chat server on http://{config.HOST}:{config.PORT}")
    web.run_app(app, host=config.HOST, port=config.PORT, print=None)


if __name__ == "__main__":
    main()
