"""Command line interface for running the API server.

With ``embed_ingestion`` enabled, the ingestion engine runs inside the
server's event loop and websocket clients receive live projection deltas.
"""
import asyncio
import logging
import sys

import uvicorn

from config import ConfigurationError, load_config
from main import EXIT_CONFIG, EXIT_FATAL, EXIT_OK, configure_logging
from . import create_app

logger = logging.getLogger(__name__)


async def serve(settings) -> None:
    """Run uvicorn until it is asked to exit."""
    app = create_app(settings=settings)
    config = uvicorn.Config(
        app,
        host=settings['api_host'],
        port=settings['api_port'],
        log_level=settings['log_level'].lower()
    )
    server = uvicorn.Server(config)
    await server.serve()


def main() -> int:
    try:
        settings = load_config()
    except ConfigurationError as e:
        configure_logging()
        logger.error(str(e))
        return EXIT_CONFIG

    configure_logging(settings['log_level'])
    logger.info(f"Starting API on {settings['api_host']}:{settings['api_port']}")

    try:
        asyncio.run(serve(settings))
    except ConfigurationError as e:
        logger.error(str(e))
        return EXIT_CONFIG
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        return EXIT_FATAL
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
