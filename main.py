"""Ingestion engine entry point.

Follows the tracked ledger contracts and keeps the projection current until
SIGINT/SIGTERM. Exit codes:
    0: clean shutdown
    1: fatal runtime error (e.g. database unavailable)
    2: configuration error
"""

import asyncio
import logging
import signal
import sys
from typing import Any, Dict, Optional

from config import ConfigurationError, load_config
from database import init_db, close as db_close
from monitor import EventRouter, monitor_ledger
from notifier import Notifier
from projector import Projector
from store import StateStore
from store.memory import MemoryStateStore
from store.postgres import PostgresStateStore

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_CONFIG = 2

# Seconds to let routed events finish after the connection is stopped
DRAIN_TIMEOUT = 10.0

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(level: str = 'INFO') -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT
    )


async def open_store(settings: Dict[str, Any]) -> StateStore:
    """Create the projection store selected by ``store_backend``."""
    if settings['store_backend'] == 'memory':
        logger.warning("Using in-memory store; the projection is lost on exit")
        return MemoryStateStore()

    logger.info("Initializing database...")
    pool = await init_db(settings['db_url'])
    return PostgresStateStore(pool)


async def close_store(store: StateStore) -> None:
    await store.close()
    if isinstance(store, PostgresStateStore):
        logger.info("Closing database connections...")
        await db_close()


class IngestionEngine:
    """Connection manager, router and projector wired over one store."""

    def __init__(self, settings: Dict[str, Any], store: StateStore, notifier: Optional[Notifier] = None):
        self.store = store
        self.notifier = notifier or Notifier()
        self.projector = Projector(store, decimals=settings['token_decimals'])
        self.router = EventRouter(self.projector, store, self.notifier)
        self.connection = monitor_ledger(settings, self.router, store, self.notifier)

    async def run(self) -> None:
        """Run until stopped, then drain routed events."""
        try:
            await self.connection.run()
        finally:
            try:
                await asyncio.wait_for(self.router.join(), timeout=DRAIN_TIMEOUT)
            except asyncio.TimeoutError:
                logger.warning(f"Discarding {self.router.pending()} undispatched events")
            await self.router.close()
            logger.info(
                f"Ingestion stopped (applied={self.router.applied}, "
                f"skipped={self.router.skipped}, dropped={self.router.dropped})"
            )

    async def stop(self) -> None:
        await self.connection.stop()


async def main(settings_path: Optional[str] = None) -> int:
    """Run the ingestion engine and return the process exit code."""
    try:
        settings = load_config(settings_path)
    except ConfigurationError as e:
        configure_logging()
        logger.error(str(e))
        return EXIT_CONFIG

    configure_logging(settings['log_level'])

    store = None
    try:
        store = await open_store(settings)
        engine = IngestionEngine(settings, store)

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(engine.stop()))

        logger.info("Ingestion engine started")
        await engine.run()
        return EXIT_OK

    except ConfigurationError as e:
        logger.error(str(e))
        return EXIT_CONFIG
    except Exception as e:
        logger.error(f"Fatal error: {e}")
        return EXIT_FATAL
    finally:
        if store is not None:
            await close_store(store)
        logger.info("Cleanup complete.")


def run() -> None:
    """Console script entry point."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
