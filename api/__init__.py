"""REST API module for the ticket projection.

This module provides HTTP endpoints for:
- Looking up a user's portfolio (tickets, listings, recent history)
- Browsing active market listings
- Real-time connection and projection updates via WebSocket
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware

from notifier import Notifier
from query import QueryGateway

logger = logging.getLogger(__name__)


def get_gateway(request: Request) -> QueryGateway:
    """Dependency returning the app's QueryGateway."""
    gateway = request.app.state.gateway
    if gateway is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Projection store not initialized"
        )
    return gateway


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the store (and optionally the ingestion engine) unless injected."""
    # Deferred so that importing the app does not pull in the engine wiring
    from config import load_config
    from main import IngestionEngine, close_store, open_store

    logger.info("Initializing API...")
    store = None
    engine = None
    ingestion = None

    if app.state.gateway is None:
        settings = app.state.settings or load_config()
        store = await open_store(settings)
        app.state.gateway = QueryGateway(store, settings['recent_transactions'])

        if settings['embed_ingestion']:
            engine = IngestionEngine(settings, store, app.state.notifier)
            ingestion = asyncio.create_task(engine.run(), name="ingestion")
            logger.info("Started embedded ingestion engine")

    yield

    logger.info("Shutting down API...")
    if engine is not None:
        await engine.stop()
        try:
            await ingestion
        except Exception as e:
            logger.error(f"Ingestion engine failed: {e}")
    if store is not None:
        await close_store(store)
        app.state.gateway = None


def create_app(
    gateway: Optional[QueryGateway] = None,
    notifier: Optional[Notifier] = None,
    settings: Optional[Dict[str, Any]] = None
) -> FastAPI:
    """Create the API application.

    Args:
        gateway: Query gateway to serve; when None, the store is opened from
                 settings during startup
        notifier: Notifier feeding the websocket channel
        settings: Loaded settings; when None, load_config() is used at startup

    Returns:
        FastAPI: The configured application
    """
    app = FastAPI(
        title="Ticket Ledger API",
        description="Read API over the ticket ledger projection",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.gateway = gateway
    app.state.notifier = notifier or Notifier()
    app.state.settings = settings

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production, replace with specific origins
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root() -> Dict[str, Any]:
        """Service status and last known ingestion connection state."""
        return {
            "service": app.title,
            "version": app.version,
            "connection": app.state.notifier.connection_state,
        }

    from .market import router as market_router
    from .portfolio import router as portfolio_router
    from .websockets import router as websocket_router

    app.include_router(portfolio_router)
    app.include_router(market_router)
    app.include_router(websocket_router)

    return app


app = create_app()

__all__ = ['app', 'create_app', 'get_gateway']
