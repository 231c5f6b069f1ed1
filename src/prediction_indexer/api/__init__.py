"""FastAPI application factory for the status API and push socket."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from fastapi import FastAPI

from prediction_indexer import __version__
from prediction_indexer.api.middleware import setup_middleware
from prediction_indexer.api.routes_rest import create_rest_router
from prediction_indexer.api.routes_ws import BroadcastHub, create_ws_router

if TYPE_CHECKING:
    from prediction_indexer.connection import ConnectionManager
    from prediction_indexer.crawler import HistoricalCrawler
    from prediction_indexer.listener import RealtimeListener


def create_app(
    manager: "ConnectionManager",
    hub: BroadcastHub,
    crawler: Optional["HistoricalCrawler"] = None,
    listener: Optional["RealtimeListener"] = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    app = FastAPI(
        title="Prediction Indexer",
        version=__version__,
        docs_url="/api/docs",
        redoc_url=None,
    )

    setup_middleware(app)

    app.state.manager = manager
    app.state.hub = hub

    app.include_router(create_rest_router(manager, crawler=crawler, listener=listener), prefix="/api")
    app.include_router(create_ws_router(hub))

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
