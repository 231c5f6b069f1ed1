"""Operator status endpoint."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from fastapi import APIRouter

if TYPE_CHECKING:
    from prediction_indexer.connection import ConnectionManager
    from prediction_indexer.crawler import HistoricalCrawler
    from prediction_indexer.listener import RealtimeListener


def create_rest_router(
    manager: "ConnectionManager",
    crawler: Optional["HistoricalCrawler"] = None,
    listener: Optional["RealtimeListener"] = None,
) -> APIRouter:
    router = APIRouter()

    @router.get("/status")
    async def status():
        """Crawler counters, listener state and connection health in one document."""
        return {
            "historical_crawler": crawler.get_stats() if crawler is not None else None,
            "realtime_listener": listener.get_status() if listener is not None else None,
            "connection_manager": manager.get_connection_stats(),
        }

    return router
