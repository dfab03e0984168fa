"""
Central API route registration. All HTTP controllers are mounted here with /api prefix.
"""
import logging
from fastapi import FastAPI

from channelsync.http.controllers import (
    channels,
    oauth,
    orders,
    webhooks,
)

logger = logging.getLogger(__name__)


def register_routes(app: FastAPI, settings) -> None:
    """Register all API routers. Call from main.py after creating the FastAPI app."""
    app.include_router(oauth.router, prefix=settings.API_PREFIX, tags=["oauth"])
    app.include_router(webhooks.router, prefix=settings.API_PREFIX, tags=["webhooks"])
    app.include_router(channels.router, prefix=f"{settings.API_PREFIX}/channels", tags=["channels"])
    app.include_router(orders.router, prefix=f"{settings.API_PREFIX}/orders", tags=["orders"])
    logger.debug("Registered %d routes", len(app.routes))
