"""
Central API route registration. All HTTP controllers are mounted here with /api prefix.
"""
import logging
from fastapi import FastAPI

from app.http.controllers import (
    integrations,
    shipstation,
    shipstation_webhooks,
)

logger = logging.getLogger(__name__)


def register_routes(app: FastAPI, settings) -> None:
    """Register all API routers. Call from main.py after creating the FastAPI app."""
    prefix = settings.API_PREFIX
    app.include_router(shipstation.router, prefix=f"{prefix}/shipstation", tags=["shipstation"])
    app.include_router(shipstation_webhooks.router, prefix=f"{prefix}/shipstation", tags=["shipstation-webhooks"])
    app.include_router(integrations.router, prefix=f"{prefix}/integrations/shipstation", tags=["integrations"])
    logger.debug("Registered ShipStation routes under %s", prefix)
