"""
ShipStation webhook receiver. Public (no JWT); an X-ShipStation-Signature
header, when sent, must match the store's API secret.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import sessionmaker

from app.dependencies import get_authenticator, get_job_queue, get_session_factory, get_webhook_timeout
from app.services.job_queue import JobQueue
from app.services.shipstation_auth import ShipStationAuthenticator
from app.services.shipstation_webhook_handler import SUPPORTED_EVENTS, WebhookIngestor

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/webhook/{store_id}")
async def shipstation_webhook_receive(
    store_id: str,
    request: Request,
    authenticator: ShipStationAuthenticator = Depends(get_authenticator),
    session_factory: sessionmaker = Depends(get_session_factory),
    job_queue: JobQueue = Depends(get_job_queue),
    timeout: float = Depends(get_webhook_timeout),
):
    """
    Receive ITEM_SHIP_NOTIFY / ITEM_DELIVERED_NOTIFY / ITEM_ORDER_NOTIFY callbacks.
    Body may be JSON or form-encoded (a "payload" field holding JSON).
    """
    raw_body = await request.body()
    signature = request.headers.get("x-shipstation-signature")
    logger.info(
        "ShipStation webhook received for store %s (signed=%s, content_type=%s)",
        store_id, bool(signature), request.headers.get("content-type"),
    )
    if signature and not authenticator.verify_webhook_signature(store_id, raw_body, signature):
        logger.warning("ShipStation webhook signature mismatch for store %s", store_id)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid webhook signature")

    ingestor = WebhookIngestor(session_factory, job_queue, timeout)
    outcome = await ingestor.ingest(store_id, raw_body, request.headers.get("content-type"))
    return JSONResponse(status_code=outcome.status_code, content=outcome.body)


@router.get("/webhook/{store_id}")
async def shipstation_webhook_verify(store_id: str, challenge: Optional[str] = Query(None)):
    """Challenge echo for webhook setup, otherwise a health check."""
    if challenge:
        return {"challenge": challenge}
    return {
        "status": "active",
        "endpoint": "shipstation_webhook",
        "storeId": store_id,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "supported_events": SUPPORTED_EVENTS,
    }
