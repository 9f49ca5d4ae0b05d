"""
ShipStation Custom Store endpoint.

GET  /orders?action=export     ShipStation polls for orders (XML).
POST /orders?action=shipnotify ShipStation reports a shipment (XML body).
"""
import logging
import math
import time
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.orm import Session, selectinload

from app.config import settings
from app.database import get_db
from app.dependencies import get_authenticator
from app.errors import IntegrationError, ValidationFailure
from app.http.requests.schemas import ShipNotifyResponse
from app.models import IntegrationLogStatus, IntegrationOperation, Order, OrderStatus
from app.services.integration_log import record_integration_event
from app.services.order_fulfillment import record_shipment
from app.services.shipstation_auth import ShipStationAuthenticator
from app.services.shipstation_xml import (
    build_order_export_document,
    clamp_pagination,
    parse_export_date,
    parse_shipment_notification,
)

logger = logging.getLogger(__name__)
router = APIRouter()

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}
EXCLUDED_FROM_EXPORT = (OrderStatus.CANCELLED, OrderStatus.REFUNDED)


def _authenticate(request: Request, authenticator: ShipStationAuthenticator, store_id: Optional[str]):
    store_hint = request.headers.get("x-store-id") or store_id
    return authenticator.authenticate(
        request.headers,
        store_hint=store_hint,
        client_host=request.client.host if request.client else None,
    )


def _parse_date_param(name: str, value: Optional[str]):
    if not value:
        raise ValidationFailure(f"{name} is required (MM/dd/yyyy HH:mm)")
    try:
        return parse_export_date(value)
    except ValueError:
        raise ValidationFailure(f"{name} is not a valid date: {value!r}")


@router.get("/orders")
async def export_orders(
    request: Request,
    action: Optional[str] = Query("export"),
    start_date: Optional[str] = Query(None),
    end_date: Optional[str] = Query(None),
    page: Optional[str] = Query("1"),
    page_size: Optional[str] = Query(None),
    store_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    authenticator: ShipStationAuthenticator = Depends(get_authenticator),
):
    """Export orders modified in [start_date, end_date] as a ShipStation <Orders> document."""
    started = time.monotonic()
    auth = _authenticate(request, authenticator, store_id)

    if (action or "export").lower() != "export":
        raise ValidationFailure(f"Unsupported action for GET: {action}")
    start = _parse_date_param("start_date", start_date)
    end = _parse_date_param("end_date", end_date)
    if start > end:
        raise ValidationFailure("start_date must not be after end_date")
    page_num, size = clamp_pagination(
        page, page_size or settings.EXPORT_DEFAULT_PAGE_SIZE,
        default_size=settings.EXPORT_DEFAULT_PAGE_SIZE, max_size=settings.EXPORT_MAX_PAGE_SIZE,
    )

    query = db.query(Order).filter(
        Order.store_id == auth.store_id,
        Order.updated_at >= start,
        Order.updated_at <= end,
        Order.status.notin_(EXCLUDED_FROM_EXPORT),
    )
    total = query.count()
    total_pages = max(math.ceil(total / size), 1)
    orders = (
        query.options(selectinload(Order.items))
        .order_by(Order.updated_at.desc(), Order.id.asc())
        .offset((page_num - 1) * size)
        .limit(size)
        .all()
    )

    document = build_order_export_document(orders, page=page_num, total_pages=total_pages)
    record_integration_event(
        db,
        store_id=auth.store_id,
        operation=IntegrationOperation.ORDER_EXPORT,
        status=IntegrationLogStatus.WARNING if document.excluded else IntegrationLogStatus.SUCCESS,
        request_data={"start_date": start_date, "end_date": end_date, "page": page_num, "page_size": size},
        response_data={
            "included": len(document.included),
            "excluded": [
                {"order_id": e.order_id, "order_number": e.order_number, "reasons": list(e.reasons)}
                for e in document.excluded
            ],
            "total_pages": total_pages,
        },
        execution_time_ms=int((time.monotonic() - started) * 1000),
    )
    logger.info(
        "Exported %s order(s) for store %s (page %s/%s, excluded %s)",
        len(document.included), auth.store_id, page_num, total_pages, len(document.excluded),
    )
    headers = {**NO_CACHE_HEADERS, "X-Excluded-Orders": str(len(document.excluded))}
    return Response(content=document.xml, media_type="application/xml; charset=utf-8", headers=headers)


@router.post("/orders", response_model=ShipNotifyResponse)
async def ship_notify(
    request: Request,
    action: Optional[str] = Query("shipnotify"),
    store_id: Optional[str] = Query(None),
    db: Session = Depends(get_db),
    authenticator: ShipStationAuthenticator = Depends(get_authenticator),
):
    """Apply a ShipStation shipment notification to the order's fulfillment state."""
    started = time.monotonic()
    auth = _authenticate(request, authenticator, store_id)
    if (action or "shipnotify").lower() != "shipnotify":
        raise ValidationFailure(f"Unsupported action for POST: {action}")

    body = await request.body()
    request_data = {
        "action": "shipnotify",
        "order_number": request.query_params.get("order_number"),
        "tracking_number": request.query_params.get("tracking_number"),
        "content_length": len(body),
    }
    try:
        notification = parse_shipment_notification(body)
        order, changed = record_shipment(db, auth.store_id, notification)
        db.commit()
    except IntegrationError as e:
        db.rollback()
        record_integration_event(
            db,
            store_id=auth.store_id,
            operation=IntegrationOperation.SHIPMENT_NOTIFICATION,
            status=IntegrationLogStatus.FAILURE,
            request_data=request_data,
            error_message=e.message,
            execution_time_ms=int((time.monotonic() - started) * 1000),
        )
        raise

    response = ShipNotifyResponse(order_id=order.id, tracking_number=order.tracking_number, changed=changed)
    record_integration_event(
        db,
        store_id=auth.store_id,
        operation=IntegrationOperation.SHIPMENT_NOTIFICATION,
        status=IntegrationLogStatus.SUCCESS,
        request_data=request_data,
        response_data=response.model_dump(),
        execution_time_ms=int((time.monotonic() - started) * 1000),
    )
    return response
