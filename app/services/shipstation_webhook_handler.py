"""
ShipStation webhook ingestion.

Every recognised event is processed once synchronously (best effort, under a
hard timeout) and then always enqueued as a durable job carrying the same
payload. Both paths are idempotent, so running both is harmless.

Response policy towards ShipStation:
  * 200 for success, for payloads we cannot use (bad shape, unknown type,
    missing order) and for stores whose integration is switched off, so
    ShipStation does not retry forever;
  * 500 when the synchronous step hit an infrastructure problem or the job
    could not be enqueued, so ShipStation retries.
"""
import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Union
from urllib.parse import parse_qs

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.errors import (
    ErrorKind,
    IntegrationDisabled,
    IntegrationError,
    MalformedPayload,
    ResourceNotFound,
    TransientInfrastructureFailure,
    ValidationFailure,
)
from app.models import (
    FulfillmentStatus,
    IntegrationLogStatus,
    IntegrationOperation,
    JobPriority,
    JobType,
    Store,
    utcnow,
)
from app.services.integration_log import record_integration_event
from app.services.job_queue import JobQueue
from app.services.order_fulfillment import FulfillmentUpdate, apply_fulfillment_update, find_order
from app.services.shipstation_xml import parse_export_date

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("resource_type", "resource_url")
SUPPORTED_EVENTS = ["ITEM_SHIP_NOTIFY", "ITEM_DELIVERED_NOTIFY", "ITEM_ORDER_NOTIFY"]


@dataclass(frozen=True)
class _EventBase:
    store_id: str
    resource_type: str
    resource_url: str
    resource_id: Optional[str]
    payload: dict = field(default_factory=dict)
    received_at: str = ""

    @property
    def order_ids(self) -> list[str]:
        return [str(v) for v in (self.payload.get("order_id"), self.payload.get("custom_field1")) if v]

    @property
    def order_number(self) -> Optional[str]:
        value = self.payload.get("order_number") or self.payload.get("order_key")
        return str(value) if value else None

    def to_job_payload(self) -> dict:
        return {
            "store_id": self.store_id,
            "resource_type": self.resource_type,
            "resource_url": self.resource_url,
            "resource_id": self.resource_id,
            "received_at": self.received_at,
            "payload": self.payload,
        }


@dataclass(frozen=True)
class ShipmentEvent(_EventBase):
    pass


@dataclass(frozen=True)
class DeliveryEvent(_EventBase):
    pass


@dataclass(frozen=True)
class OrderEvent(_EventBase):
    pass


WebhookEvent = Union[ShipmentEvent, DeliveryEvent, OrderEvent]

EVENT_TYPES: dict[str, type] = {
    "ITEM_SHIP_NOTIFY": ShipmentEvent,
    "SHIP_NOTIFY": ShipmentEvent,
    "ITEM_DELIVERED_NOTIFY": DeliveryEvent,
    "DELIVERED_NOTIFY": DeliveryEvent,
    "ITEM_ORDER_NOTIFY": OrderEvent,
    "ORDER_NOTIFY": OrderEvent,
}

JOB_TYPE_FOR_EVENT: dict[type, JobType] = {
    ShipmentEvent: JobType.SHIPMENT_PROCESSING,
    DeliveryEvent: JobType.DELIVERY_PROCESSING,
    OrderEvent: JobType.ORDER_PROCESSING,
}


def parse_webhook_body(raw: bytes, content_type: Optional[str]) -> dict:
    """Decode a JSON or form-encoded webhook body into a dict."""
    content_type = (content_type or "").lower()
    text = (raw or b"").decode("utf-8", errors="replace").strip()
    if not text:
        raise MalformedPayload("Empty webhook body")

    if "application/x-www-form-urlencoded" in content_type:
        form = {k: v[0] for k, v in parse_qs(text, keep_blank_values=True).items()}
        if "payload" in form:
            text = form["payload"]
        else:
            return form

    try:
        body = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedPayload(f"Invalid webhook JSON: {e}")
    if not isinstance(body, dict):
        raise MalformedPayload("Webhook payload must be a JSON object")
    return body


def classify_webhook(store_id: str, body: dict) -> Optional[WebhookEvent]:
    """
    Build the typed event for a webhook body. Returns None for resource types
    we do not handle; raises ValidationFailure when required fields are missing.
    """
    missing = [name for name in REQUIRED_FIELDS if not body.get(name)]
    if missing:
        raise ValidationFailure(f"Missing required webhook fields: {', '.join(missing)}")
    resource_type = str(body["resource_type"]).strip().upper()
    event_cls = EVENT_TYPES.get(resource_type)
    if event_cls is None:
        return None
    resource_id = body.get("resource_id")
    return event_cls(
        store_id=store_id,
        resource_type=resource_type,
        resource_url=str(body["resource_url"]),
        resource_id=str(resource_id) if resource_id is not None else None,
        payload=body,
        received_at=utcnow().isoformat(),
    )


def event_from_job_payload(job_payload: dict) -> WebhookEvent:
    event_cls = EVENT_TYPES.get(str(job_payload.get("resource_type", "")).upper())
    if event_cls is None:
        raise ValidationFailure(f"Unknown resource type in job payload: {job_payload.get('resource_type')!r}")
    return event_cls(
        store_id=job_payload["store_id"],
        resource_type=job_payload["resource_type"],
        resource_url=job_payload.get("resource_url") or "",
        resource_id=job_payload.get("resource_id"),
        payload=job_payload.get("payload") or {},
        received_at=job_payload.get("received_at") or "",
    )


def _optional_date(payload: dict, key: str):
    raw = payload.get(key)
    if not raw:
        return None
    try:
        return parse_export_date(str(raw))
    except ValueError:
        raise ValidationFailure(f"{key} is not a valid date: {raw!r}")


def _optional_decimal(payload: dict, key: str):
    raw = payload.get(key)
    if raw in (None, ""):
        return None
    try:
        return Decimal(str(raw))
    except InvalidOperation:
        raise ValidationFailure(f"{key} is not a valid number: {raw!r}")


def _shipment_update(event: _EventBase, delivered: bool) -> FulfillmentUpdate:
    p = event.payload
    if not delivered and not (p.get("tracking_number") or p.get("shipment_id")):
        raise ValidationFailure("Shipment webhook has no tracking number or shipment id")
    delivered_at = _optional_date(p, "delivered_date") or _optional_date(p, "actual_delivery_date")
    if delivered and delivered_at is None:
        delivered_at = utcnow()
    estimated = _optional_date(p, "estimated_delivery_date")
    return FulfillmentUpdate(
        tracking_number=p.get("tracking_number") or None,
        carrier=p.get("carrier_code") or None,
        carrier_code=p.get("carrier_code") or None,
        service_code=p.get("service_code") or None,
        package_code=p.get("package_code") or None,
        shipped_at=_optional_date(p, "ship_date") or (None if delivered else utcnow()),
        delivered_at=delivered_at,
        estimated_delivery_date=estimated.date() if estimated else None,
        shipment_cost=_optional_decimal(p, "shipment_cost"),
        label_url=p.get("label_url") or None,
        form_url=p.get("form_url") or None,
        external_order_id=str(p["shipment_id"]) if p.get("shipment_id") else None,
        external_order_status="delivered" if delivered else "shipped",
        fulfillment_status=FulfillmentStatus.DELIVERED if delivered else FulfillmentStatus.SHIPPED,
    )


def _order_update(event: OrderEvent) -> FulfillmentUpdate:
    p = event.payload
    return FulfillmentUpdate(
        external_order_id=event.resource_id or (str(p["order_id"]) if p.get("order_id") else None),
        external_order_status=p.get("order_status") or "notified",
    )


def process_webhook_event(db: Session, event: WebhookEvent) -> dict[str, Any]:
    """
    Apply one event to its order's fulfillment slice and commit.
    Raises IntegrationError subclasses; safe to run more than once.
    """
    if not (event.order_ids or event.order_number):
        raise ValidationFailure(f"{event.resource_type} webhook carries no order reference")

    if isinstance(event, ShipmentEvent):
        update = _shipment_update(event, delivered=False)
    elif isinstance(event, DeliveryEvent):
        update = _shipment_update(event, delivered=True)
    elif isinstance(event, OrderEvent):
        update = _order_update(event)
    else:
        raise TypeError(f"Unhandled webhook event type: {type(event).__name__}")

    try:
        order = find_order(db, event.store_id, order_ids=event.order_ids, order_number=event.order_number, lock=True)
        changed = apply_fulfillment_update(db, order, update)
        db.commit()
    except IntegrationError:
        db.rollback()
        raise
    except SQLAlchemyError as e:
        db.rollback()
        raise TransientInfrastructureFailure(f"Database error while applying {event.resource_type}: {e}")

    return {
        "order_id": order.id,
        "changed": changed,
        "tracking_number": order.tracking_number,
        "fulfillment_status": order.fulfillment_status.value,
    }


def notification_key(store_id: str, order_id: str, tracking_number: Optional[str]) -> str:
    return f"notify:{store_id}:{order_id}:delivered:{tracking_number or '-'}"


def enqueue_delivery_notification(job_queue: JobQueue, event: DeliveryEvent, result: dict) -> str:
    """One customer notification per (order, tracking number), however often the event arrives."""
    return job_queue.enqueue(
        JobType.ORDER_NOTIFICATION,
        {
            "store_id": event.store_id,
            "order_id": result["order_id"],
            "notification_type": "delivered",
            "tracking_number": result.get("tracking_number"),
            "carrier": event.payload.get("carrier_code"),
            "delivered_date": event.payload.get("delivered_date"),
        },
        JobPriority.MEDIUM,
        store_id=event.store_id,
        idempotency_key=notification_key(event.store_id, result["order_id"], result.get("tracking_number")),
        dedupe=True,
    )


@dataclass
class IngestOutcome:
    status_code: int
    body: dict


class WebhookIngestor:
    def __init__(self, session_factory: sessionmaker, job_queue: JobQueue, timeout: float):
        self.session_factory = session_factory
        self.job_queue = job_queue
        self.timeout = timeout

    def _process_sync(self, event: WebhookEvent) -> dict:
        with self.session_factory() as db:
            return process_webhook_event(db, event)

    def _audit(self, store_id, status, request_data, response_data=None, error=None, started=None):
        with self.session_factory() as db:
            record_integration_event(
                db,
                store_id=store_id,
                operation=IntegrationOperation.WEBHOOK_PROCESSING,
                status=status,
                request_data=request_data,
                response_data=response_data,
                error_message=error,
                execution_time_ms=int((time.monotonic() - started) * 1000) if started else 0,
            )

    def check_store(self, store_id: str) -> None:
        with self.session_factory() as db:
            store = db.get(Store, store_id)
            if store is None:
                raise ResourceNotFound(f"Store {store_id} not found")
            if not store.is_active or not store.integration_enabled:
                raise IntegrationDisabled("ShipStation integration is disabled for this store")

    async def ingest(self, store_id: str, raw_body: bytes, content_type: Optional[str]) -> IngestOutcome:
        started = time.monotonic()
        summary: dict[str, Any] = {"content_type": content_type}

        try:
            self.check_store(store_id)
        except ResourceNotFound as e:
            return IngestOutcome(404, {"success": False, "error": e.message})
        except IntegrationDisabled as e:
            self._audit(store_id, IntegrationLogStatus.WARNING, summary, error=e.message, started=started)
            return IngestOutcome(200, {"success": False, "ignored": True, "message": e.message})

        try:
            body = parse_webhook_body(raw_body, content_type)
            event = classify_webhook(store_id, body)
        except (MalformedPayload, ValidationFailure) as e:
            logger.warning("Rejected ShipStation webhook for store %s: %s", store_id, e.message)
            self._audit(store_id, IntegrationLogStatus.FAILURE, summary, error=e.message, started=started)
            return IngestOutcome(200, {"success": False, "error": "Invalid webhook payload", "message": e.message})

        summary.update({"resource_type": body.get("resource_type"), "resource_id": body.get("resource_id")})
        if event is None:
            logger.warning("Unhandled ShipStation webhook resource type: %s", body.get("resource_type"))
            self._audit(store_id, IntegrationLogStatus.WARNING, summary, error="Unhandled resource type", started=started)
            return IngestOutcome(200, {"success": True, "ignored": True, "resource_type": body.get("resource_type")})

        sync_result: Optional[dict] = None
        sync_error: Optional[IntegrationError] = None
        try:
            sync_result = await asyncio.wait_for(
                asyncio.get_running_loop().run_in_executor(None, self._process_sync, event), timeout=self.timeout
            )
        except asyncio.TimeoutError:
            sync_error = TransientInfrastructureFailure(f"Synchronous processing exceeded {self.timeout}s")
        except IntegrationError as e:
            sync_error = e
        except Exception as e:
            logger.exception("Unexpected error processing %s webhook for store %s", event.resource_type, store_id)
            sync_error = TransientInfrastructureFailure(str(e))

        priority = JobPriority.HIGH if sync_error is None else JobPriority.URGENT
        job_payload = event.to_job_payload()
        if sync_error is not None:
            job_payload["retry_reason"] = "immediate_processing_failed"
        try:
            job_id = self.job_queue.enqueue(
                JOB_TYPE_FOR_EVENT[type(event)], job_payload, priority, store_id=store_id
            )
            if isinstance(event, DeliveryEvent) and sync_result is not None:
                enqueue_delivery_notification(self.job_queue, event, sync_result)
        except Exception as e:
            logger.exception("Failed to enqueue %s webhook job for store %s", event.resource_type, store_id)
            self._audit(store_id, IntegrationLogStatus.FAILURE, summary, error=f"Enqueue failed: {e}", started=started)
            return IngestOutcome(500, {"success": False, "error": "Internal server error",
                                       "message": "Webhook processing failed, will retry"})

        response = {
            "success": sync_error is None,
            "resource_type": event.resource_type,
            "job_id": job_id,
            "processed_at": utcnow().isoformat(),
        }
        if sync_error is None:
            self._audit(store_id, IntegrationLogStatus.SUCCESS, summary, response_data=sync_result, started=started)
            response["message"] = "Webhook processed successfully"
            return IngestOutcome(200, response)

        self._audit(store_id, IntegrationLogStatus.FAILURE, summary, error=sync_error.message, started=started)
        response["message"] = sync_error.message
        if sync_error.kind == ErrorKind.TRANSIENT:
            return IngestOutcome(500, response)
        return IngestOutcome(200, response)
