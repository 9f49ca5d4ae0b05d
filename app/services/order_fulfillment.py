"""
Fulfillment-slice updates on orders.

The gateway never edits an order's commercial data; it only records what
ShipStation reports (tracking, carrier, ship/delivery dates, label links).
Updates are idempotent: applying the same update twice changes nothing the
second time.
"""
import logging
from dataclasses import dataclass, fields
from datetime import date, datetime
from decimal import Decimal
from typing import Iterable, Optional

from sqlalchemy.orm import Session

from app.errors import ResourceNotFound, ValidationFailure
from app.models import FulfillmentStatus, Order, utcnow
from app.services.shipstation_xml import ShipmentNotification

logger = logging.getLogger(__name__)

_FULFILLMENT_RANK = {
    FulfillmentStatus.UNFULFILLED: 0,
    FulfillmentStatus.SHIPPED: 1,
    FulfillmentStatus.DELIVERED: 2,
}
# Event timestamps may default to "now" when ShipStation omits them; keep the first one recorded
_FIRST_WRITE_WINS = ("shipped_at", "delivered_at")


@dataclass(frozen=True)
class FulfillmentUpdate:
    """Only non-None fields are written."""
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    carrier_code: Optional[str] = None
    service_code: Optional[str] = None
    package_code: Optional[str] = None
    shipped_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    estimated_delivery_date: Optional[date] = None
    shipment_cost: Optional[Decimal] = None
    label_url: Optional[str] = None
    form_url: Optional[str] = None
    fulfillment_notes: Optional[str] = None
    external_order_id: Optional[str] = None
    external_order_status: Optional[str] = None
    fulfillment_status: Optional[FulfillmentStatus] = None

    @classmethod
    def from_notification(cls, notification: ShipmentNotification) -> "FulfillmentUpdate":
        if notification.void:
            return cls(external_order_status="label_voided", external_order_id=notification.shipment_id)
        delivered = notification.actual_delivery_date
        notes = "\n".join(n for n in (notification.internal_notes, notification.customer_notes) if n) or None
        return cls(
            tracking_number=notification.tracking_number,
            carrier=notification.carrier_code,
            carrier_code=notification.carrier_code,
            service_code=notification.service_code,
            package_code=notification.package_code,
            shipped_at=notification.ship_date or (utcnow() if notification.tracking_number else None),
            delivered_at=delivered,
            estimated_delivery_date=notification.estimated_delivery_date,
            shipment_cost=notification.shipment_cost,
            label_url=notification.label_url,
            form_url=notification.form_url,
            fulfillment_notes=notes,
            external_order_id=notification.shipment_id,
            external_order_status="delivered" if delivered else "shipped",
            fulfillment_status=FulfillmentStatus.DELIVERED if delivered else FulfillmentStatus.SHIPPED,
        )


def find_order(
    db: Session,
    store_id: str,
    order_ids: Iterable[str] = (),
    order_number: Optional[str] = None,
    lock: bool = False,
) -> Order:
    """Resolve an order within a store by id candidates, then by order number."""
    def _query():
        q = db.query(Order).filter(Order.store_id == store_id)
        return q.with_for_update() if lock else q

    for order_id in order_ids:
        if not order_id:
            continue
        order = _query().filter(Order.id == str(order_id)).first()
        if order is not None:
            return order
    if order_number:
        order = _query().filter(Order.order_number == str(order_number)).first()
        if order is not None:
            return order
    reference = order_number or next((o for o in order_ids if o), None)
    raise ResourceNotFound(f"Order {reference} not found")


def apply_fulfillment_update(db: Session, order: Order, update: FulfillmentUpdate) -> bool:
    """
    Write the update onto the order's fulfillment slice. Returns True when
    anything changed. Does not commit.

    fulfillment_status only moves forward (unfulfilled -> shipped -> delivered),
    so a late shipment event cannot undo a delivery; such a stale event also
    leaves external_order_status alone.
    """
    current_status = order.fulfillment_status or FulfillmentStatus.UNFULFILLED
    stale = (
        update.fulfillment_status is not None
        and _FULFILLMENT_RANK[update.fulfillment_status] < _FULFILLMENT_RANK[current_status]
    )
    changed = False
    for f in fields(update):
        if f.name == "fulfillment_status":
            continue
        if f.name == "external_order_status" and stale:
            continue
        value = getattr(update, f.name)
        if value is None:
            continue
        current = getattr(order, f.name)
        if f.name in _FIRST_WRITE_WINS and current is not None:
            continue
        if current != value:
            setattr(order, f.name, value)
            changed = True

    if update.fulfillment_status is not None:
        if _FULFILLMENT_RANK[update.fulfillment_status] > _FULFILLMENT_RANK[current_status]:
            order.fulfillment_status = update.fulfillment_status
            changed = True

    if changed:
        order.fulfillment_updated_at = utcnow()
        db.flush()
        logger.info(
            "Order %s fulfillment updated: status=%s tracking=%s",
            order.id, order.fulfillment_status.value if order.fulfillment_status else None, order.tracking_number,
        )
    return changed


def record_shipment(db: Session, store_id: str, notification: ShipmentNotification) -> tuple[Order, bool]:
    """Resolve the notification's order (row-locked) and apply it."""
    if not notification.candidate_order_ids and not notification.order_number:
        raise ValidationFailure("Order ID or Order Number is required")
    order = find_order(
        db,
        store_id,
        order_ids=notification.candidate_order_ids,
        order_number=notification.order_number,
        lock=True,
    )
    changed = apply_fulfillment_update(db, order, FulfillmentUpdate.from_notification(notification))
    return order, changed
