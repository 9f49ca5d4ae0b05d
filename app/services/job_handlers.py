"""
Job handlers for the ShipStation job queue.

Each handler takes a session and a JobRecord and returns a HandlerResult.
Integration errors become failed results here; anything else propagates to
the worker, which records it as a transient failure.
"""
import asyncio
import logging
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from app.errors import ErrorKind, HandlerResult, IntegrationError, RetryExhausted, ValidationFailure
from app.models import IntegrationLogStatus, IntegrationOperation, JobType, Order, Store
from app.services.credentials import SecretCipher
from app.services.integration_log import record_integration_event
from app.services.job_queue import JobQueue, JobRecord
from app.services.shipstation_inventory_sync import InventoryFeedClient, InventoryReconciler, build_inventory_client
from app.services.shipstation_webhook_handler import (
    DeliveryEvent,
    enqueue_delivery_notification,
    event_from_job_payload,
    process_webhook_event,
)

logger = logging.getLogger(__name__)

Handler = Callable[[Session, JobRecord], HandlerResult]


class NotificationDispatcher:
    """
    Hands customer notifications to the platform's messaging service.
    Delivery is fire-and-forget; this gateway only records the hand-off.
    """

    def send(self, db: Session, order: Order, notification_type: str, details: dict) -> None:
        logger.info(
            "Customer notification '%s' for order %s (%s) tracking=%s",
            notification_type, order.order_number, order.customer_email, details.get("tracking_number"),
        )


class JobHandlerRegistry:
    def __init__(
        self,
        session_factory: sessionmaker,
        job_queue: JobQueue,
        cipher: SecretCipher,
        *,
        dispatcher: Optional[NotificationDispatcher] = None,
        inventory_client_factory: Optional[Callable[[Session, str], InventoryFeedClient]] = None,
    ):
        self.session_factory = session_factory
        self.job_queue = job_queue
        self.cipher = cipher
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.inventory_client_factory = inventory_client_factory or (
            lambda db, store_id: build_inventory_client(db, store_id, self.cipher)
        )
        self.handlers: dict[JobType, Handler] = {}
        self.register(JobType.SHIPMENT_PROCESSING, self.handle_webhook_event)
        self.register(JobType.DELIVERY_PROCESSING, self.handle_webhook_event)
        self.register(JobType.ORDER_PROCESSING, self.handle_webhook_event)
        self.register(JobType.ORDER_NOTIFICATION, self.handle_order_notification)
        self.register(JobType.INVENTORY_SYNC, self.handle_inventory_sync)

    def register(self, job_type: JobType, handler: Handler) -> None:
        self.handlers[JobType(job_type)] = handler

    def dispatch(self, job: JobRecord) -> HandlerResult:
        handler = self.handlers.get(job.job_type)
        if handler is None:
            return HandlerResult.failure(ErrorKind.VALIDATION_FAILURE, f"No handler for job type {job.job_type.value}")

        with self.session_factory() as db:
            try:
                result = handler(db, job)
            except IntegrationError as e:
                db.rollback()
                return HandlerResult.from_error(e)
            except SQLAlchemyError as e:
                db.rollback()
                return HandlerResult.failure(ErrorKind.TRANSIENT, f"Database error: {e}")
            if result.ok:
                db.commit()
            else:
                db.rollback()
            return result

    # Handlers

    def handle_webhook_event(self, db: Session, job: JobRecord) -> HandlerResult:
        event = event_from_job_payload(job.payload)
        outcome = process_webhook_event(db, event)
        if isinstance(event, DeliveryEvent):
            enqueue_delivery_notification(self.job_queue, event, outcome)
        return HandlerResult.success(f"{event.resource_type} applied to order {outcome['order_id']}", **outcome)

    def handle_order_notification(self, db: Session, job: JobRecord) -> HandlerResult:
        order_id = job.payload.get("order_id")
        store_id = job.payload.get("store_id") or job.store_id
        if not order_id:
            raise ValidationFailure("order_notification job has no order_id")
        order = db.query(Order).filter(Order.id == order_id, Order.store_id == store_id).first()
        if order is None:
            return HandlerResult.failure(ErrorKind.NOT_FOUND, f"Order {order_id} not found")
        notification_type = job.payload.get("notification_type") or "delivered"
        self.dispatcher.send(db, order, notification_type, job.payload)
        return HandlerResult.success(f"{notification_type} notification dispatched", order_id=order.id)

    def handle_inventory_sync(self, db: Session, job: JobRecord) -> HandlerResult:
        store_id = job.payload.get("store_id") or job.store_id
        if not store_id:
            raise ValidationFailure("inventory_sync job has no store_id")
        store = db.get(Store, store_id)
        if store is None or not store.is_active or not store.integration_enabled:
            return HandlerResult.failure(ErrorKind.INTEGRATION_DISABLED, f"Integration disabled for store {store_id}")

        client = self.inventory_client_factory(db, store_id)
        # Workers run in executor threads, which have no event loop of their own
        result = asyncio.run(InventoryReconciler(db, client).sync_inventory(store_id))
        if result.complete:
            return HandlerResult.success(f"Synced {result.synced} inventory records", **result.to_dict())
        return HandlerResult.failure(result.error_kind or ErrorKind.TRANSIENT, "; ".join(result.errors) or "Inventory sync incomplete")


def audit_dead_letter(session_factory: sessionmaker, job: JobRecord, error: str) -> None:
    """Dead letters surface in the integration log as RetryExhausted."""
    exhausted = RetryExhausted(f"Job {job.id} ({job.job_type.value}) exhausted {job.max_attempts} attempts: {error}")
    with session_factory() as db:
        record_integration_event(
            db,
            store_id=job.store_id,
            operation=IntegrationOperation.JOB_PROCESSING,
            status=IntegrationLogStatus.FAILURE,
            request_data={"job_id": job.id, "job_type": job.job_type.value, "attempts": job.attempts + 1},
            error_message=f"{exhausted.code}: {exhausted.message}",
        )
