"""
Tests for fulfillment-slice updates and the job handlers that apply them.
"""
from datetime import datetime

import pytest

from app.errors import ResourceNotFound
from app.models import FulfillmentStatus, Job, JobStatus, JobType, Order
from app.services.job_handlers import JobHandlerRegistry
from app.services.job_queue import JobQueue
from app.services.order_fulfillment import FulfillmentUpdate, apply_fulfillment_update, find_order, record_shipment
from app.services.shipstation_webhook_handler import DeliveryEvent, ShipmentEvent, process_webhook_event
from app.services.shipstation_xml import ShipmentNotification
from app.workers.job_worker import JobWorker


def _notification(**overrides):
    values = dict(
        root="ShipNotice",
        order_number="ORD-1001",
        tracking_number="1Z999",
        carrier_code="UPS",
        ship_date=datetime(2024, 1, 16, 9, 0),
    )
    values.update(overrides)
    return ShipmentNotification(**values)


def _event(cls, store_id, **payload):
    return cls(
        store_id=store_id,
        resource_type="ITEM_SHIP_NOTIFY" if cls is ShipmentEvent else "ITEM_DELIVERED_NOTIFY",
        resource_url="https://ssapi.shipstation.com/shipments?batchId=1",
        resource_id=None,
        payload=payload,
    )


class TestApplyFulfillmentUpdate:
    def test_same_notification_twice_changes_nothing_the_second_time(self, db_session, store, make_order):
        order = make_order(order_number="ORD-1001")
        first, changed = record_shipment(db_session, store.id, _notification())
        db_session.commit()
        assert changed is True
        assert first.fulfillment_status == FulfillmentStatus.SHIPPED
        updated_at = first.fulfillment_updated_at

        second, changed_again = record_shipment(db_session, store.id, _notification())
        db_session.commit()
        assert changed_again is False
        assert second.id == order.id
        assert second.tracking_number == "1Z999"
        assert second.shipped_at == datetime(2024, 1, 16, 9, 0)
        assert second.fulfillment_updated_at == updated_at

    def test_status_never_moves_backwards(self, db_session, make_order):
        order = make_order()
        apply_fulfillment_update(db_session, order, FulfillmentUpdate(
            delivered_at=datetime(2024, 1, 18), fulfillment_status=FulfillmentStatus.DELIVERED,
        ))
        apply_fulfillment_update(db_session, order, FulfillmentUpdate(
            tracking_number="LATE", fulfillment_status=FulfillmentStatus.SHIPPED,
        ))
        assert order.fulfillment_status == FulfillmentStatus.DELIVERED
        assert order.tracking_number == "LATE"

    def test_late_shipment_keeps_delivered_external_status(self, db_session, make_order):
        order = make_order()
        apply_fulfillment_update(db_session, order, FulfillmentUpdate(
            external_order_status="delivered", fulfillment_status=FulfillmentStatus.DELIVERED,
        ))
        apply_fulfillment_update(db_session, order, FulfillmentUpdate(
            external_order_status="shipped", fulfillment_status=FulfillmentStatus.SHIPPED,
        ))
        assert order.fulfillment_status == FulfillmentStatus.DELIVERED
        assert order.external_order_status == "delivered"

        apply_fulfillment_update(db_session, order, FulfillmentUpdate(external_order_status="label_voided"))
        assert order.external_order_status == "label_voided"

    def test_first_ship_date_is_kept(self, db_session, make_order):
        order = make_order()
        apply_fulfillment_update(db_session, order, FulfillmentUpdate(shipped_at=datetime(2024, 1, 16)))
        apply_fulfillment_update(db_session, order, FulfillmentUpdate(shipped_at=datetime(2024, 1, 20)))
        assert order.shipped_at == datetime(2024, 1, 16)

    def test_void_only_marks_external_status(self, db_session, store, make_order):
        order = make_order(order_number="ORD-1001")
        record_shipment(db_session, store.id, _notification(void=True, shipment_id="S-1"))
        db_session.commit()
        db_session.refresh(order)
        assert order.external_order_status == "label_voided"
        assert order.tracking_number is None
        assert order.fulfillment_status == FulfillmentStatus.UNFULFILLED

    def test_commercial_fields_untouched(self, db_session, store, make_order):
        order = make_order(order_number="ORD-1001")
        total, email = order.total_amount, order.customer_email
        record_shipment(db_session, store.id, _notification())
        db_session.commit()
        db_session.refresh(order)
        assert order.total_amount == total
        assert order.customer_email == email


class TestFindOrder:
    def test_custom_field_id_wins_over_number(self, db_session, store, make_order):
        by_id = make_order(order_number="A")
        make_order(order_number="B")
        assert find_order(db_session, store.id, order_ids=[by_id.id], order_number="B").id == by_id.id

    def test_falls_back_to_order_number(self, db_session, store, make_order):
        order = make_order(order_number="ORD-77")
        assert find_order(db_session, store.id, order_ids=["ss-internal-9"], order_number="ORD-77").id == order.id

    def test_orders_are_scoped_to_the_store(self, db_session, other_store, make_order):
        order = make_order(order_number="ORD-1")
        with pytest.raises(ResourceNotFound):
            find_order(db_session, other_store.id, order_ids=[order.id], order_number="ORD-1")


class TestWebhookEventProcessing:
    def test_shipment_event_is_idempotent(self, db_session, store, make_order):
        order = make_order(order_number="ORD-5")
        event = _event(ShipmentEvent, store.id, order_number="ORD-5", tracking_number="T-5", carrier_code="fedex")

        first = process_webhook_event(db_session, event)
        second = process_webhook_event(db_session, event)
        assert first["changed"] is True
        assert second["changed"] is False
        assert second["order_id"] == order.id
        assert second["tracking_number"] == "T-5"

    def test_delivery_event(self, db_session, store, make_order):
        make_order(order_number="ORD-6")
        event = _event(DeliveryEvent, store.id, order_number="ORD-6", tracking_number="T-6",
                       delivered_date="2024-01-19T15:00:00Z")
        result = process_webhook_event(db_session, event)
        assert result["fulfillment_status"] == "delivered"
        order = db_session.query(Order).filter(Order.order_number == "ORD-6").one()
        assert order.delivered_at == datetime(2024, 1, 19, 15, 0)


class TestJobWorker:
    @pytest.fixture
    def queue(self, session_factory):
        return JobQueue(session_factory, max_attempts=2, backoff_jitter=0)

    @pytest.fixture
    def worker(self, queue, session_factory, cipher):
        registry = JobHandlerRegistry(session_factory, queue, cipher)
        return JobWorker(queue, registry, session_factory, name="test-worker")

    def test_shipment_job_runs_twice_without_side_effects(self, worker, queue, db_session, store, make_order):
        make_order(order_number="ORD-9")
        event = _event(ShipmentEvent, store.id, order_number="ORD-9", tracking_number="T-9")
        first = queue.enqueue(JobType.SHIPMENT_PROCESSING, event.to_job_payload(), store_id=store.id)
        second = queue.enqueue(JobType.SHIPMENT_PROCESSING, event.to_job_payload(), store_id=store.id)

        assert worker.drain() == 2
        db_session.expire_all()
        assert db_session.get(Job, first).status == JobStatus.SUCCEEDED
        assert db_session.get(Job, second).status == JobStatus.SUCCEEDED
        order = db_session.query(Order).filter(Order.order_number == "ORD-9").one()
        assert order.tracking_number == "T-9"

    def test_delivery_job_enqueues_one_notification(self, worker, queue, db_session, store, make_order):
        make_order(order_number="ORD-10")
        event = _event(DeliveryEvent, store.id, order_number="ORD-10", tracking_number="T-10")
        queue.enqueue(JobType.DELIVERY_PROCESSING, event.to_job_payload(), store_id=store.id)
        queue.enqueue(JobType.DELIVERY_PROCESSING, event.to_job_payload(), store_id=store.id)

        worker.drain()
        notifications = db_session.query(Job).filter(Job.job_type == JobType.ORDER_NOTIFICATION).all()
        assert len(notifications) == 1
        assert notifications[0].status == JobStatus.SUCCEEDED

    def test_missing_order_fails_permanently(self, worker, queue, db_session, store):
        event = _event(ShipmentEvent, store.id, order_number="NOPE", tracking_number="T")
        job_id = queue.enqueue(JobType.SHIPMENT_PROCESSING, event.to_job_payload(), store_id=store.id)

        outcome = worker.run_once()
        assert outcome["success"] is False
        assert outcome["status"] == JobStatus.FAILED.value
        db_session.expire_all()
        assert db_session.get(Job, job_id).error_kind == "not_found"

    def test_crashing_handler_is_retried_then_dead_lettered(self, worker, queue, db_session, store):
        def explode(db, job):
            raise RuntimeError("handler crashed")

        worker.registry.register(JobType.ORDER_PROCESSING, explode)
        job_id = queue.enqueue(JobType.ORDER_PROCESSING, {"store_id": store.id}, store_id=store.id)

        first = worker.run_once()
        assert first["status"] == JobStatus.PENDING.value
        db_session.query(Job).filter(Job.id == job_id).update({"available_at": datetime(2000, 1, 1)})
        db_session.commit()
        second = worker.run_once()
        assert second["status"] == JobStatus.DEAD_LETTERED.value
