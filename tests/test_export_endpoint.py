"""
Tests for the ShipStation Custom Store endpoint (order export and shipnotify).
"""
from datetime import timedelta
from xml.etree import ElementTree as ET

import pytest

from app.models import IntegrationLog, IntegrationOperation, Order, OrderStatus, utcnow

ORDERS_URL = "/api/shipstation/orders"


def _fmt(value):
    return value.strftime("%m/%d/%Y %H:%M")


@pytest.fixture
def window():
    now = utcnow()
    return {"action": "export", "start_date": _fmt(now - timedelta(days=1)), "end_date": _fmt(now + timedelta(days=1))}


def _ship_notice(order, tracking="1Z-EXPORT"):
    return (
        "<ShipNotice>"
        f"<OrderNumber>{order.order_number}</OrderNumber>"
        f"<CustomField1>{order.id}</CustomField1>"
        "<Carrier>UPS</Carrier>"
        f"<TrackingNumber>{tracking}</TrackingNumber>"
        "<ShipDate>01/16/2024</ShipDate>"
        "</ShipNotice>"
    ).encode()


class TestExport:
    def test_export_returns_uncached_xml(self, client, api_headers, make_order, window):
        order = make_order()
        response = client.get(ORDERS_URL, params=window, headers=api_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/xml")
        assert "no-cache" in response.headers["cache-control"]
        assert response.headers["pragma"] == "no-cache"
        assert response.headers["expires"] == "0"
        assert response.headers["x-excluded-orders"] == "0"

        root = ET.fromstring(response.content)
        assert root.tag == "Orders"
        assert [o.findtext("CustomField1") for o in root.findall("Order")] == [order.id]

    def test_basic_auth_works_too(self, client, basic_headers, make_order, window):
        make_order()
        response = client.get(ORDERS_URL, params=window, headers=basic_headers)
        assert response.status_code == 200

    def test_invalid_orders_are_counted(self, client, api_headers, make_order, window):
        make_order()
        make_order(shipping_address=None)
        response = client.get(ORDERS_URL, params=window, headers=api_headers)
        assert response.headers["x-excluded-orders"] == "1"
        assert len(ET.fromstring(response.content).findall("Order")) == 1

    def test_cancelled_and_out_of_window_orders_are_left_out(self, client, api_headers, make_order, window):
        keep = make_order()
        make_order(status=OrderStatus.CANCELLED)
        make_order(status=OrderStatus.REFUNDED)
        make_order(updated_at=utcnow() - timedelta(days=10))

        root = ET.fromstring(client.get(ORDERS_URL, params=window, headers=api_headers).content)
        assert [o.findtext("CustomField1") for o in root.findall("Order")] == [keep.id]

    def test_other_stores_orders_are_never_exported(self, client, api_headers, db_session, other_store, make_order, window):
        make_order(store_id=other_store.id)
        root = ET.fromstring(client.get(ORDERS_URL, params=window, headers=api_headers).content)
        assert root.findall("Order") == []

    def test_pagination(self, client, api_headers, make_order, window):
        make_order()
        make_order()
        response = client.get(ORDERS_URL, params={**window, "page": "2", "page_size": "1"}, headers=api_headers)
        root = ET.fromstring(response.content)
        assert root.attrib["pages"] == "2"
        assert root.attrib["page"] == "2"
        assert len(root.findall("Order")) == 1

    def test_export_is_logged(self, client, api_headers, db_session, store, make_order, window):
        make_order()
        client.get(ORDERS_URL, params=window, headers=api_headers)
        log = db_session.query(IntegrationLog).filter(IntegrationLog.operation == IntegrationOperation.ORDER_EXPORT).one()
        assert log.store_id == store.id
        assert log.response_data["included"] == 1


class TestExportErrors:
    def test_missing_credentials(self, client, window):
        response = client.get(ORDERS_URL, params=window)
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "UNAUTHORIZED"
        assert response.headers["www-authenticate"] == "Basic"

    def test_wrong_secret(self, client, api_credentials, window):
        headers = {"X-API-Key": api_credentials.identifier, "X-API-Secret": "not-the-secret"}
        assert client.get(ORDERS_URL, params=window, headers=headers).status_code == 401

    def test_unparseable_date(self, client, api_headers, window):
        response = client.get(ORDERS_URL, params={**window, "start_date": "last week"}, headers=api_headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_missing_date(self, client, api_headers):
        response = client.get(ORDERS_URL, params={"action": "export"}, headers=api_headers)
        assert response.status_code == 400

    def test_start_after_end(self, client, api_headers):
        params = {"action": "export", "start_date": "01/20/2024 00:00", "end_date": "01/10/2024 00:00"}
        assert client.get(ORDERS_URL, params=params, headers=api_headers).status_code == 400

    def test_disabled_integration(self, client, api_headers, db_session, store, window):
        store.integration_enabled = False
        db_session.commit()
        response = client.get(ORDERS_URL, params=window, headers=api_headers)
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "INTEGRATION_DISABLED"


class TestShipNotify:
    def test_shipnotify_updates_order(self, client, api_headers, db_session, make_order):
        order = make_order()
        response = client.post(
            ORDERS_URL,
            params={"action": "shipnotify", "order_number": order.order_number},
            content=_ship_notice(order),
            headers={**api_headers, "Content-Type": "application/xml"},
        )
        assert response.status_code == 200
        body = response.json()
        assert body == {"success": True, "order_id": order.id, "tracking_number": "1Z-EXPORT", "changed": True}

        db_session.expire_all()
        stored = db_session.get(Order, order.id)
        assert stored.carrier == "UPS"
        assert stored.fulfillment_status.value == "shipped"

    def test_repeat_notification_changes_nothing(self, client, api_headers, make_order):
        order = make_order()
        params = {"action": "shipnotify"}
        headers = {**api_headers, "Content-Type": "application/xml"}
        client.post(ORDERS_URL, params=params, content=_ship_notice(order), headers=headers)
        again = client.post(ORDERS_URL, params=params, content=_ship_notice(order), headers=headers)
        assert again.status_code == 200
        assert again.json()["changed"] is False

    def test_unknown_order(self, client, api_headers):
        body = b"<ShipNotice><OrderNumber>NOPE</OrderNumber><TrackingNumber>T</TrackingNumber></ShipNotice>"
        response = client.post(ORDERS_URL, params={"action": "shipnotify"}, content=body, headers=api_headers)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "NOT_FOUND"

    def test_malformed_body(self, client, api_headers):
        response = client.post(ORDERS_URL, params={"action": "shipnotify"}, content=b"<broken", headers=api_headers)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "MALFORMED_PAYLOAD"

    def test_requires_credentials(self, client, make_order):
        order = make_order()
        response = client.post(ORDERS_URL, params={"action": "shipnotify"}, content=_ship_notice(order))
        assert response.status_code == 401
