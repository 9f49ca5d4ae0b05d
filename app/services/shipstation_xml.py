"""
ShipStation Custom Store XML wire format.

Outbound: the <Orders> export document ShipStation polls for.
Inbound: shipment notifications (ShipNotice / ShipmentNotification / ShipmentUpdate / Shipment).

Documents are assembled as text with explicit escaping so names and notes can
be emitted as CDATA; inbound documents are read with ElementTree.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Optional
from xml.etree import ElementTree as ET

from app.errors import MalformedPayload, ValidationFailure
from app.models import OrderStatus

logger = logging.getLogger(__name__)

SHIPSTATION_DATE_FORMAT = "%m/%d/%Y %H:%M"
_ACCEPTED_DATE_FORMATS = (
    SHIPSTATION_DATE_FORMAT,
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y",
    "%Y-%m-%d",
)
NOTIFICATION_ROOTS = ("ShipNotice", "ShipmentNotification", "ShipmentUpdate", "Shipment")

_STATUS_TO_SHIPSTATION = {
    OrderStatus.PENDING: "awaiting_payment",
    OrderStatus.CONFIRMED: "awaiting_fulfillment",
    OrderStatus.PROCESSING: "awaiting_fulfillment",
    OrderStatus.SHIPPED: "shipped",
    OrderStatus.DELIVERED: "shipped",
    OrderStatus.CANCELLED: "cancelled",
    OrderStatus.REFUNDED: "cancelled",
}
_STATUS_FROM_SHIPSTATION = {
    "awaiting_payment": OrderStatus.PENDING,
    "awaiting_fulfillment": OrderStatus.CONFIRMED,
    "awaiting_shipment": OrderStatus.CONFIRMED,
    "shipped": OrderStatus.SHIPPED,
    "delivered": OrderStatus.DELIVERED,
    "cancelled": OrderStatus.CANCELLED,
    "on_hold": OrderStatus.PENDING,
}


def map_order_status_to_shipstation(status) -> str:
    try:
        return _STATUS_TO_SHIPSTATION.get(OrderStatus(status), "awaiting_fulfillment")
    except ValueError:
        return "awaiting_fulfillment"


def map_shipstation_status_to_internal(status: Optional[str]) -> OrderStatus:
    return _STATUS_FROM_SHIPSTATION.get((status or "").strip().lower(), OrderStatus.CONFIRMED)


def format_export_date(value: Optional[datetime]) -> str:
    if value is None:
        return ""
    return value.strftime(SHIPSTATION_DATE_FORMAT)


def parse_export_date(value: str) -> datetime:
    """Parse a ShipStation date (MM/dd/yyyy HH:mm, a few variants, or ISO 8601)."""
    text = (value or "").strip()
    if not text:
        raise ValueError("empty date")
    for fmt in _ACCEPTED_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def format_money(amount: Any) -> str:
    if amount is None:
        return "0.00"
    return f"{Decimal(str(amount)).quantize(Decimal('0.01'))}"


def clamp_pagination(page: Any, page_size: Any, default_size: int = 50, max_size: int = 500) -> tuple[int, int]:
    """page >= 1, 1 <= page_size <= max_size; garbage falls back to defaults."""
    try:
        page = int(page)
    except (TypeError, ValueError):
        page = 1
    try:
        page_size = int(page_size)
    except (TypeError, ValueError):
        page_size = default_size
    return max(1, page), min(max_size, max(1, page_size))


# Control characters XML 1.0 forbids even as character references
_INVALID_XML_CHARS = re.compile("[\x00-\x08\x0b\x0c\x0e-\x1f]")


def strip_invalid_xml_chars(text: str) -> str:
    return _INVALID_XML_CHARS.sub("", text)


def escape_xml(text: Any) -> str:
    if text is None:
        return ""
    return (
        strip_invalid_xml_chars(str(text))
        .replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
        .replace("'", "&#39;")
    )


def cdata(text: Any) -> str:
    """Wrap in CDATA, splitting any embedded ]]> terminator."""
    if not text:
        return ""
    escaped = strip_invalid_xml_chars(str(text)).replace("]]>", "]]]]><![CDATA[>")
    return f"<![CDATA[{escaped}]]>"


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExcludedOrder:
    order_id: str
    order_number: Optional[str]
    reasons: tuple[str, ...]


@dataclass
class ExportDocument:
    xml: str
    included: list[str] = field(default_factory=list)
    excluded: list[ExcludedOrder] = field(default_factory=list)


_REQUIRED_ADDRESS_FIELDS = (
    ("street", "street"),
    ("city", "city"),
    ("state", "state"),
    ("postal_code", "postal code"),
    ("country", "country"),
)


def validate_order_for_export(order) -> list[str]:
    """Return the reasons an order cannot be exported; empty when it can."""
    errors = []
    if not order.order_number:
        errors.append("Order number is required")
    if not order.customer_email:
        errors.append("Customer email is required")
    address = order.shipping_address or {}
    if not order.shipping_address:
        errors.append("Shipping address is required")
    else:
        for key, label in _REQUIRED_ADDRESS_FIELDS:
            if not address.get(key):
                errors.append(f"Shipping address {label} is required")
    items = list(order.items or [])
    if not items:
        errors.append("At least one item is required")
    for item in items:
        if not item.sku:
            errors.append(f"Item '{item.name}' has no SKU")
    return errors


def _customer_name(order, address: dict) -> str:
    if address.get("name"):
        return address["name"]
    if address.get("company"):
        return address["company"]
    local = (order.customer_email or "").split("@")[0]
    return " ".join(part.capitalize() for part in local.replace(".", " ").replace("_", " ").replace("-", " ").split())


def _element(tag: str, value: Any, indent: str) -> str:
    return f"{indent}<{tag}>{escape_xml(value)}</{tag}>"


def _address_lines(tag: str, name: str, address: dict, order, indent: str, include_street: bool) -> list[str]:
    inner = indent + "  "
    lines = [f"{indent}<{tag}>", _element("Name", name, inner), _element("Company", address.get("company"), inner)]
    if include_street:
        lines += [
            _element("Address1", address.get("street"), inner),
            _element("Address2", address.get("street2"), inner),
            _element("City", address.get("city"), inner),
            _element("State", address.get("state"), inner),
            _element("PostalCode", address.get("postal_code"), inner),
            _element("Country", address.get("country"), inner),
        ]
    lines.append(_element("Phone", address.get("phone") or order.customer_phone, inner))
    if not include_street:
        lines.append(_element("Email", order.customer_email, inner))
    lines.append(f"{indent}</{tag}>")
    return lines


def _order_lines(order) -> list[str]:
    shipping = order.shipping_address or {}
    billing = order.billing_address or shipping
    name = _customer_name(order, shipping)
    lines = [
        "  <Order>",
        _element("OrderNumber", order.order_number, "    "),
        _element("OrderDate", format_export_date(order.created_at), "    "),
        _element("OrderStatus", map_order_status_to_shipstation(order.status), "    "),
        _element("LastModified", format_export_date(order.updated_at), "    "),
        _element("ShippingMethod", order.shipping_method or "Standard", "    "),
        _element("PaymentMethod", order.payment_method or "Credit Card", "    "),
        _element("OrderTotal", format_money(order.total_amount), "    "),
        _element("TaxAmount", format_money(order.tax_amount), "    "),
        _element("ShippingAmount", format_money(order.shipping_amount), "    "),
        _element("CustomField1", order.id, "    "),
        _element("CustomField2", order.store_id, "    "),
        _element("CustomField3", order.currency, "    "),
        "    <Source>Store</Source>",
        "    <Customer>",
        _element("CustomerCode", order.customer_email, "      "),
    ]
    lines += _address_lines("BillTo", _customer_name(order, billing), billing, order, "      ", include_street=False)
    lines += _address_lines("ShipTo", name, shipping, order, "      ", include_street=True)
    lines.append("    </Customer>")

    lines.append("    <Items>")
    for item in order.items:
        unit_price = Decimal(str(item.unit_price or 0))
        lines += [
            "      <Item>",
            _element("SKU", item.sku, "        "),
            f"        <Name>{cdata(item.name)}</Name>",
            _element("Quantity", item.quantity, "        "),
            _element("UnitPrice", format_money(unit_price), "        "),
            _element("TotalPrice", format_money(unit_price * int(item.quantity or 0)), "        "),
            _element("ProductId", item.product_id, "        "),
            _element("FulfillmentSku", item.sku, "        "),
            "      </Item>",
        ]
    lines.append("    </Items>")
    lines.append(f"    <Notes>{cdata(order.notes)}</Notes>")

    # Fulfillment state, only once ShipStation has reported it
    if order.tracking_number:
        lines.append(_element("TrackingNumber", order.tracking_number, "    "))
    if order.carrier or order.carrier_code:
        lines.append(_element("Carrier", order.carrier or order.carrier_code, "    "))
    if order.service_code:
        lines.append(_element("ServiceCode", order.service_code, "    "))
    if order.shipped_at:
        lines.append(_element("ShipDate", format_export_date(order.shipped_at), "    "))
    if order.delivered_at:
        lines.append(_element("DeliveryDate", format_export_date(order.delivered_at), "    "))
    if order.label_url:
        lines.append(_element("LabelUrl", order.label_url, "    "))
    if order.form_url:
        lines.append(_element("FormUrl", order.form_url, "    "))
    lines.append("  </Order>")
    return lines


def sort_for_export(orders: Iterable) -> list:
    """Most recently modified first; ties broken by order id ascending."""
    by_id = sorted(orders, key=lambda o: str(o.id))
    return sorted(by_id, key=lambda o: o.updated_at or datetime.min, reverse=True)


def build_order_export_document(orders: Iterable, page: int = 1, total_pages: int = 1) -> ExportDocument:
    """
    Render orders as a ShipStation <Orders> document.

    Orders failing validate_order_for_export are left out of the XML and
    reported in ExportDocument.excluded.
    """
    document = ExportDocument(xml="")
    body: list[str] = []
    for order in sort_for_export(orders):
        reasons = validate_order_for_export(order)
        if reasons:
            logger.warning("Excluding order %s from export: %s", order.id, "; ".join(reasons))
            document.excluded.append(ExcludedOrder(order.id, order.order_number, tuple(reasons)))
            continue
        body.extend(_order_lines(order))
        document.included.append(order.id)

    header = f'<?xml version="1.0" encoding="utf-8"?>\n<Orders pages="{max(int(total_pages), 1)}" page="{int(page)}">'
    document.xml = "\n".join([header, *body, "</Orders>"]) + "\n"
    return document


# ---------------------------------------------------------------------------
# Shipment notifications
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ShipmentNotification:
    root: str
    order_id: Optional[str] = None
    order_number: Optional[str] = None
    tracking_number: Optional[str] = None
    shipment_id: Optional[str] = None
    carrier_code: Optional[str] = None
    service_code: Optional[str] = None
    package_code: Optional[str] = None
    ship_date: Optional[datetime] = None
    estimated_delivery_date: Optional[date] = None
    actual_delivery_date: Optional[datetime] = None
    shipment_cost: Optional[Decimal] = None
    insurance_cost: Optional[Decimal] = None
    label_url: Optional[str] = None
    form_url: Optional[str] = None
    void: bool = False
    ship_to: Optional[dict] = None
    custom_field1: Optional[str] = None
    custom_field2: Optional[str] = None
    custom_field3: Optional[str] = None
    internal_notes: Optional[str] = None
    customer_notes: Optional[str] = None

    @property
    def candidate_order_ids(self) -> list[str]:
        """Our order id comes back in CustomField1; OrderId may be ShipStation's own."""
        return [v for v in (self.custom_field1, self.order_id) if v]


def _text(node: ET.Element, *tags: str) -> Optional[str]:
    for tag in tags:
        child = node.find(tag)
        if child is not None and child.text is not None and child.text.strip():
            return child.text.strip()
    return None


def _date_field(node: ET.Element, tag: str) -> Optional[datetime]:
    raw = _text(node, tag)
    if raw is None:
        return None
    try:
        return parse_export_date(raw)
    except ValueError:
        raise ValidationFailure(f"{tag} is not a valid date: {raw!r}")


def _decimal_field(node: ET.Element, tag: str) -> Optional[Decimal]:
    raw = _text(node, tag)
    if raw is None:
        return None
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise ValidationFailure(f"{tag} is not a valid number: {raw!r}")
    if not value.is_finite():
        raise ValidationFailure(f"{tag} is not a valid number: {raw!r}")
    return value


def _parse_ship_to(node: ET.Element) -> Optional[dict]:
    ship_to = node.find("ShipTo")
    if ship_to is None:
        ship_to = node.find("Recipient")
    if ship_to is None:
        return None
    address = {
        "name": _text(ship_to, "Name"),
        "company": _text(ship_to, "Company"),
        "street": _text(ship_to, "Address1"),
        "street2": _text(ship_to, "Address2"),
        "city": _text(ship_to, "City"),
        "state": _text(ship_to, "State"),
        "postal_code": _text(ship_to, "PostalCode"),
        "country": _text(ship_to, "Country"),
        "phone": _text(ship_to, "Phone"),
    }
    return {k: v for k, v in address.items() if v is not None}


def parse_shipment_notification(xml_bytes) -> ShipmentNotification:
    """
    Parse an inbound shipment notification.

    Raises MalformedPayload when the body is not XML or has no recognised
    root, ValidationFailure when required references are missing or a date
    or amount cannot be read. Whether the order exists is not checked here.
    """
    if not xml_bytes or not xml_bytes.strip():
        raise MalformedPayload("Empty shipment notification body")
    try:
        root = ET.fromstring(xml_bytes)
    except ET.ParseError as e:
        raise MalformedPayload(f"Shipment notification is not valid XML: {e}")

    node = None
    if root.tag in NOTIFICATION_ROOTS:
        node = root
    else:
        for tag in NOTIFICATION_ROOTS:
            node = root.find(tag)
            if node is not None:
                break
    if node is None:
        raise MalformedPayload(f"No shipment data found in XML (root <{root.tag}>)")

    void_raw = (_text(node, "VoidIndicator", "Void") or "").lower()
    estimated = _date_field(node, "EstimatedDeliveryDate")
    notification = ShipmentNotification(
        root=node.tag,
        order_id=_text(node, "OrderId", "OrderID"),
        order_number=_text(node, "OrderNumber"),
        tracking_number=_text(node, "TrackingNumber"),
        shipment_id=_text(node, "ShipmentId", "ShipmentID"),
        carrier_code=_text(node, "CarrierCode", "Carrier"),
        service_code=_text(node, "ServiceCode", "Service"),
        package_code=_text(node, "PackageCode"),
        ship_date=_date_field(node, "ShipDate"),
        estimated_delivery_date=estimated.date() if estimated else None,
        actual_delivery_date=_date_field(node, "ActualDeliveryDate"),
        shipment_cost=_decimal_field(node, "ShipmentCost"),
        insurance_cost=_decimal_field(node, "InsuranceCost"),
        label_url=_text(node, "LabelUrl"),
        form_url=_text(node, "FormUrl"),
        void=void_raw in ("true", "1", "yes"),
        ship_to=_parse_ship_to(node),
        custom_field1=_text(node, "CustomField1"),
        custom_field2=_text(node, "CustomField2"),
        custom_field3=_text(node, "CustomField3"),
        internal_notes=_text(node, "InternalNotes"),
        customer_notes=_text(node, "CustomerNotes"),
    )

    errors = []
    if not (notification.order_id or notification.order_number or notification.custom_field1):
        errors.append("Order ID or Order Number is required")
    if not (notification.tracking_number or notification.shipment_id):
        errors.append("Tracking Number or Shipment ID is required")
    if errors:
        raise ValidationFailure("; ".join(errors))
    return notification
