"""
SQLAlchemy models for the fulfillment-integration gateway.
All model and enum definitions live here for simplicity and to avoid circular imports.
Timestamps are stored as naive UTC.
"""
from datetime import datetime, timezone
from sqlalchemy import Column, String, Integer, Boolean, DateTime, Date, ForeignKey, Numeric, Enum as SQLEnum, JSON, Text, UniqueConstraint, Index
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func, expression
from app.database import Base
import enum
import uuid


def utcnow() -> datetime:
    """Naive UTC now; every DateTime column in this schema is naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Enums
class CredentialScheme(str, enum.Enum):
    API_KEY_SECRET = "api_key_secret"
    BASIC_USERNAME_PASSWORD = "basic_username_password"
    REMOTE_API_KEY = "remote_api_key"

class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

class FulfillmentStatus(str, enum.Enum):
    UNFULFILLED = "unfulfilled"
    SHIPPED = "shipped"
    DELIVERED = "delivered"

class JobType(str, enum.Enum):
    SHIPMENT_PROCESSING = "shipment_processing"
    DELIVERY_PROCESSING = "delivery_processing"
    ORDER_PROCESSING = "order_processing"
    ORDER_NOTIFICATION = "order_notification"
    INVENTORY_SYNC = "inventory_sync"

class JobPriority(str, enum.Enum):
    URGENT = "urgent"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

# Lower rank is dequeued first
PRIORITY_RANK = {
    JobPriority.URGENT: 0,
    JobPriority.HIGH: 1,
    JobPriority.MEDIUM: 2,
    JobPriority.LOW: 3,
}

class JobStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"

class IntegrationOperation(str, enum.Enum):
    AUTHENTICATION = "authentication"
    ORDER_EXPORT = "order_export"
    SHIPMENT_NOTIFICATION = "shipment_notification"
    WEBHOOK_PROCESSING = "webhook_processing"
    JOB_PROCESSING = "job_processing"
    INVENTORY_SYNC = "inventory_sync"
    CREDENTIAL_ROTATION = "credential_rotation"

class IntegrationLogStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


# Models
class Store(Base):
    """A tenant: one merchant account within the platform."""
    __tablename__ = "stores"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    is_active = Column("is_active", Boolean, default=True, nullable=False)
    integration_enabled = Column("integration_enabled", Boolean, default=True, nullable=False)
    created_at = Column("created_at", DateTime, server_default=func.now())

    credentials = relationship("IntegrationCredential", back_populates="store")
    orders = relationship("Order", back_populates="store")

class IntegrationCredential(Base):
    __tablename__ = "integration_credentials"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id = Column("store_id", String, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    scheme = Column(SQLEnum(CredentialScheme), nullable=False)
    identifier_encrypted = Column("identifier_encrypted", String, nullable=False)  # api key / username
    secret_encrypted = Column("secret_encrypted", String, nullable=True)  # api secret / password
    lookup_key = Column("lookup_key", String(64), nullable=False, index=True)  # keyed hash of identifier
    is_active = Column("is_active", Boolean, default=True, nullable=False)
    created_at = Column("created_at", DateTime, default=utcnow, nullable=False)
    rotated_at = Column("rotated_at", DateTime, nullable=True)
    disabled_at = Column("disabled_at", DateTime, nullable=True)

    store = relationship("Store", back_populates="credentials")

    __table_args__ = (
        Index(
            "uq_integration_credentials_active_scheme",
            "store_id",
            "scheme",
            unique=True,
            sqlite_where=expression.text("is_active = 1"),
            postgresql_where=expression.text("is_active"),
        ),
    )

class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id = Column("store_id", String, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    order_number = Column("order_number", String, nullable=False)
    status = Column(SQLEnum(OrderStatus), default=OrderStatus.CONFIRMED, nullable=False)
    customer_email = Column("customer_email", String, nullable=True)
    customer_phone = Column("customer_phone", String, nullable=True)
    shipping_address = Column("shipping_address", JSON, nullable=True)
    billing_address = Column("billing_address", JSON, nullable=True)
    shipping_method = Column("shipping_method", String, nullable=True)
    payment_method = Column("payment_method", String, nullable=True)
    currency = Column("currency", String(3), default="USD", nullable=False)
    total_amount = Column("total_amount", Numeric(10, 2), nullable=False)
    tax_amount = Column("tax_amount", Numeric(10, 2), default=0, nullable=False)
    shipping_amount = Column("shipping_amount", Numeric(10, 2), default=0, nullable=False)
    notes = Column("notes", Text, nullable=True)
    created_at = Column("created_at", DateTime, default=utcnow, nullable=False)
    updated_at = Column("updated_at", DateTime, default=utcnow, nullable=False, index=True)

    # Fulfillment slice: the only columns the gateway writes
    fulfillment_status = Column("fulfillment_status", SQLEnum(FulfillmentStatus), default=FulfillmentStatus.UNFULFILLED, nullable=False)
    tracking_number = Column("tracking_number", String(100), nullable=True, index=True)
    carrier = Column("carrier", String(50), nullable=True)
    carrier_code = Column("carrier_code", String(50), nullable=True)
    service_code = Column("service_code", String(50), nullable=True)
    package_code = Column("package_code", String(50), nullable=True)
    shipped_at = Column("shipped_at", DateTime, nullable=True)
    delivered_at = Column("delivered_at", DateTime, nullable=True)
    estimated_delivery_date = Column("estimated_delivery_date", Date, nullable=True)
    shipment_cost = Column("shipment_cost", Numeric(10, 2), nullable=True)
    label_url = Column("label_url", String(500), nullable=True)
    form_url = Column("form_url", String(500), nullable=True)
    fulfillment_notes = Column("fulfillment_notes", Text, nullable=True)
    external_order_id = Column("external_order_id", String(255), nullable=True)
    external_order_status = Column("external_order_status", String(50), nullable=True)
    fulfillment_updated_at = Column("fulfillment_updated_at", DateTime, nullable=True)

    store = relationship("Store", back_populates="orders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan", order_by="OrderItem.position")

    __table_args__ = (
        UniqueConstraint("store_id", "order_number", name="orders_store_order_number_unique"),
    )

class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    order_id = Column("order_id", String, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    position = Column("position", Integer, default=0, nullable=False)
    product_id = Column("product_id", String, nullable=True)
    sku = Column(String, nullable=True)
    name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column("unit_price", Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")

class Job(Base):
    __tablename__ = "job_queue"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id = Column("store_id", String, ForeignKey("stores.id", ondelete="SET NULL"), nullable=True, index=True)
    job_type = Column("job_type", SQLEnum(JobType), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    priority = Column(SQLEnum(JobPriority), default=JobPriority.MEDIUM, nullable=False)
    priority_rank = Column("priority_rank", Integer, nullable=False)
    status = Column(SQLEnum(JobStatus), default=JobStatus.PENDING, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    max_attempts = Column("max_attempts", Integer, nullable=False)
    idempotency_key = Column("idempotency_key", String(255), nullable=True, index=True)
    last_error = Column("last_error", Text, nullable=True)
    error_kind = Column("error_kind", String(50), nullable=True)
    locked_by = Column("locked_by", String(100), nullable=True)
    replayed_job_id = Column("replayed_job_id", String, nullable=True)
    enqueued_at = Column("enqueued_at", DateTime, nullable=False)
    available_at = Column("available_at", DateTime, nullable=False)
    started_at = Column("started_at", DateTime, nullable=True)
    finished_at = Column("finished_at", DateTime, nullable=True)
    updated_at = Column("updated_at", DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("idx_job_queue_dequeue", "status", "priority_rank", "enqueued_at"),
        Index(
            "uq_job_queue_active_idempotency_key",
            "idempotency_key",
            unique=True,
            sqlite_where=expression.text("status IN ('PENDING', 'RUNNING', 'SUCCEEDED')"),
            postgresql_where=expression.text("status IN ('PENDING', 'RUNNING', 'SUCCEEDED')"),
        ),
    )

class InventorySyncRecord(Base):
    __tablename__ = "inventory_sync_records"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id = Column("store_id", String, ForeignKey("stores.id", ondelete="CASCADE"), nullable=False, index=True)
    sku = Column("sku", String, nullable=False)
    available = Column("available", Integer, default=0, nullable=False)
    on_hand = Column("on_hand", Integer, default=0, nullable=False)
    allocated = Column("allocated", Integer, default=0, nullable=False)
    warehouse_id = Column("warehouse_id", String, nullable=True)
    warehouse_name = Column("warehouse_name", String, nullable=True)
    last_synced_at = Column("last_synced_at", DateTime, nullable=False)

    __table_args__ = (UniqueConstraint("store_id", "sku", name="inventory_sync_store_sku_unique"),)

class IntegrationLog(Base):
    __tablename__ = "integration_logs"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    store_id = Column("store_id", String, nullable=True, index=True)
    integration_type = Column("integration_type", String(50), default="shipstation", nullable=False)
    operation = Column(SQLEnum(IntegrationOperation), nullable=False, index=True)
    status = Column(SQLEnum(IntegrationLogStatus), nullable=False, index=True)
    request_data = Column("request_data", JSON, nullable=True)
    response_data = Column("response_data", JSON, nullable=True)
    error_message = Column("error_message", Text, nullable=True)
    execution_time_ms = Column("execution_time_ms", Integer, default=0, nullable=False)
    created_at = Column("created_at", DateTime, default=utcnow, nullable=False, index=True)
