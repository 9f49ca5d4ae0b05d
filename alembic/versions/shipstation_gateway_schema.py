"""shipstation gateway schema

Revision ID: shipstation_gateway_schema
Revises:
Create Date: 2026-10-19

Stores, ShipStation credentials, orders with the fulfillment slice, the job
queue, inventory snapshots and the integration log.
"""
from alembic import op
import sqlalchemy as sa


revision = "shipstation_gateway_schema"
down_revision = None
branch_labels = None
depends_on = None


credential_scheme = sa.Enum("API_KEY_SECRET", "BASIC_USERNAME_PASSWORD", "REMOTE_API_KEY", name="credentialscheme")
order_status = sa.Enum(
    "PENDING", "CONFIRMED", "PROCESSING", "SHIPPED", "DELIVERED", "CANCELLED", "REFUNDED", name="orderstatus"
)
fulfillment_status = sa.Enum("UNFULFILLED", "SHIPPED", "DELIVERED", name="fulfillmentstatus")
job_type = sa.Enum(
    "SHIPMENT_PROCESSING", "DELIVERY_PROCESSING", "ORDER_PROCESSING", "ORDER_NOTIFICATION", "INVENTORY_SYNC",
    name="jobtype",
)
job_priority = sa.Enum("URGENT", "HIGH", "MEDIUM", "LOW", name="jobpriority")
job_status = sa.Enum("PENDING", "RUNNING", "SUCCEEDED", "FAILED", "DEAD_LETTERED", name="jobstatus")
integration_operation = sa.Enum(
    "AUTHENTICATION", "ORDER_EXPORT", "SHIPMENT_NOTIFICATION", "WEBHOOK_PROCESSING", "JOB_PROCESSING",
    "INVENTORY_SYNC", "CREDENTIAL_ROTATION",
    name="integrationoperation",
)
integration_log_status = sa.Enum("SUCCESS", "FAILURE", "WARNING", name="integrationlogstatus")


def upgrade() -> None:
    op.create_table(
        "stores",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("integration_enabled", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), server_default=sa.func.now()),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "integration_credentials",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("store_id", sa.String(), sa.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False),
        sa.Column("scheme", credential_scheme, nullable=False),
        sa.Column("identifier_encrypted", sa.String(), nullable=False),
        sa.Column("secret_encrypted", sa.String(), nullable=True),
        sa.Column("lookup_key", sa.String(64), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("rotated_at", sa.DateTime(), nullable=True),
        sa.Column("disabled_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_integration_credentials_store_id", "integration_credentials", ["store_id"])
    op.create_index("ix_integration_credentials_lookup_key", "integration_credentials", ["lookup_key"])
    op.create_index(
        "uq_integration_credentials_active_scheme",
        "integration_credentials",
        ["store_id", "scheme"],
        unique=True,
        sqlite_where=sa.text("is_active = 1"),
        postgresql_where=sa.text("is_active"),
    )

    op.create_table(
        "orders",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("store_id", sa.String(), sa.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False),
        sa.Column("order_number", sa.String(), nullable=False),
        sa.Column("status", order_status, nullable=False),
        sa.Column("customer_email", sa.String(), nullable=True),
        sa.Column("customer_phone", sa.String(), nullable=True),
        sa.Column("shipping_address", sa.JSON(), nullable=True),
        sa.Column("billing_address", sa.JSON(), nullable=True),
        sa.Column("shipping_method", sa.String(), nullable=True),
        sa.Column("payment_method", sa.String(), nullable=True),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("tax_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("shipping_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.Column("fulfillment_status", fulfillment_status, nullable=False),
        sa.Column("tracking_number", sa.String(100), nullable=True),
        sa.Column("carrier", sa.String(50), nullable=True),
        sa.Column("carrier_code", sa.String(50), nullable=True),
        sa.Column("service_code", sa.String(50), nullable=True),
        sa.Column("package_code", sa.String(50), nullable=True),
        sa.Column("shipped_at", sa.DateTime(), nullable=True),
        sa.Column("delivered_at", sa.DateTime(), nullable=True),
        sa.Column("estimated_delivery_date", sa.Date(), nullable=True),
        sa.Column("shipment_cost", sa.Numeric(10, 2), nullable=True),
        sa.Column("label_url", sa.String(500), nullable=True),
        sa.Column("form_url", sa.String(500), nullable=True),
        sa.Column("fulfillment_notes", sa.Text(), nullable=True),
        sa.Column("external_order_id", sa.String(255), nullable=True),
        sa.Column("external_order_status", sa.String(50), nullable=True),
        sa.Column("fulfillment_updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("store_id", "order_number", name="orders_store_order_number_unique"),
    )
    op.create_index("ix_orders_store_id", "orders", ["store_id"])
    op.create_index("ix_orders_updated_at", "orders", ["updated_at"])
    op.create_index("ix_orders_tracking_number", "orders", ["tracking_number"])

    op.create_table(
        "order_items",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), sa.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("product_id", sa.String(), nullable=True),
        sa.Column("sku", sa.String(), nullable=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("quantity", sa.Integer(), nullable=False),
        sa.Column("unit_price", sa.Numeric(10, 2), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_order_items_order_id", "order_items", ["order_id"])

    op.create_table(
        "job_queue",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("store_id", sa.String(), sa.ForeignKey("stores.id", ondelete="SET NULL"), nullable=True),
        sa.Column("job_type", job_type, nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("priority", job_priority, nullable=False),
        sa.Column("priority_rank", sa.Integer(), nullable=False),
        sa.Column("status", job_status, nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("max_attempts", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(255), nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("error_kind", sa.String(50), nullable=True),
        sa.Column("locked_by", sa.String(100), nullable=True),
        sa.Column("replayed_job_id", sa.String(), nullable=True),
        sa.Column("enqueued_at", sa.DateTime(), nullable=False),
        sa.Column("available_at", sa.DateTime(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=True),
        sa.Column("finished_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_job_queue_store_id", "job_queue", ["store_id"])
    op.create_index("ix_job_queue_job_type", "job_queue", ["job_type"])
    op.create_index("ix_job_queue_idempotency_key", "job_queue", ["idempotency_key"])
    op.create_index("idx_job_queue_dequeue", "job_queue", ["status", "priority_rank", "enqueued_at"])
    op.create_index(
        "uq_job_queue_active_idempotency_key",
        "job_queue",
        ["idempotency_key"],
        unique=True,
        sqlite_where=sa.text("status IN ('PENDING', 'RUNNING', 'SUCCEEDED')"),
        postgresql_where=sa.text("status IN ('PENDING', 'RUNNING', 'SUCCEEDED')"),
    )

    op.create_table(
        "inventory_sync_records",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("store_id", sa.String(), sa.ForeignKey("stores.id", ondelete="CASCADE"), nullable=False),
        sa.Column("sku", sa.String(), nullable=False),
        sa.Column("available", sa.Integer(), nullable=False),
        sa.Column("on_hand", sa.Integer(), nullable=False),
        sa.Column("allocated", sa.Integer(), nullable=False),
        sa.Column("warehouse_id", sa.String(), nullable=True),
        sa.Column("warehouse_name", sa.String(), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("store_id", "sku", name="inventory_sync_store_sku_unique"),
    )
    op.create_index("ix_inventory_sync_records_store_id", "inventory_sync_records", ["store_id"])

    op.create_table(
        "integration_logs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("store_id", sa.String(), nullable=True),
        sa.Column("integration_type", sa.String(50), nullable=False),
        sa.Column("operation", integration_operation, nullable=False),
        sa.Column("status", integration_log_status, nullable=False),
        sa.Column("request_data", sa.JSON(), nullable=True),
        sa.Column("response_data", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("execution_time_ms", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_integration_logs_store_id", "integration_logs", ["store_id"])
    op.create_index("ix_integration_logs_operation", "integration_logs", ["operation"])
    op.create_index("ix_integration_logs_status", "integration_logs", ["status"])
    op.create_index("ix_integration_logs_created_at", "integration_logs", ["created_at"])


def downgrade() -> None:
    op.drop_table("integration_logs")
    op.drop_table("inventory_sync_records")
    op.drop_table("job_queue")
    op.drop_table("order_items")
    op.drop_table("orders")
    op.drop_table("integration_credentials")
    op.drop_table("stores")
    bind = op.get_bind()
    if bind.dialect.name == "postgresql":
        for enum_type in (
            integration_log_status, integration_operation, job_status, job_priority,
            job_type, fulfillment_status, order_status, credential_scheme,
        ):
            enum_type.drop(bind, checkfirst=True)
