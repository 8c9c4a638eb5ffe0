"""Offline queue, sync sessions, audit log and reference ledger

Revision ID: 001_offline_sync_schema
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001_offline_sync_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    # Reference ledger
    op.create_table(
        "products",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sku", sa.String(50), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("price", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("stock_quantity", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("track_inventory", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index("ix_products_sku", "products", ["sku"], unique=True)

    op.create_table(
        "sales",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("sale_number", sa.String(50), nullable=True, unique=True),
        sa.Column("offline_reference", sa.String(100), nullable=False),
        sa.Column("device_id", sa.String(100), nullable=True),
        sa.Column("cashier_id", sa.Integer(), nullable=True),
        sa.Column("cashier_name", sa.String(200), nullable=True),
        sa.Column("items", sa.JSON(), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("payment_method", sa.String(30), nullable=True),
        sa.Column("order_type", sa.String(30), nullable=True),
        sa.Column("table_number", sa.String(20), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="completed"),
        sa.Column("source_queue_id", sa.String(100), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_sales_offline_reference", "sales", ["offline_reference"], unique=True)

    op.create_table(
        "payments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("transaction_reference", sa.String(100), nullable=False),
        sa.Column("sale_id", sa.Integer(), sa.ForeignKey("sales.id"), nullable=False),
        sa.Column("amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("method", sa.String(30), nullable=False),
        sa.Column("source_queue_id", sa.String(100), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_payments_transaction_reference", "payments", ["transaction_reference"], unique=True)
    op.create_index("ix_payments_sale_id", "payments", ["sale_id"])

    op.create_table(
        "receipts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("receipt_number", sa.String(100), nullable=False),
        sa.Column("sale_id", sa.Integer(), sa.ForeignKey("sales.id"), nullable=False),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False),
        sa.Column("receipt_type", sa.String(20), nullable=False, server_default="sale"),
        sa.Column("source_queue_id", sa.String(100), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_receipts_receipt_number", "receipts", ["receipt_number"], unique=True)
    op.create_index("ix_receipts_sale_id", "receipts", ["sale_id"])

    op.create_table(
        "stock_adjustments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("adjustment_reference", sa.String(100), nullable=False),
        sa.Column("product_id", sa.Integer(), sa.ForeignKey("products.id"), nullable=False),
        sa.Column("quantity_change", sa.Numeric(10, 2), nullable=False),
        sa.Column("reason", sa.String(50), nullable=False, server_default="adjustment"),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("source_queue_id", sa.String(100), nullable=True),
        *_timestamps(),
    )
    op.create_index(
        "ix_stock_adjustments_adjustment_reference", "stock_adjustments", ["adjustment_reference"], unique=True
    )
    op.create_index("ix_stock_adjustments_product_id", "stock_adjustments", ["product_id"])

    op.create_table(
        "server_operations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("reference", sa.String(100), nullable=False),
        sa.Column("entity", sa.String(50), nullable=False),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("data", sa.JSON(), nullable=True),
        sa.Column("source_queue_id", sa.String(100), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_server_operations_reference", "server_operations", ["reference"], unique=True)

    # Offline queue
    op.create_table(
        "offline_queue",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("queue_id", sa.String(100), nullable=False),
        sa.Column("device_id", sa.String(100), nullable=False),
        sa.Column("operation_kind", sa.String(30), nullable=False),
        sa.Column("payload", sa.JSON(), nullable=False),
        sa.Column("content_checksum", sa.String(64), nullable=False),
        sa.Column("offline_timestamp", sa.DateTime(), nullable=False),
        sa.Column("cashier_id", sa.Integer(), nullable=True),
        sa.Column("cashier_name", sa.String(200), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("last_attempt_at", sa.DateTime(), nullable=True),
        sa.Column("not_before", sa.DateTime(), nullable=True),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("sync_session_id", sa.String(100), nullable=True),
        sa.Column("synced_at", sa.DateTime(), nullable=True),
        sa.Column("server_id", sa.Integer(), nullable=True),
        sa.Column("server_reference", sa.String(100), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("error_details", sa.JSON(), nullable=True),
        sa.Column("conflict_kind", sa.String(30), nullable=True),
        sa.Column("conflict_details", sa.JSON(), nullable=True),
        sa.Column("detected_at", sa.DateTime(), nullable=True),
        sa.Column("resolution_strategy", sa.String(30), nullable=True),
        sa.Column("resolved_by", sa.Integer(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(), nullable=True),
        sa.Column("resolution_reason", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_offline_queue_queue_id", "offline_queue", ["queue_id"], unique=True)
    op.create_index("ix_offline_queue_device_id", "offline_queue", ["device_id"])
    op.create_index("ix_offline_queue_operation_kind", "offline_queue", ["operation_kind"])
    op.create_index("ix_offline_queue_status", "offline_queue", ["status"])
    op.create_index("ix_offline_queue_sync_session_id", "offline_queue", ["sync_session_id"])
    op.create_index(
        "ix_offline_queue_due", "offline_queue", ["device_id", "status", "priority", "offline_timestamp"]
    )
    op.create_index("ix_offline_queue_status_synced_at", "offline_queue", ["status", "synced_at"])

    op.create_table(
        "sync_sessions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("session_id", sa.String(100), nullable=False),
        sa.Column("device_id", sa.String(100), nullable=False),
        sa.Column("direction", sa.String(20), nullable=False, server_default="upload"),
        sa.Column("trigger", sa.String(20), nullable=False, server_default="manual"),
        sa.Column("started_at", sa.DateTime(), nullable=False),
        sa.Column("completed_at", sa.DateTime(), nullable=True),
        sa.Column("duration_ms", sa.Integer(), nullable=True),
        sa.Column("status", sa.String(20), nullable=False, server_default="in_progress"),
        sa.Column("items_queued", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("items_processed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("items_failed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("items_conflicted", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("items_skipped", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("items_reclaimed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("operation_stats", sa.JSON(), nullable=True),
        sa.Column("conflicts", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("initiated_by", sa.Integer(), nullable=True),
        sa.Column("initiated_by_name", sa.String(200), nullable=True),
    )
    op.create_index("ix_sync_sessions_session_id", "sync_sessions", ["session_id"], unique=True)
    op.create_index("ix_sync_sessions_device_id", "sync_sessions", ["device_id"])
    op.create_index("ix_sync_sessions_status", "sync_sessions", ["status"])
    op.create_index("ix_sync_sessions_device_started", "sync_sessions", ["device_id", "started_at"])

    op.create_table(
        "audit_log_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=True),
        sa.Column("user_name", sa.String(200), nullable=True),
        sa.Column("action", sa.String(50), nullable=False),
        sa.Column("entity_type", sa.String(50), nullable=True),
        sa.Column("entity_id", sa.String(100), nullable=True),
        sa.Column("details", sa.JSON(), nullable=True),
        sa.Column("ip_address", sa.String(50), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_audit_log_entries_user_id", "audit_log_entries", ["user_id"])
    op.create_index("ix_audit_log_entries_action", "audit_log_entries", ["action"])
    op.create_index("ix_audit_log_entries_entity_type", "audit_log_entries", ["entity_type"])
    op.create_index("ix_audit_log_entries_created_at", "audit_log_entries", ["created_at"])


def downgrade() -> None:
    op.drop_table("audit_log_entries")
    op.drop_table("sync_sessions")
    op.drop_table("offline_queue")
    op.drop_table("server_operations")
    op.drop_table("stock_adjustments")
    op.drop_table("receipts")
    op.drop_table("payments")
    op.drop_table("sales")
    op.drop_table("products")
