"""Server-side ledger written by the reference collaborators.

These are the authoritative records replayed offline operations land in.
Each table carries a unique natural key so a replayed operation can be
recognised as a duplicate regardless of which queue item produced it.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from sqlalchemy import JSON, Boolean, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from possync.db.base import Base, TimestampMixin


class Product(Base, TimestampMixin):
    """Product in the catalog."""

    __tablename__ = "products"

    id: Mapped[int] = mapped_column(primary_key=True)
    sku: Mapped[str] = mapped_column(String(50), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0, nullable=False)
    stock_quantity: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0, nullable=False)
    track_inventory: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


class Sale(Base, TimestampMixin):
    """A completed sale."""

    __tablename__ = "sales"

    id: Mapped[int] = mapped_column(primary_key=True)
    sale_number: Mapped[Optional[str]] = mapped_column(String(50), unique=True, nullable=True)
    offline_reference: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)
    device_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    cashier_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cashier_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    items: Mapped[list] = mapped_column(JSON, nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_method: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    order_type: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    table_number: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="completed", nullable=False)  # completed, voided
    source_queue_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    payments: Mapped[list["Payment"]] = relationship("Payment", back_populates="sale")
    receipts: Mapped[list["Receipt"]] = relationship("Receipt", back_populates="sale")


class Payment(Base, TimestampMixin):
    """A payment taken against a sale."""

    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(primary_key=True)
    transaction_reference: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)
    sale_id: Mapped[int] = mapped_column(ForeignKey("sales.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    method: Mapped[str] = mapped_column(String(30), nullable=False)  # cash, card, voucher, ...
    source_queue_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    sale: Mapped["Sale"] = relationship("Sale", back_populates="payments")


class Receipt(Base, TimestampMixin):
    """A printed or emailed receipt for a sale."""

    __tablename__ = "receipts"

    id: Mapped[int] = mapped_column(primary_key=True)
    receipt_number: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)
    sale_id: Mapped[int] = mapped_column(ForeignKey("sales.id"), nullable=False, index=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    receipt_type: Mapped[str] = mapped_column(String(20), default="sale", nullable=False)  # sale, refund, copy
    source_queue_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    sale: Mapped["Sale"] = relationship("Sale", back_populates="receipts")


class StockAdjustment(Base, TimestampMixin):
    """Manual stock change performed on a device."""

    __tablename__ = "stock_adjustments"

    id: Mapped[int] = mapped_column(primary_key=True)
    adjustment_reference: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)
    product_id: Mapped[int] = mapped_column(ForeignKey("products.id"), nullable=False, index=True)
    quantity_change: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    reason: Mapped[str] = mapped_column(String(50), default="adjustment", nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    source_queue_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)


class ServerOperation(Base, TimestampMixin):
    """Generic operation that has no dedicated ledger table."""

    __tablename__ = "server_operations"

    id: Mapped[int] = mapped_column(primary_key=True)
    reference: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)
    entity: Mapped[str] = mapped_column(String(50), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False)
    data: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    source_queue_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
