"""Typed payloads for each queueable operation kind.

A payload is validated against its kind's model at enqueue time and stored
in its normalized JSON form (``model_dump(mode="json")``), which is also
what the checksum is computed over.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from possync.models.offline_queue import OperationKind
from possync.services.offline.exceptions import QueueValidationError


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)


class SaleLine(_Payload):
    product_id: int
    quantity: Decimal = Field(gt=0)
    unit_price: Decimal = Field(ge=0)
    name: Optional[str] = None


class SalePayload(_Payload):
    """A sale rung up on the device."""

    offline_reference: str = Field(min_length=1, max_length=100)
    items: list[SaleLine] = Field(min_length=1)
    total_amount: Decimal = Field(ge=0)
    payment_method: Optional[str] = None
    order_type: Optional[str] = None  # dine_in, takeaway, delivery
    table_number: Optional[str] = None

    @property
    def computed_total(self) -> Decimal:
        return sum((line.quantity * line.unit_price for line in self.items), Decimal("0"))


class PaymentPayload(_Payload):
    """Payment taken against a sale identified by its offline reference."""

    transaction_reference: str = Field(min_length=1, max_length=100)
    sale_reference: str = Field(min_length=1, max_length=100)
    amount: Decimal = Field(gt=0)
    method: str = Field(min_length=1, max_length=30)


class ReceiptPayload(_Payload):
    receipt_number: str = Field(min_length=1, max_length=100)
    sale_reference: str = Field(min_length=1, max_length=100)
    total_amount: Decimal = Field(ge=0)
    receipt_type: str = "sale"


class InventoryUpdatePayload(_Payload):
    """Stock adjustment. ``expected_on_hand`` is what the device believed the
    level was before applying ``quantity_change``."""

    adjustment_reference: str = Field(min_length=1, max_length=100)
    product_id: int
    quantity_change: Decimal
    expected_on_hand: Optional[Decimal] = None
    reason: str = "adjustment"
    notes: Optional[str] = None

    @field_validator("quantity_change")
    @classmethod
    def validate_non_zero(cls, v: Decimal) -> Decimal:
        if v == 0:
            raise ValueError("quantity_change must not be zero")
        return v


class OtherPayload(_Payload):
    """Catch-all for operations without a dedicated ledger."""

    reference: str = Field(min_length=1, max_length=100)
    entity: str = Field(min_length=1, max_length=50)
    action: str = Field(min_length=1, max_length=50)
    data: dict[str, Any] = Field(default_factory=dict)


PAYLOAD_MODELS: dict[OperationKind, type[BaseModel]] = {
    OperationKind.SALE: SalePayload,
    OperationKind.PAYMENT: PaymentPayload,
    OperationKind.RECEIPT: ReceiptPayload,
    OperationKind.INVENTORY_UPDATE: InventoryUpdatePayload,
    OperationKind.OTHER: OtherPayload,
}


def parse_kind(value: Any) -> OperationKind:
    try:
        return OperationKind(value)
    except ValueError:
        allowed = ", ".join(k.value for k in OperationKind)
        raise QueueValidationError(
            f"Unknown operation kind '{value}'. Allowed: {allowed}",
            {"operation_kind": str(value)},
        )


def parse_payload(kind: OperationKind, payload: Any) -> BaseModel:
    """Validate a raw payload against its kind's model."""
    if not payload:
        raise QueueValidationError("Payload must not be empty", {"operation_kind": kind.value})
    if not isinstance(payload, dict):
        raise QueueValidationError("Payload must be an object", {"operation_kind": kind.value})

    model = PAYLOAD_MODELS[kind]
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in e.errors()
        ]
        raise QueueValidationError(
            f"Invalid {kind.value} payload",
            {"operation_kind": kind.value, "errors": errors},
        )


def normalize_payload(kind: OperationKind, payload: Any) -> dict[str, Any]:
    return parse_payload(kind, payload).model_dump(mode="json")


def summarize(kind: OperationKind, model: BaseModel) -> dict[str, Any]:
    """Operator-facing summary stored alongside the queue item."""
    if isinstance(model, SalePayload):
        return {
            "item_count": len(model.items),
            "total_amount": str(model.total_amount),
            "order_type": model.order_type,
            "table_number": model.table_number,
        }
    if isinstance(model, PaymentPayload):
        return {"total_amount": str(model.amount), "sale_reference": model.sale_reference}
    if isinstance(model, ReceiptPayload):
        return {"total_amount": str(model.total_amount), "sale_reference": model.sale_reference}
    if isinstance(model, InventoryUpdatePayload):
        return {"product_id": model.product_id, "quantity_change": str(model.quantity_change)}
    return {"entity": getattr(model, "entity", None), "action": getattr(model, "action", None)}
