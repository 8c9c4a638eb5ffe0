"""Receipt collaborator."""

from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from possync.models.ledger import Receipt
from possync.models.offline_queue import OperationKind
from possync.services.offline.collaborators.base import (
    HIGH,
    ApplyContext,
    ApplyResult,
    MergeResult,
    OperationCollaborator,
    ServerEntityRef,
    finding,
)
from possync.services.offline.collaborators.payment import find_sale
from possync.services.offline.payloads import ReceiptPayload

TOTAL_TOLERANCE = Decimal("0.01")


class ReceiptCollaborator(OperationCollaborator):
    kind = OperationKind.RECEIPT
    entity_name = "receipt"
    supports_merge = True

    def natural_key(self, payload: ReceiptPayload) -> str:
        return payload.receipt_number

    def find_existing(self, db: Session, payload: ReceiptPayload) -> Optional[ServerEntityRef]:
        receipt = db.scalar(select(Receipt).where(Receipt.receipt_number == payload.receipt_number))
        if receipt is None:
            return None
        return ServerEntityRef(
            entity=self.entity_name,
            server_id=receipt.id,
            server_reference=receipt.receipt_number,
            state={"total_amount": str(receipt.total_amount), "sale_id": receipt.sale_id},
        )

    def check_dependencies(self, db: Session, payload: ReceiptPayload) -> list[dict[str, Any]]:
        sale = find_sale(db, payload.sale_reference)
        if payload.receipt_type == "sale" and abs(sale.total_amount - payload.total_amount) > TOTAL_TOLERANCE:
            return [finding(
                "sale_total_changed",
                f"Receipt total differs from sale {sale.sale_number} on the server",
                HIGH,
                field_name="total_amount",
                expected=sale.total_amount,
                actual=payload.total_amount,
            )]
        return []

    def apply(self, db: Session, payload: ReceiptPayload, context: ApplyContext) -> ApplyResult:
        sale = find_sale(db, payload.sale_reference)

        if context.force and context.existing is not None:
            receipt = db.get(Receipt, context.existing.server_id)
        else:
            receipt = Receipt(receipt_number=payload.receipt_number)
            db.add(receipt)

        receipt.sale_id = sale.id
        receipt.total_amount = payload.total_amount
        receipt.receipt_type = payload.receipt_type
        receipt.source_queue_id = context.queue_id
        db.flush()
        return ApplyResult(server_id=receipt.id, server_reference=receipt.receipt_number)

    def merge(
        self,
        db: Session,
        payload: ReceiptPayload,
        existing: Optional[ServerEntityRef],
        merge_data: Optional[dict[str, Any]] = None,
    ) -> MergeResult:
        if merge_data:
            return MergeResult(payload=self._override(payload, merge_data))
        if existing is not None:
            return MergeResult(adopted=existing)
        # Server total wins
        sale = find_sale(db, payload.sale_reference)
        merged = payload.model_dump(mode="json")
        merged["total_amount"] = str(sale.total_amount)
        return MergeResult(payload=merged)
