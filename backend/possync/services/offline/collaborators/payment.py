"""Payment collaborator."""

from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from possync.models.ledger import Payment, Sale
from possync.models.offline_queue import OperationKind
from possync.services.offline.collaborators.base import (
    CRITICAL,
    HIGH,
    ApplyContext,
    ApplyResult,
    MergeResult,
    OperationCollaborator,
    ServerEntityRef,
    finding,
)
from possync.services.offline.exceptions import ApplyRejectedError, DependencyPendingError
from possync.services.offline.payloads import PaymentPayload

BALANCE_TOLERANCE = Decimal("0.01")


def find_sale(db: Session, offline_reference: str) -> Sale:
    """Resolve a sale by the reference the device gave it.

    Raises DependencyPendingError when the sale has not been replayed yet.
    """
    sale = db.scalar(select(Sale).where(Sale.offline_reference == offline_reference))
    if sale is None:
        raise DependencyPendingError("sale", offline_reference)
    return sale


class PaymentCollaborator(OperationCollaborator):
    kind = OperationKind.PAYMENT
    entity_name = "payment"
    supports_merge = True

    def natural_key(self, payload: PaymentPayload) -> str:
        return payload.transaction_reference

    def find_existing(self, db: Session, payload: PaymentPayload) -> Optional[ServerEntityRef]:
        payment = db.scalar(
            select(Payment).where(Payment.transaction_reference == payload.transaction_reference)
        )
        if payment is None:
            return None
        return ServerEntityRef(
            entity=self.entity_name,
            server_id=payment.id,
            server_reference=payment.transaction_reference,
            state={"amount": str(payment.amount), "method": payment.method, "sale_id": payment.sale_id},
        )

    def check_dependencies(self, db: Session, payload: PaymentPayload) -> list[dict[str, Any]]:
        sale = find_sale(db, payload.sale_reference)
        if sale.status != "completed":
            return [finding(
                "sale_not_payable",
                f"Sale {sale.sale_number} is {sale.status} on the server",
                CRITICAL,
                field_name="sale.status",
                expected="completed",
                actual=sale.status,
            )]
        return []

    def validate(self, db: Session, payload: PaymentPayload) -> list[dict[str, Any]]:
        sale = find_sale(db, payload.sale_reference)
        outstanding = sale.total_amount - self._paid(db, sale.id)
        if payload.amount - outstanding > BALANCE_TOLERANCE:
            return [finding(
                "overpayment",
                "Payment exceeds the outstanding balance of the sale",
                HIGH,
                field_name="amount",
                expected=outstanding,
                actual=payload.amount,
            )]
        return []

    def apply(self, db: Session, payload: PaymentPayload, context: ApplyContext) -> ApplyResult:
        sale = find_sale(db, payload.sale_reference)
        if sale.status == "voided" and not context.force:
            raise ApplyRejectedError(f"Sale {sale.sale_number} is voided")

        if context.force and context.existing is not None:
            payment = db.get(Payment, context.existing.server_id)
        else:
            payment = Payment(transaction_reference=payload.transaction_reference)
            db.add(payment)

        payment.sale_id = sale.id
        payment.amount = payload.amount
        payment.method = payload.method
        payment.source_queue_id = context.queue_id
        db.flush()
        return ApplyResult(server_id=payment.id, server_reference=payment.transaction_reference)

    def merge(
        self,
        db: Session,
        payload: PaymentPayload,
        existing: Optional[ServerEntityRef],
        merge_data: Optional[dict[str, Any]] = None,
    ) -> MergeResult:
        if merge_data:
            return MergeResult(payload=self._override(payload, merge_data))
        if existing is not None:
            return MergeResult(adopted=existing)
        return super().merge(db, payload, existing, merge_data)

    def _paid(self, db: Session, sale_id: int) -> Decimal:
        paid = db.scalar(select(func.coalesce(func.sum(Payment.amount), 0)).where(Payment.sale_id == sale_id))
        return Decimal(str(paid))
