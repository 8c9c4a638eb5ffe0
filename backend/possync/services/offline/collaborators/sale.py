"""Sale collaborator: replays offline sales into the sales ledger."""

import logging
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from possync.models.ledger import Product, Sale
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
from possync.services.offline.payloads import SalePayload

logger = logging.getLogger(__name__)

TOTAL_TOLERANCE = Decimal("0.01")


class SaleCollaborator(OperationCollaborator):
    kind = OperationKind.SALE
    entity_name = "sale"
    supports_merge = True
    duplicate_severity = HIGH

    def natural_key(self, payload: SalePayload) -> str:
        return payload.offline_reference

    def find_existing(self, db: Session, payload: SalePayload) -> Optional[ServerEntityRef]:
        sale = db.scalar(select(Sale).where(Sale.offline_reference == payload.offline_reference))
        if sale is None:
            return None
        return ServerEntityRef(
            entity=self.entity_name,
            server_id=sale.id,
            server_reference=sale.sale_number,
            state={
                "total_amount": str(sale.total_amount),
                "item_count": len(sale.items or []),
                "status": sale.status,
                "device_id": sale.device_id,
            },
        )

    def check_dependencies(self, db: Session, payload: SalePayload) -> list[dict[str, Any]]:
        findings = []
        for line in payload.items:
            product = db.get(Product, line.product_id)
            if product is not None and not product.active:
                findings.append(finding(
                    "product_inactive",
                    f"Product {product.sku} was deactivated on the server",
                    HIGH,
                    field_name=f"products[{product.id}].active",
                    expected=True,
                    actual=False,
                ))
        return findings

    def validate(self, db: Session, payload: SalePayload) -> list[dict[str, Any]]:
        findings = []
        for line in payload.items:
            product = db.get(Product, line.product_id)
            if product is None:
                findings.append(finding(
                    "product_missing",
                    f"Product {line.product_id} does not exist on the server",
                    CRITICAL,
                ))
                continue
            if product.track_inventory and product.stock_quantity < line.quantity:
                findings.append(finding(
                    "insufficient_stock",
                    f"Insufficient stock for {product.name}",
                    HIGH,
                    field_name=f"products[{product.id}].stock_quantity",
                    expected=line.quantity,
                    actual=product.stock_quantity,
                ))

        computed = payload.computed_total
        if abs(computed - payload.total_amount) > TOTAL_TOLERANCE:
            findings.append(finding(
                "total_mismatch",
                "Sale total does not match the sum of its items",
                CRITICAL,
                field_name="total_amount",
                expected=computed,
                actual=payload.total_amount,
            ))
        return findings

    def apply(self, db: Session, payload: SalePayload, context: ApplyContext) -> ApplyResult:
        items = [line.model_dump(mode="json") for line in payload.items]

        if context.force and context.existing is not None:
            sale = db.get(Sale, context.existing.server_id)
            self._restock(db, sale.items or [])
            logger.info(f"Overwriting sale {sale.sale_number} with offline version from {context.queue_id}")
        else:
            sale = Sale(offline_reference=payload.offline_reference)
            db.add(sale)

        sale.device_id = context.device_id
        sale.cashier_id = context.cashier_id
        sale.cashier_name = context.cashier_name
        sale.items = items
        sale.total_amount = payload.total_amount
        sale.payment_method = payload.payment_method
        sale.order_type = payload.order_type
        sale.table_number = payload.table_number
        sale.status = "completed"
        sale.source_queue_id = context.queue_id

        self._deduct(db, payload)
        db.flush()

        if not sale.sale_number:
            sale.sale_number = f"SALE-{sale.id:06d}"
            db.flush()

        return ApplyResult(server_id=sale.id, server_reference=sale.sale_number)

    def merge(
        self,
        db: Session,
        payload: SalePayload,
        existing: Optional[ServerEntityRef],
        merge_data: Optional[dict[str, Any]] = None,
    ) -> MergeResult:
        if merge_data:
            return MergeResult(payload=self._override(payload, merge_data))
        if existing is not None:
            return MergeResult(adopted=existing)
        # Trust the line items over the header total
        merged = payload.model_dump(mode="json")
        merged["total_amount"] = str(payload.computed_total)
        return MergeResult(payload=merged)

    def _deduct(self, db: Session, payload: SalePayload) -> None:
        for line in payload.items:
            product = db.get(Product, line.product_id)
            if product is not None and product.track_inventory:
                product.stock_quantity = product.stock_quantity - line.quantity

    def _restock(self, db: Session, items: list[dict]) -> None:
        for line in items:
            product = db.get(Product, line.get("product_id"))
            if product is not None and product.track_inventory:
                product.stock_quantity = product.stock_quantity + Decimal(str(line.get("quantity", 0)))
