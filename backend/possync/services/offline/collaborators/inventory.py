"""Inventory update collaborator: stock adjustments made on a device."""

from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from possync.models.ledger import Product, StockAdjustment
from possync.models.offline_queue import OperationKind
from possync.services.offline.collaborators.base import (
    CRITICAL,
    HIGH,
    MEDIUM,
    ApplyContext,
    ApplyResult,
    MergeResult,
    OperationCollaborator,
    ServerEntityRef,
    finding,
)
from possync.services.offline.exceptions import ApplyRejectedError
from possync.services.offline.payloads import InventoryUpdatePayload


class InventoryUpdateCollaborator(OperationCollaborator):
    kind = OperationKind.INVENTORY_UPDATE
    entity_name = "stock_adjustment"
    supports_merge = True

    def natural_key(self, payload: InventoryUpdatePayload) -> str:
        return payload.adjustment_reference

    def find_existing(self, db: Session, payload: InventoryUpdatePayload) -> Optional[ServerEntityRef]:
        adjustment = db.scalar(
            select(StockAdjustment).where(
                StockAdjustment.adjustment_reference == payload.adjustment_reference
            )
        )
        if adjustment is None:
            return None
        return ServerEntityRef(
            entity=self.entity_name,
            server_id=adjustment.id,
            server_reference=adjustment.adjustment_reference,
            state={
                "product_id": adjustment.product_id,
                "quantity_change": str(adjustment.quantity_change),
                "reason": adjustment.reason,
            },
        )

    def check_dependencies(self, db: Session, payload: InventoryUpdatePayload) -> list[dict[str, Any]]:
        product = db.get(Product, payload.product_id)
        if product is None or payload.expected_on_hand is None:
            return []
        if product.stock_quantity != payload.expected_on_hand:
            return [finding(
                "stock_level_changed",
                f"Stock of {product.name} changed on the server since the device counted it",
                MEDIUM,
                field_name=f"products[{product.id}].stock_quantity",
                expected=payload.expected_on_hand,
                actual=product.stock_quantity,
            )]
        return []

    def validate(self, db: Session, payload: InventoryUpdatePayload) -> list[dict[str, Any]]:
        product = db.get(Product, payload.product_id)
        if product is None:
            return [finding(
                "product_missing",
                f"Product {payload.product_id} does not exist on the server",
                CRITICAL,
            )]
        findings = []
        if not product.active:
            findings.append(finding(
                "product_inactive",
                f"Product {product.sku} is inactive",
                HIGH,
            ))
        resulting = product.stock_quantity + payload.quantity_change
        if product.track_inventory and resulting < 0:
            findings.append(finding(
                "negative_stock",
                f"Adjustment would leave {product.name} below zero",
                HIGH,
                field_name=f"products[{product.id}].stock_quantity",
                expected=-payload.quantity_change,
                actual=product.stock_quantity,
            ))
        return findings

    def apply(self, db: Session, payload: InventoryUpdatePayload, context: ApplyContext) -> ApplyResult:
        product = db.get(Product, payload.product_id)
        if product is None:
            raise ApplyRejectedError(f"Product {payload.product_id} does not exist")

        if context.force and context.existing is not None:
            adjustment = db.get(StockAdjustment, context.existing.server_id)
            previous = db.get(Product, adjustment.product_id)
            if previous is not None:
                previous.stock_quantity = previous.stock_quantity - adjustment.quantity_change
        else:
            adjustment = StockAdjustment(adjustment_reference=payload.adjustment_reference)
            db.add(adjustment)

        adjustment.product_id = product.id
        adjustment.quantity_change = payload.quantity_change
        adjustment.reason = payload.reason
        adjustment.notes = payload.notes
        adjustment.source_queue_id = context.queue_id
        product.stock_quantity = product.stock_quantity + payload.quantity_change
        db.flush()
        return ApplyResult(server_id=adjustment.id, server_reference=adjustment.adjustment_reference)

    def merge(
        self,
        db: Session,
        payload: InventoryUpdatePayload,
        existing: Optional[ServerEntityRef],
        merge_data: Optional[dict[str, Any]] = None,
    ) -> MergeResult:
        if merge_data:
            return MergeResult(payload=self._override(payload, merge_data))
        if existing is not None:
            return MergeResult(adopted=existing)
        # Rebase the relative change onto the current server level
        merged = payload.model_dump(mode="json")
        product = db.get(Product, payload.product_id)
        if product is not None:
            merged["expected_on_hand"] = str(product.stock_quantity)
        return MergeResult(payload=merged)
