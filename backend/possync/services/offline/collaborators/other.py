"""Generic collaborator for operations without a dedicated ledger."""

from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from possync.models.ledger import ServerOperation
from possync.models.offline_queue import OperationKind
from possync.services.offline.collaborators.base import (
    ApplyContext,
    ApplyResult,
    OperationCollaborator,
    ServerEntityRef,
)
from possync.services.offline.payloads import OtherPayload


class GenericOperationCollaborator(OperationCollaborator):
    kind = OperationKind.OTHER
    entity_name = "server_operation"

    def natural_key(self, payload: OtherPayload) -> str:
        return payload.reference

    def find_existing(self, db: Session, payload: OtherPayload) -> Optional[ServerEntityRef]:
        operation = db.scalar(select(ServerOperation).where(ServerOperation.reference == payload.reference))
        if operation is None:
            return None
        return ServerEntityRef(
            entity=self.entity_name,
            server_id=operation.id,
            server_reference=operation.reference,
            state={"entity": operation.entity, "action": operation.action},
        )

    def apply(self, db: Session, payload: OtherPayload, context: ApplyContext) -> ApplyResult:
        if context.force and context.existing is not None:
            operation = db.get(ServerOperation, context.existing.server_id)
        else:
            operation = ServerOperation(reference=payload.reference)
            db.add(operation)

        operation.entity = payload.entity
        operation.action = payload.action
        operation.data = payload.data
        operation.source_queue_id = context.queue_id
        db.flush()
        return ApplyResult(server_id=operation.id, server_reference=operation.reference)
