"""Operator resolution of flagged sync conflicts.

Every resolution ends the item in ``synced`` or ``skipped`` so the next sync
never raises the same conflict again. The only exception is ``merge`` with a
merged payload: that payload is re-sealed and re-checked, and may land back
in ``conflict`` with fresh details.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from possync.db.base import utcnow
from possync.models.offline_queue import (
    ConflictKind,
    OfflineQueueItem,
    OperationKind,
    QueueStatus,
    ResolutionStrategy,
)
from possync.services.audit_service import log_action
from possync.services.offline import checksum
from possync.services.offline.actor import SYSTEM, Actor
from possync.services.offline.collaborators.base import ApplyContext, ApplyResult
from possync.services.offline.collaborators.registry import CollaboratorRegistry, default_registry
from possync.services.offline.conflict_detector import ConflictDetector
from possync.services.offline.exceptions import (
    InvalidTransitionError,
    MergeNotSupportedError,
    QueueValidationError,
    SyncConflictError,
)
from possync.services.offline.payloads import normalize_payload
from possync.services.offline.queue_store import QueueStore
from possync.services.offline.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

DISCARDING_STRATEGIES = {
    ResolutionStrategy.KEEP_ONLINE,
    ResolutionStrategy.MANUAL,
    ResolutionStrategy.SKIP,
}


class ConflictResolver:
    def __init__(
        self,
        db: Session,
        registry: Optional[CollaboratorRegistry] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.registry = registry or default_registry()
        self.clock = clock
        self.store = QueueStore(db, retry_policy=retry_policy, clock=clock)
        self.detector = ConflictDetector(self.registry)

    def apply_resolution(
        self,
        queue_id: str,
        strategy: Any,
        actor: Optional[Actor] = None,
        reason: Optional[str] = None,
        merge_data: Optional[dict[str, Any]] = None,
    ) -> OfflineQueueItem:
        """Dispose of a conflicted item according to the operator's strategy."""
        try:
            strategy = ResolutionStrategy(strategy)
        except ValueError:
            allowed = ", ".join(s.value for s in ResolutionStrategy)
            raise QueueValidationError(f"Unknown resolution strategy '{strategy}'. Allowed: {allowed}")

        actor = actor or SYSTEM
        item = self.store.get(queue_id)
        if item.status != QueueStatus.CONFLICT.value:
            raise InvalidTransitionError(queue_id, item.status, "resolved")

        conflict_kind = item.conflict_kind
        try:
            if strategy in DISCARDING_STRATEGIES:
                item = self._discard(item, strategy, actor, reason)
            elif strategy == ResolutionStrategy.KEEP_OFFLINE:
                item = self._keep_offline(item, actor, reason)
            else:
                item = self._merge(item, actor, reason, merge_data)
        except IntegrityError:
            self.db.rollback()
            raise SyncConflictError(
                ConflictKind.DUPLICATE.value,
                {"queue_id": queue_id, "message": "Entity was created concurrently; sync again to re-detect"},
            )
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            f"Conflict on {queue_id} ({conflict_kind}) resolved with {strategy.value} "
            f"by {actor.name or actor.id}: now {item.status}"
        )
        return item

    def _discard(self, item: OfflineQueueItem, strategy: ResolutionStrategy, actor: Actor, reason: Optional[str]):
        self._record_resolution(item, strategy, actor, reason)
        item = self.store.mark_skipped(item.queue_id, commit=False)
        self._audit(item, strategy, actor, reason)
        self.db.commit()
        return item

    def _keep_offline(self, item: OfflineQueueItem, actor: Actor, reason: Optional[str]):
        collaborator = self.registry.get(item.operation_kind)
        if item.conflict_kind == ConflictKind.INTEGRITY.value:
            # Operator vouches for the stored payload as it is now
            item.content_checksum = checksum.compute(item.payload)
        else:
            checksum.ensure_intact(item)

        payload = collaborator.parse(item.payload)
        existing = collaborator.find_existing(self.db, payload)
        result = collaborator.apply(
            self.db, payload, self._context(item, force=True, existing=existing)
        )
        return self._finish_synced(item, result, ResolutionStrategy.KEEP_OFFLINE, actor, reason)

    def _merge(
        self,
        item: OfflineQueueItem,
        actor: Actor,
        reason: Optional[str],
        merge_data: Optional[dict[str, Any]],
    ):
        collaborator = self.registry.get(item.operation_kind)
        if not collaborator.supports_merge:
            raise MergeNotSupportedError(item.operation_kind)
        if item.conflict_kind != ConflictKind.INTEGRITY.value:
            checksum.ensure_intact(item)
        payload = collaborator.parse(item.payload)
        existing = collaborator.find_existing(self.db, payload)
        merged = collaborator.merge(self.db, payload, existing, merge_data)

        if merged.adopted is not None:
            result = ApplyResult(merged.adopted.server_id, merged.adopted.server_reference)
            return self._finish_synced(item, result, ResolutionStrategy.MERGE, actor, reason)

        kind = OperationKind(item.operation_kind)
        item.payload = normalize_payload(kind, merged.payload)
        item.content_checksum = checksum.compute(item.payload)

        report = self.detector.detect(self.db, item)
        if report.has_conflict:
            item = self.store.mark_conflict(item.queue_id, report.conflict_type, report.details, commit=False)
            self._audit(item, ResolutionStrategy.MERGE, actor, reason, outcome="conflict")
            self.db.commit()
            return item

        result = collaborator.apply(self.db, report.payload, self._context(item))
        return self._finish_synced(item, result, ResolutionStrategy.MERGE, actor, reason)

    def _finish_synced(
        self,
        item: OfflineQueueItem,
        result: ApplyResult,
        strategy: ResolutionStrategy,
        actor: Actor,
        reason: Optional[str],
    ) -> OfflineQueueItem:
        self._record_resolution(item, strategy, actor, reason)
        item = self.store.mark_synced(item.queue_id, result.server_id, result.server_reference, commit=False)
        self._audit(item, strategy, actor, reason)
        self.db.commit()
        return item

    def _record_resolution(self, item, strategy: ResolutionStrategy, actor: Actor, reason: Optional[str]) -> None:
        item.resolution_strategy = strategy.value
        item.resolved_by = actor.id
        item.resolved_at = self.clock()
        item.resolution_reason = reason

    def _audit(
        self,
        item: OfflineQueueItem,
        strategy: ResolutionStrategy,
        actor: Actor,
        reason: Optional[str],
        outcome: Optional[str] = None,
    ) -> None:
        log_action(
            self.db,
            action="resolve_conflict",
            entity_type="offline_queue_item",
            entity_id=item.queue_id,
            actor=actor,
            details={
                "strategy": strategy.value,
                "reason": reason,
                "operation_kind": item.operation_kind,
                "outcome": outcome or item.status,
                "server_id": item.server_id,
            },
        )

    def _context(self, item: OfflineQueueItem, force: bool = False, existing=None) -> ApplyContext:
        return ApplyContext(
            queue_id=item.queue_id,
            device_id=item.device_id,
            offline_timestamp=item.offline_timestamp,
            cashier_id=item.cashier_id,
            cashier_name=item.cashier_name,
            force=force,
            existing=existing,
        )
