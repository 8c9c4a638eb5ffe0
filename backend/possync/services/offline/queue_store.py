"""Durable store of operations queued while a device was offline.

Every mutation here is a single atomic write: either one conditional UPDATE
or one commit. Methods that take part in a larger transaction (apply +
status change) accept ``commit=False`` and only flush.
"""

from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from possync.core.config import settings
from possync.db.base import utcnow
from possync.models.offline_queue import (
    DEFAULT_PRIORITIES,
    DUE_STATUSES,
    OfflineQueueItem,
    OperationKind,
    QueueStatus,
    SessionStatus,
    SyncSession,
)
from possync.services.audit_service import log_action
from possync.services.offline import checksum
from possync.services.offline.actor import SYSTEM, Actor
from possync.services.offline.exceptions import (
    ExhaustedRetriesError,
    InvalidTransitionError,
    QueueItemNotFoundError,
    QueueValidationError,
)
from possync.services.offline.payloads import parse_kind, parse_payload, summarize
from possync.services.offline.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

# Allowed status transitions. Anything else raises InvalidTransitionError.
TRANSITIONS: dict[str, set[str]] = {
    QueueStatus.PENDING.value: {QueueStatus.SYNCING.value},
    QueueStatus.SYNCING.value: {
        QueueStatus.SYNCED.value,
        QueueStatus.FAILED.value,
        QueueStatus.CONFLICT.value,
    },
    QueueStatus.FAILED.value: {QueueStatus.SYNCING.value, QueueStatus.PENDING.value},
    QueueStatus.CONFLICT.value: {
        QueueStatus.SYNCED.value,
        QueueStatus.SKIPPED.value,
        QueueStatus.PENDING.value,
        QueueStatus.CONFLICT.value,
    },
    QueueStatus.SYNCED.value: set(),
    QueueStatus.SKIPPED.value: set(),
}


def generate_queue_id(device_id: str, kind: OperationKind, now: datetime) -> str:
    epoch_ms = int(now.replace(tzinfo=timezone.utc).timestamp() * 1000)
    return f"{device_id}-{kind.value}-{epoch_ms}-{secrets.token_hex(3)}".upper()


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class QueueStore:
    """Queue item persistence, status transitions and retry bookkeeping."""

    def __init__(
        self,
        db: Session,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.retry_policy = retry_policy or RetryPolicy.from_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------

    def enqueue(
        self,
        device_id: str,
        operation_kind: Any,
        payload: Any,
        offline_timestamp: Optional[datetime] = None,
        actor: Optional[Actor] = None,
        priority: Optional[int] = None,
        queue_id: Optional[str] = None,
        max_attempts: Optional[int] = None,
    ) -> OfflineQueueItem:
        """Validate and persist an offline operation as ``pending``.

        Re-sending a queue_id with identical content returns the stored item,
        so devices can safely retry an upload whose response they never saw.
        """
        if not device_id or not device_id.strip():
            raise QueueValidationError("device_id is required")
        kind = parse_kind(operation_kind)
        model = parse_payload(kind, payload)
        normalized = model.model_dump(mode="json")
        content_checksum = checksum.compute(normalized)

        if priority is not None and not 1 <= priority <= 10:
            raise QueueValidationError("priority must be between 1 and 10", {"priority": priority})
        if max_attempts is not None and max_attempts < 1:
            raise QueueValidationError("max_attempts must be at least 1", {"max_attempts": max_attempts})

        now = self.clock()
        if queue_id:
            existing = self.get_or_none(queue_id)
            if existing is not None:
                return self._idempotent_match(existing, device_id, content_checksum)
        else:
            queue_id = generate_queue_id(device_id, kind, now)

        actor = actor or SYSTEM
        item = OfflineQueueItem(
            queue_id=queue_id,
            device_id=device_id,
            operation_kind=kind.value,
            payload=normalized,
            content_checksum=content_checksum,
            offline_timestamp=to_naive_utc(offline_timestamp) or now,
            cashier_id=actor.id,
            cashier_name=actor.name,
            status=QueueStatus.PENDING.value,
            priority=priority if priority is not None else DEFAULT_PRIORITIES[kind],
            attempts=0,
            max_attempts=max_attempts or self.retry_policy.max_attempts,
            item_metadata=summarize(kind, model),
        )
        self.db.add(item)
        try:
            self.db.commit()
        except IntegrityError:
            # Same queue_id inserted concurrently
            self.db.rollback()
            existing = self.get_or_none(queue_id)
            if existing is None:
                raise
            return self._idempotent_match(existing, device_id, content_checksum)

        self.db.refresh(item)
        logger.info(f"Queued {kind.value} {queue_id} from device {device_id} (priority {item.priority})",
                    extra={"device_id": device_id, "queue_id": queue_id})
        return item

    def _idempotent_match(self, existing: OfflineQueueItem, device_id: str, content_checksum: str) -> OfflineQueueItem:
        if existing.device_id != device_id or existing.content_checksum != content_checksum:
            raise QueueValidationError(
                f"Queue id {existing.queue_id} already exists with different content",
                {"queue_id": existing.queue_id},
            )
        logger.debug(f"Duplicate enqueue of {existing.queue_id} ignored")
        return existing

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_or_none(self, queue_id: str) -> Optional[OfflineQueueItem]:
        return self.db.scalar(select(OfflineQueueItem).where(OfflineQueueItem.queue_id == queue_id))

    def get(self, queue_id: str) -> OfflineQueueItem:
        item = self.get_or_none(queue_id)
        if item is None:
            raise QueueItemNotFoundError(queue_id)
        return item

    def _due_condition(self, now: datetime):
        # Failed items are due only with attempts left and their backoff passed
        retry_ready = and_(
            OfflineQueueItem.attempts < OfflineQueueItem.max_attempts,
            or_(OfflineQueueItem.not_before.is_(None), OfflineQueueItem.not_before <= now),
        )
        return and_(
            OfflineQueueItem.status.in_(DUE_STATUSES),
            or_(OfflineQueueItem.status == QueueStatus.PENDING.value, retry_ready),
        )

    def fetch_due(self, device_id: Optional[str] = None, limit: int = 50) -> list[OfflineQueueItem]:
        """Items ready to replay, highest priority first, then oldest first."""
        stmt = select(OfflineQueueItem).where(self._due_condition(self.clock()))
        if device_id:
            stmt = stmt.where(OfflineQueueItem.device_id == device_id)
        stmt = stmt.order_by(
            OfflineQueueItem.priority.desc(),
            OfflineQueueItem.offline_timestamp.asc(),
            OfflineQueueItem.id.asc(),
        ).limit(limit)
        return list(self.db.scalars(stmt))

    def count_due(self, device_id: Optional[str] = None) -> int:
        stmt = select(func.count(OfflineQueueItem.id)).where(self._due_condition(self.clock()))
        if device_id:
            stmt = stmt.where(OfflineQueueItem.device_id == device_id)
        return self.db.scalar(stmt) or 0

    def devices_with_due_work(self) -> list[str]:
        stmt = (
            select(OfflineQueueItem.device_id)
            .where(self._due_condition(self.clock()))
            .distinct()
            .order_by(OfflineQueueItem.device_id)
        )
        return list(self.db.scalars(stmt))

    def _list(self, *conditions, device_id: Optional[str] = None, limit: Optional[int] = None):
        stmt = select(OfflineQueueItem).where(*conditions)
        if device_id:
            stmt = stmt.where(OfflineQueueItem.device_id == device_id)
        stmt = stmt.order_by(
            OfflineQueueItem.priority.desc(),
            OfflineQueueItem.offline_timestamp.asc(),
            OfflineQueueItem.id.asc(),
        )
        if limit:
            stmt = stmt.limit(limit)
        return list(self.db.scalars(stmt))

    def get_pending(self, device_id: Optional[str] = None, limit: int = 100) -> list[OfflineQueueItem]:
        return self._list(OfflineQueueItem.status == QueueStatus.PENDING.value, device_id=device_id, limit=limit)

    def get_conflicts(self, device_id: Optional[str] = None) -> list[OfflineQueueItem]:
        return self._list(OfflineQueueItem.status == QueueStatus.CONFLICT.value, device_id=device_id)

    def get_failed(self, device_id: Optional[str] = None) -> list[OfflineQueueItem]:
        return self._list(OfflineQueueItem.status == QueueStatus.FAILED.value, device_id=device_id)

    def get_exhausted(self, device_id: Optional[str] = None) -> list[OfflineQueueItem]:
        return self._list(
            OfflineQueueItem.status == QueueStatus.FAILED.value,
            OfflineQueueItem.attempts >= OfflineQueueItem.max_attempts,
            device_id=device_id,
        )

    def stats(self, device_id: Optional[str] = None) -> dict[str, Any]:
        """Counts by status and by kind, plus the age of the oldest pending item."""
        base = select(OfflineQueueItem.status, func.count(OfflineQueueItem.id)).group_by(OfflineQueueItem.status)
        by_kind_stmt = select(OfflineQueueItem.operation_kind, func.count(OfflineQueueItem.id)).group_by(
            OfflineQueueItem.operation_kind
        )
        oldest_stmt = select(func.min(OfflineQueueItem.offline_timestamp)).where(
            OfflineQueueItem.status == QueueStatus.PENDING.value
        )
        if device_id:
            base = base.where(OfflineQueueItem.device_id == device_id)
            by_kind_stmt = by_kind_stmt.where(OfflineQueueItem.device_id == device_id)
            oldest_stmt = oldest_stmt.where(OfflineQueueItem.device_id == device_id)

        by_status = {status.value: 0 for status in QueueStatus}
        for status, count in self.db.execute(base):
            by_status[status] = count
        by_kind = {kind: count for kind, count in self.db.execute(by_kind_stmt)}

        return {
            "device_id": device_id,
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_kind": by_kind,
            "conflicts": by_status[QueueStatus.CONFLICT.value],
            "exhausted": len(self.get_exhausted(device_id)),
            "due": self.count_due(device_id),
            "oldest_pending": self.db.scalar(oldest_stmt),
        }

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, item: OfflineQueueItem, target: QueueStatus) -> None:
        if target.value not in TRANSITIONS.get(item.status, set()):
            raise InvalidTransitionError(item.queue_id, item.status, target.value)
        item.status = target.value

    def _finish(self, commit: bool) -> None:
        if commit:
            self.db.commit()
        else:
            self.db.flush()

    def claim(self, queue_id: str, session_id: Optional[str]) -> bool:
        """Atomically move a due item to ``syncing``. False if it is not due or
        another runner got there first."""
        now = self.clock()
        result = self.db.execute(
            update(OfflineQueueItem)
            .where(OfflineQueueItem.queue_id == queue_id, self._due_condition(now))
            .values(
                status=QueueStatus.SYNCING.value,
                claimed_at=now,
                sync_session_id=session_id,
                last_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        return result.rowcount == 1

    def mark_syncing(self, queue_id: str) -> OfflineQueueItem:
        if not self.claim(queue_id, None):
            item = self.get(queue_id)
            raise InvalidTransitionError(queue_id, item.status, QueueStatus.SYNCING.value)
        return self.get(queue_id)

    def mark_synced(
        self,
        queue_id: str,
        server_id: int,
        server_reference: Optional[str] = None,
        commit: bool = True,
    ) -> OfflineQueueItem:
        item = self.get(queue_id)
        self._transition(item, QueueStatus.SYNCED)
        item.synced_at = self.clock()
        item.server_id = server_id
        item.server_reference = server_reference
        item.claimed_at = None
        item.not_before = None
        item.error_message = None
        item.error_details = None
        self._finish(commit)
        return item

    def mark_failed(self, queue_id: str, error_info: dict[str, Any], commit: bool = True) -> OfflineQueueItem:
        """Record a failed attempt and schedule the next one, or give up."""
        item = self.get(queue_id)
        self._transition(item, QueueStatus.FAILED)
        now = self.clock()
        item.attempts += 1
        item.last_attempt_at = now
        item.claimed_at = None
        item.error_message = error_info.get("message") or "Unknown error"
        item.error_details = error_info
        try:
            item.not_before = self.retry_policy.schedule(item.attempts, now, item.max_attempts)
        except ExhaustedRetriesError as e:
            item.not_before = None
            item.error_details = {**error_info, "exhausted": True, **e.details}
            logger.warning(f"Queue item {queue_id} exhausted after {item.attempts} attempts: {item.error_message}", extra={"queue_id": queue_id})
        self._finish(commit)
        return item

    def mark_conflict(
        self,
        queue_id: str,
        kind: str,
        details: dict[str, Any],
        count_attempt: bool = False,
        commit: bool = True,
    ) -> OfflineQueueItem:
        item = self.get(queue_id)
        self._transition(item, QueueStatus.CONFLICT)
        now = self.clock()
        if count_attempt:
            item.attempts += 1
            item.last_attempt_at = now
        item.conflict_kind = kind
        item.conflict_details = details
        item.detected_at = now
        item.claimed_at = None
        item.not_before = None
        self._finish(commit)
        return item

    def mark_skipped(self, queue_id: str, commit: bool = True) -> OfflineQueueItem:
        item = self.get(queue_id)
        self._transition(item, QueueStatus.SKIPPED)
        item.claimed_at = None
        self._finish(commit)
        return item

    def reset_for_retry(self, queue_id: str, actor: Optional[Actor] = None) -> OfflineQueueItem:
        """Operator reset: a failed or conflicted item becomes pending with a clean slate."""
        item = self.get(queue_id)
        previous_status = item.status
        previous_attempts = item.attempts
        self._transition(item, QueueStatus.PENDING)
        item.attempts = 0
        item.not_before = None
        item.claimed_at = None
        item.sync_session_id = None
        item.error_message = None
        item.error_details = None
        item.conflict_kind = None
        item.conflict_details = None
        item.detected_at = None

        actor = actor or SYSTEM
        log_action(
            self.db,
            action="reset_retry",
            entity_type="offline_queue_item",
            entity_id=queue_id,
            actor=actor,
            details={"previous_status": previous_status, "previous_attempts": previous_attempts},
        )
        self.db.commit()
        logger.info(f"Queue item {queue_id} reset for retry (was {previous_status})")
        return item

    def reconcile_stale_claims(
        self,
        device_id: Optional[str] = None,
        timeout_seconds: Optional[int] = None,
    ) -> int:
        """Release ``syncing`` items left behind by a crashed or finished runner.

        A claim is stale when it is older than the timeout or when the session
        that took it is no longer in progress. Released items become failed
        and immediately due; the attempt is not counted since nothing was
        committed for it.
        """
        if timeout_seconds is None:
            timeout_seconds = settings.offline_stale_claim_seconds
        now = self.clock()
        cutoff = now - timedelta(seconds=timeout_seconds)
        live_sessions = select(SyncSession.session_id).where(
            SyncSession.status == SessionStatus.IN_PROGRESS.value
        )
        stmt = (
            update(OfflineQueueItem)
            .where(
                OfflineQueueItem.status == QueueStatus.SYNCING.value,
                or_(
                    OfflineQueueItem.claimed_at.is_(None),
                    OfflineQueueItem.claimed_at < cutoff,
                    OfflineQueueItem.sync_session_id.is_(None),
                    OfflineQueueItem.sync_session_id.not_in(live_sessions),
                ),
            )
            .values(
                status=QueueStatus.FAILED.value,
                claimed_at=None,
                not_before=None,
                error_message="Sync interrupted before completion",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if device_id:
            stmt = stmt.where(OfflineQueueItem.device_id == device_id)
        result = self.db.execute(stmt)
        self.db.commit()
        if result.rowcount:
            logger.warning(f"Reclaimed {result.rowcount} stale queue item(s)")
        return result.rowcount

    def purge_synced(
        self,
        older_than_days: int,
        device_id: Optional[str] = None,
        actor: Optional[Actor] = None,
    ) -> int:
        """Delete synced items whose ``synced_at`` is older than the window."""
        if older_than_days < 0:
            raise QueueValidationError("older_than_days must not be negative")
        cutoff = self.clock() - timedelta(days=older_than_days)
        stmt = delete(OfflineQueueItem).where(
            OfflineQueueItem.status == QueueStatus.SYNCED.value,
            OfflineQueueItem.synced_at.is_not(None),
            OfflineQueueItem.synced_at < cutoff,
        )
        if device_id:
            stmt = stmt.where(OfflineQueueItem.device_id == device_id)
        result = self.db.execute(stmt.execution_options(synchronize_session=False))

        actor = actor or SYSTEM
        log_action(
            self.db,
            action="purge_synced",
            entity_type="offline_queue",
            entity_id=device_id or "all",
            actor=actor,
            details={"older_than_days": older_than_days, "deleted": result.rowcount},
        )
        self.db.commit()
        logger.info(f"Purged {result.rowcount} synced queue item(s) older than {older_than_days} days")
        return result.rowcount
