"""Sync session orchestration.

A session replays one device's due queue items in priority order:

    open session -> release stale claims -> snapshot due count -> fetch batch
    -> per item: claim, verify checksum, detect conflicts, apply or flag
    -> finalize session with counts and status

Each item is claimed with a conditional UPDATE and applied in its own
transaction, so a crash mid-session leaves every item either committed
(``synced``) or still ``syncing`` for the next session to reclaim.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from possync.core.config import settings
from possync.db.base import utcnow
from possync.models.offline_queue import (
    ConflictKind,
    OfflineQueueItem,
    SessionStatus,
    SyncSession,
    SyncTrigger,
)
from possync.services.offline.collaborators.base import CRITICAL, ApplyContext, finding
from possync.services.offline.collaborators.registry import CollaboratorRegistry, default_registry
from possync.services.offline.conflict_detector import ConflictDetector, ConflictReport
from possync.services.offline.exceptions import (
    ApplyRejectedError,
    QueueValidationError,
    SessionAlreadyFinalizedError,
    SyncSessionError,
    SyncSessionNotFoundError,
    TransientApplyError,
)
from possync.services.offline.notifiers import LoggingSyncNotifier, SyncNotifier
from possync.services.offline.queue_store import QueueStore
from possync.services.offline.retry_policy import RetryPolicy

logger = logging.getLogger(__name__)

# Cancel signals for sessions running in this process, keyed by session_id
_running_sessions: dict[str, threading.Event] = {}
_running_lock = threading.Lock()

SYNCED = "synced"
FAILED = "failed"
CONFLICT = "conflict"
SKIPPED = "skipped"


@dataclass
class SyncOptions:
    trigger: str = SyncTrigger.MANUAL.value
    batch_size: Optional[int] = None
    initiated_by: Optional[int] = None
    initiated_by_name: Optional[str] = None
    cancel_event: Optional[threading.Event] = None


@dataclass
class SyncSessionResult:
    session_id: str
    device_id: str
    status: str
    trigger: str
    items_queued: int = 0
    items_processed: int = 0
    items_failed: int = 0
    items_conflicted: int = 0
    items_skipped: int = 0
    items_reclaimed: int = 0
    duration_ms: Optional[int] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    operation_stats: dict[str, Any] = field(default_factory=dict)
    conflicts: list[dict[str, Any]] = field(default_factory=list)
    error_message: Optional[str] = None

    @classmethod
    def from_session(cls, session: SyncSession) -> "SyncSessionResult":
        return cls(
            session_id=session.session_id,
            device_id=session.device_id,
            status=session.status,
            trigger=session.trigger,
            items_queued=session.items_queued,
            items_processed=session.items_processed,
            items_failed=session.items_failed,
            items_conflicted=session.items_conflicted,
            items_skipped=session.items_skipped,
            items_reclaimed=session.items_reclaimed,
            duration_ms=session.duration_ms,
            started_at=session.started_at,
            completed_at=session.completed_at,
            operation_stats=session.operation_stats or {},
            conflicts=session.conflicts or [],
            error_message=session.error_message,
        )


@dataclass
class _Tally:
    queued: int = 0
    reclaimed: int = 0
    processed: int = 0
    failed: int = 0
    conflicted: int = 0
    skipped: int = 0
    operation_stats: dict[str, dict[str, int]] = field(default_factory=dict)
    conflicts: list[dict[str, Any]] = field(default_factory=list)

    def record(self, kind: str, outcome: str, item: Optional[OfflineQueueItem] = None) -> None:
        stats = self.operation_stats.setdefault(
            kind, {"synced": 0, "failed": 0, "conflicted": 0, "skipped": 0}
        )
        if outcome == SYNCED:
            self.processed += 1
            stats["synced"] += 1
        elif outcome == FAILED:
            self.failed += 1
            stats["failed"] += 1
        elif outcome == CONFLICT:
            self.conflicted += 1
            stats["conflicted"] += 1
            if item is not None:
                self.conflicts.append({
                    "queue_id": item.queue_id,
                    "operation_kind": item.operation_kind,
                    "conflict_type": item.conflict_kind,
                    "severity": (item.conflict_details or {}).get("severity"),
                })
        else:
            self.skipped += 1
            stats["skipped"] += 1


def _session_id(now: datetime) -> str:
    epoch_ms = int(now.replace(tzinfo=timezone.utc).timestamp() * 1000)
    return f"SYNC-{epoch_ms}-{uuid.uuid4()}"


class SyncOrchestrator:
    """Drives sync sessions against the queue store and collaborator registry."""

    def __init__(
        self,
        db: Session,
        registry: Optional[CollaboratorRegistry] = None,
        notifier: Optional[SyncNotifier] = None,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], datetime] = utcnow,
        batch_size: Optional[int] = None,
        stale_claim_seconds: Optional[int] = None,
    ):
        self.registry = registry or default_registry()
        self.registry.ensure_complete()
        self.db = db
        self.clock = clock
        self.store = QueueStore(db, retry_policy=retry_policy, clock=clock)
        self.detector = ConflictDetector(self.registry)
        self.notifier = notifier or LoggingSyncNotifier()
        self.batch_size = batch_size or settings.offline_batch_size
        self.stale_claim_seconds = (
            stale_claim_seconds if stale_claim_seconds is not None else settings.offline_stale_claim_seconds
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def run_session(self, device_id: str, options: Optional[SyncOptions] = None) -> SyncSessionResult:
        """Replay the device's due items. Item failures never abort the batch;
        store failures end the session as ``failed`` with the counts so far."""
        options = options or SyncOptions()
        cancel_event = options.cancel_event or threading.Event()
        session = self._open_session(device_id, options)
        session_id = session.session_id

        with _running_lock:
            _running_sessions[session_id] = cancel_event

        tally = _Tally()
        status = SessionStatus.COMPLETED
        error_message = None
        try:
            tally.reclaimed = self.store.reconcile_stale_claims(device_id, self.stale_claim_seconds)
            tally.queued = self.store.count_due(device_id)
            limit = options.batch_size or self.batch_size
            batch = [(item.queue_id, item.operation_kind) for item in self.store.fetch_due(device_id, limit)]
            logger.info(f"Sync session {session_id} started for {device_id}: {len(batch)} of {tally.queued} due",
                        extra={"session_id": session_id, "device_id": device_id})

            for queue_id, kind in batch:
                if cancel_event.is_set():
                    status = SessionStatus.CANCELLED
                    logger.info(f"Sync session {session_id} cancelled", extra={"session_id": session_id})
                    break
                self._process_item(session_id, queue_id, kind, tally)
        except Exception as e:
            self.db.rollback()
            logger.exception(f"Sync session {session_id} aborted", extra={"session_id": session_id})
            status = SessionStatus.FAILED
            error_message = str(e)
        finally:
            with _running_lock:
                _running_sessions.pop(session_id, None)

        if status == SessionStatus.COMPLETED and (tally.failed or tally.conflicted):
            status = SessionStatus.PARTIAL

        session = self.finalize_session(session_id, status, tally, error_message)
        result = SyncSessionResult.from_session(session)
        self.notifier.session_finished(result)
        return result

    def _open_session(self, device_id: str, options: SyncOptions) -> SyncSession:
        if not device_id:
            raise QueueValidationError("device_id is required")
        try:
            trigger = SyncTrigger(options.trigger)
        except ValueError:
            raise QueueValidationError(f"Unknown sync trigger '{options.trigger}'")

        now = self.clock()
        session = SyncSession(
            session_id=_session_id(now),
            device_id=device_id,
            direction="upload",
            trigger=trigger.value,
            started_at=now,
            status=SessionStatus.IN_PROGRESS.value,
            initiated_by=options.initiated_by,
            initiated_by_name=options.initiated_by_name,
        )
        try:
            self.db.add(session)
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise SyncSessionError(f"Could not start sync session: {e}") from e
        self.db.refresh(session)
        return session

    def finalize_session(
        self,
        session_id: str,
        status: SessionStatus,
        tally: Optional[_Tally] = None,
        error_message: Optional[str] = None,
    ) -> SyncSession:
        """Close a session. A session can only be finalized once."""
        session = self.get_session(session_id)
        if session.is_finalized:
            raise SessionAlreadyFinalizedError(session_id, session.status)

        now = self.clock()
        session.status = SessionStatus(status).value
        session.completed_at = now
        session.duration_ms = max(0, int((now - session.started_at).total_seconds() * 1000))
        session.error_message = error_message
        if tally is not None:
            session.items_queued = tally.queued
            session.items_processed = tally.processed
            session.items_failed = tally.failed
            session.items_conflicted = tally.conflicted
            session.items_skipped = tally.skipped
            session.items_reclaimed = tally.reclaimed
            session.operation_stats = tally.operation_stats
            session.conflicts = tally.conflicts
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise SyncSessionError(f"Could not finalize sync session {session_id}: {e}") from e
        return session

    def cancel(self, session_id: str) -> bool:
        """Ask a running session to stop before its next item.

        Returns True if a runner in this process was signalled. A session
        still marked in progress with no live runner is closed as cancelled.
        """
        session = self.get_session(session_id)
        if session.is_finalized:
            raise SessionAlreadyFinalizedError(session_id, session.status)

        with _running_lock:
            event = _running_sessions.get(session_id)
        if event is not None:
            event.set()
            return True

        self.finalize_session(session_id, SessionStatus.CANCELLED, error_message="No active runner")
        return False

    def recover_interrupted_sessions(self) -> int:
        """Close sessions left in progress by a previous process and release their claims."""
        with _running_lock:
            live = set(_running_sessions)
        orphaned = [
            s.session_id
            for s in self.db.scalars(
                select(SyncSession).where(SyncSession.status == SessionStatus.IN_PROGRESS.value)
            )
            if s.session_id not in live
        ]
        for session_id in orphaned:
            self.finalize_session(session_id, SessionStatus.FAILED, error_message="Interrupted before completion")
        if orphaned:
            logger.warning(f"Closed {len(orphaned)} interrupted sync session(s)")
        self.store.reconcile_stale_claims(timeout_seconds=self.stale_claim_seconds)
        return len(orphaned)

    # ------------------------------------------------------------------
    # Per-item processing
    # ------------------------------------------------------------------

    def _process_item(self, session_id: str, queue_id: str, kind: str, tally: _Tally) -> str:
        if not self.store.claim(queue_id, session_id):
            logger.debug(f"Queue item {queue_id} claimed by another runner")
            tally.record(kind, SKIPPED)
            return SKIPPED

        item = self.store.get(queue_id)
        try:
            report = self.detector.detect(self.db, item)
            if report.has_conflict:
                item = self.store.mark_conflict(
                    queue_id,
                    report.conflict_type,
                    report.details,
                    count_attempt=report.conflict_type == ConflictKind.INTEGRITY.value,
                )
                outcome = CONFLICT
            else:
                collaborator = self.registry.get(kind)
                result = collaborator.apply(self.db, report.payload, self._context(item))
                item = self.store.mark_synced(queue_id, result.server_id, result.server_reference, commit=False)
                self.db.commit()
                outcome = SYNCED
        except IntegrityError:
            # Natural key taken by a concurrent runner between detect and apply
            self.db.rollback()
            item, outcome = self._redetect(queue_id)
        except TransientApplyError as e:
            self.db.rollback()
            item = self.store.mark_failed(queue_id, {"message": e.message, "error": type(e).__name__, **e.details})
            outcome = FAILED
        except ApplyRejectedError as e:
            self.db.rollback()
            report = ConflictReport.flagged(
                ConflictKind.VALIDATION, [finding("apply_rejected", e.message, CRITICAL)]
            )
            item = self.store.mark_conflict(queue_id, report.conflict_type, report.details)
            outcome = CONFLICT
        except Exception as e:
            self.db.rollback()
            logger.exception(
                f"Unexpected error applying queue item {queue_id}",
                extra={"session_id": session_id, "queue_id": queue_id},
            )
            item = self.store.mark_failed(queue_id, {"message": str(e), "error": type(e).__name__})
            outcome = FAILED

        tally.record(kind, outcome, item)
        self.notifier.item_processed(session_id, item, outcome)
        return outcome

    def _redetect(self, queue_id: str) -> tuple[OfflineQueueItem, str]:
        item = self.store.get(queue_id)
        try:
            report = self.detector.detect(self.db, item)
        except TransientApplyError as e:
            self.db.rollback()
            return self.store.mark_failed(queue_id, {"message": e.message, "error": type(e).__name__}), FAILED

        if report.has_conflict:
            return self.store.mark_conflict(queue_id, report.conflict_type, report.details), CONFLICT
        return self.store.mark_failed(
            queue_id, {"message": "Constraint violation while applying", "error": "IntegrityError"}
        ), FAILED

    def _context(self, item: OfflineQueueItem) -> ApplyContext:
        return ApplyContext(
            queue_id=item.queue_id,
            device_id=item.device_id,
            offline_timestamp=item.offline_timestamp,
            cashier_id=item.cashier_id,
            cashier_name=item.cashier_name,
        )

    # ------------------------------------------------------------------
    # Session queries
    # ------------------------------------------------------------------

    def get_session(self, session_id: str) -> SyncSession:
        session = self.db.scalar(select(SyncSession).where(SyncSession.session_id == session_id))
        if session is None:
            raise SyncSessionNotFoundError(session_id)
        return session

    def history(self, device_id: Optional[str] = None, limit: int = 20) -> list[SyncSession]:
        stmt = select(SyncSession)
        if device_id:
            stmt = stmt.where(SyncSession.device_id == device_id)
        stmt = stmt.order_by(SyncSession.started_at.desc(), SyncSession.id.desc()).limit(limit)
        return list(self.db.scalars(stmt))

    def session_stats(self, device_id: Optional[str] = None, days: int = 7) -> dict[str, Any]:
        """Aggregate session outcomes over the last ``days`` days."""
        since = self.clock() - timedelta(days=days)
        stmt = select(SyncSession).where(SyncSession.started_at >= since)
        if device_id:
            stmt = stmt.where(SyncSession.device_id == device_id)
        sessions = list(self.db.scalars(stmt))

        by_status = {status.value: 0 for status in SessionStatus}
        for s in sessions:
            by_status[s.status] = by_status.get(s.status, 0) + 1

        finished = [s for s in sessions if s.duration_ms is not None]
        successful = [
            s for s in sessions
            if s.status in (SessionStatus.COMPLETED.value, SessionStatus.PARTIAL.value)
        ]
        processed = sum(s.items_processed for s in sessions)
        failed = sum(s.items_failed for s in sessions)

        return {
            "device_id": device_id,
            "period_days": days,
            "total_sessions": len(sessions),
            "by_status": by_status,
            "items_processed": processed,
            "items_failed": failed,
            "items_conflicted": sum(s.items_conflicted for s in sessions),
            "items_skipped": sum(s.items_skipped for s in sessions),
            "average_duration_ms": (
                round(sum(s.duration_ms for s in finished) / len(finished)) if finished else 0
            ),
            "success_rate": round(processed / (processed + failed) * 100, 2) if processed + failed else None,
            "last_sync_at": max((s.completed_at for s in successful if s.completed_at), default=None),
        }
