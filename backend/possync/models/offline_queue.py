"""Offline queue and sync session models.

Terminals keep selling while disconnected. Every operation performed offline
is recorded as an OfflineQueueItem and replayed against the server once the
device reconnects; each replay run is logged as a SyncSession.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from possync.db.base import Base, TimestampMixin, utcnow


class OperationKind(str, Enum):
    """Kinds of operation a device may queue while offline."""

    SALE = "sale"
    PAYMENT = "payment"
    RECEIPT = "receipt"
    INVENTORY_UPDATE = "inventory_update"
    OTHER = "other"


class QueueStatus(str, Enum):
    """Lifecycle of a queued operation."""

    PENDING = "pending"
    SYNCING = "syncing"
    SYNCED = "synced"
    FAILED = "failed"
    CONFLICT = "conflict"
    SKIPPED = "skipped"


class ConflictKind(str, Enum):
    """Why a queued operation could not be replayed as-is."""

    NONE = "none"
    DUPLICATE = "duplicate"  # Already on the server under its natural key
    DATA_MISMATCH = "data_mismatch"  # Dependent entity differs from what the device saw
    INTEGRITY = "integrity"  # Checksum mismatch
    VALIDATION = "validation"  # Business rule only checkable online


class ResolutionStrategy(str, Enum):
    """Operator decisions for a flagged conflict."""

    KEEP_OFFLINE = "keep_offline"
    KEEP_ONLINE = "keep_online"
    MERGE = "merge"
    MANUAL = "manual"
    SKIP = "skip"


class SessionStatus(str, Enum):
    """Sync session status."""

    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    CANCELLED = "cancelled"


class SyncTrigger(str, Enum):
    """What started a sync session."""

    MANUAL = "manual"
    AUTOMATIC = "automatic"
    SCHEDULED = "scheduled"
    STARTUP = "startup"


# Statuses from which an item may be claimed by a sync runner
DUE_STATUSES = (QueueStatus.PENDING.value, QueueStatus.FAILED.value)

# Higher runs first
DEFAULT_PRIORITIES = {
    OperationKind.SALE: 5,
    OperationKind.PAYMENT: 7,
    OperationKind.RECEIPT: 3,
    OperationKind.INVENTORY_UPDATE: 4,
    OperationKind.OTHER: 5,
}


class OfflineQueueItem(Base, TimestampMixin):
    """An operation recorded on a device while offline, awaiting replay."""

    __tablename__ = "offline_queue"
    __table_args__ = (
        Index("ix_offline_queue_due", "device_id", "status", "priority", "offline_timestamp"),
        Index("ix_offline_queue_status_synced_at", "status", "synced_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    queue_id: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)
    device_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    operation_kind: Mapped[str] = mapped_column(String(30), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(JSON, nullable=False)
    content_checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    offline_timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    cashier_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    cashier_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), default=QueueStatus.PENDING.value, nullable=False, index=True
    )  # pending, syncing, synced, failed, conflict, skipped
    priority: Mapped[int] = mapped_column(Integer, default=5, nullable=False)

    # Retry bookkeeping
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    not_before: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Claim bookkeeping (crash recovery)
    claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    sync_session_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)

    # Offline -> server identity
    synced_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    server_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    server_reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    conflict_kind: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    conflict_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    detected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    resolution_strategy: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    resolved_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    resolution_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # "metadata" is reserved on declarative classes
    item_metadata: Mapped[Optional[dict]] = mapped_column("metadata", JSON, nullable=True)

    @property
    def is_exhausted(self) -> bool:
        return self.status == QueueStatus.FAILED.value and self.attempts >= self.max_attempts

    def __repr__(self) -> str:
        return f"<OfflineQueueItem {self.queue_id} {self.operation_kind} {self.status}>"


class SyncSession(Base):
    """One replay run for a device. Finalized exactly once."""

    __tablename__ = "sync_sessions"
    __table_args__ = (
        Index("ix_sync_sessions_device_started", "device_id", "started_at"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    session_id: Mapped[str] = mapped_column(String(100), unique=True, index=True, nullable=False)
    device_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    direction: Mapped[str] = mapped_column(String(20), default="upload", nullable=False)
    trigger: Mapped[str] = mapped_column(String(20), default=SyncTrigger.MANUAL.value, nullable=False)

    started_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(
        String(20), default=SessionStatus.IN_PROGRESS.value, nullable=False, index=True
    )

    items_queued: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_processed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_failed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_conflicted: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_skipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    items_reclaimed: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    operation_stats: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    conflicts: Mapped[Optional[list]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    initiated_by: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    initiated_by_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    @property
    def is_finalized(self) -> bool:
        return self.status != SessionStatus.IN_PROGRESS.value

    def __repr__(self) -> str:
        return f"<SyncSession {self.session_id} {self.status}>"
