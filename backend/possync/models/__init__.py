"""SQLAlchemy models."""

from possync.models.offline_queue import (
    OfflineQueueItem,
    SyncSession,
    OperationKind,
    QueueStatus,
    ConflictKind,
    ResolutionStrategy,
    SessionStatus,
    SyncTrigger,
)
from possync.models.ledger import (
    Product,
    Sale,
    Payment,
    Receipt,
    StockAdjustment,
    ServerOperation,
)
from possync.models.audit import AuditLogEntry

__all__ = [
    "OfflineQueueItem",
    "SyncSession",
    "OperationKind",
    "QueueStatus",
    "ConflictKind",
    "ResolutionStrategy",
    "SessionStatus",
    "SyncTrigger",
    "Product",
    "Sale",
    "Payment",
    "Receipt",
    "StockAdjustment",
    "ServerOperation",
    "AuditLogEntry",
]
