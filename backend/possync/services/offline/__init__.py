"""Offline operation queue and synchronization engine."""

from possync.services.offline.actor import Actor
from possync.services.offline.conflict_detector import ConflictDetector, ConflictReport
from possync.services.offline.conflict_resolver import ConflictResolver
from possync.services.offline.queue_store import QueueStore
from possync.services.offline.retry_policy import RetryPolicy
from possync.services.offline.sync_orchestrator import SyncOptions, SyncOrchestrator, SyncSessionResult

__all__ = [
    "Actor",
    "ConflictDetector",
    "ConflictReport",
    "ConflictResolver",
    "QueueStore",
    "RetryPolicy",
    "SyncOptions",
    "SyncOrchestrator",
    "SyncSessionResult",
]
