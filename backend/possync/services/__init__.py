# Services module

from possync.services.offline import (
    ConflictResolver,
    QueueStore,
    SyncOrchestrator,
)
from possync.services.audit_service import log_action
