"""Audit trail for operator actions on the offline queue.

Conflict resolutions, retry resets and retention purges each leave one
``AuditLogEntry``. Entries are written on the caller's session and only
flushed, so an entry commits or rolls back with the change it describes.
"""

import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from possync.db.base import utcnow
from possync.models.audit import AuditLogEntry
from possync.services.offline.actor import SYSTEM, Actor

logger = logging.getLogger("audit")


def log_action(
    db: Session,
    action: str,
    entity_type: str,
    entity_id: str,
    actor: Actor = SYSTEM,
    details: Optional[dict[str, Any]] = None,
) -> AuditLogEntry:
    """Record ``action`` by ``actor`` on one queue entity.

    Args:
        db: The session carrying the audited change.
        action: resolve_conflict, reset_retry, purge_synced.
        entity_type: offline_queue_item or offline_queue.
        entity_id: Queue id, or the device id for queue-wide actions.
        actor: Operator who asked for it; the system actor for scheduled jobs.
        details: Strategy, reason, previous status and similar context.
    """
    entry = AuditLogEntry(
        user_id=actor.id,
        user_name=actor.name or "",
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id) if entity_id else "",
        details=details or {},
        ip_address=actor.ip_address or "",
        created_at=utcnow(),
    )
    db.add(entry)
    db.flush()
    logger.info(
        f"{action} on {entity_type} {entry.entity_id} by {entry.user_name or 'unknown'}",
        extra={"audit_action": action, "entity_id": entry.entity_id, "user_id": actor.id},
    )
    return entry
