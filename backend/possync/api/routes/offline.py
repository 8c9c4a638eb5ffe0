"""Offline queue and sync routes.

Devices upload operations recorded while disconnected, trigger sync
sessions, and operators inspect and resolve conflicts.
"""

from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, Request, status

from possync.core.rate_limit import limiter
from possync.core.rbac import CurrentUser, RequireManager, TokenData, ensure_device_access
from possync.core.responses import list_response
from possync.db.session import DbSession
from possync.schemas.offline import (
    CancelResponse,
    EnqueueRequest,
    InventorySnapshotResponse,
    PurgeResponse,
    QueueItemResponse,
    ResolveConflictRequest,
    SyncRequest,
    SyncSessionResponse,
)
from possync.services.offline.actor import Actor
from possync.services.offline.collaborators.registry import CollaboratorRegistry, default_registry
from possync.services.offline.conflict_resolver import ConflictResolver
from possync.services.offline.queue_store import QueueStore
from possync.services.offline.snapshot import inventory_snapshot
from possync.services.offline.sync_orchestrator import SyncOptions, SyncOrchestrator

router = APIRouter()

_registry = default_registry()


def get_registry() -> CollaboratorRegistry:
    return _registry


Registry = Annotated[CollaboratorRegistry, Depends(get_registry)]


def _actor(request: Request, user: TokenData) -> Actor:
    return Actor.from_user(user, ip_address=request.client.host if request.client else None)


def _item(item) -> dict:
    return QueueItemResponse.model_validate(item).model_dump(mode="json")


def _session(session) -> dict:
    return SyncSessionResponse.model_validate(session).model_dump(mode="json")


# ==================== QUEUE ====================

@router.get("/queue/pending")
@limiter.limit("60/minute")
def get_pending(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    device_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
):
    """Items waiting for their first sync attempt."""
    items = QueueStore(db).get_pending(device_id, limit)
    return list_response([_item(i) for i in items], device_id=device_id)


@router.get("/queue/failed")
@limiter.limit("60/minute")
def get_failed(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    device_id: Optional[str] = Query(None),
    exhausted_only: bool = Query(False, description="Only items that ran out of attempts"),
):
    store = QueueStore(db)
    items = store.get_exhausted(device_id) if exhausted_only else store.get_failed(device_id)
    return list_response([_item(i) for i in items], device_id=device_id)


@router.get("/queue/stats")
@limiter.limit("60/minute")
def get_queue_stats(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    device_id: Optional[str] = Query(None),
):
    return QueueStore(db).stats(device_id)


@router.delete("/queue/clear-synced", response_model=PurgeResponse)
@limiter.limit("10/minute")
def clear_synced(
    request: Request,
    db: DbSession,
    current_user: RequireManager,
    older_than_days: int = Query(7, ge=0, le=3650),
    device_id: Optional[str] = Query(None),
):
    """Retention purge of synced items. Never touches pending, failed or conflicted items."""
    deleted = QueueStore(db).purge_synced(older_than_days, device_id, actor=_actor(request, current_user))
    return PurgeResponse(deleted=deleted, older_than_days=older_than_days, device_id=device_id)


@router.get("/queue/{queue_id}")
@limiter.limit("120/minute")
def get_queue_item(request: Request, queue_id: str, db: DbSession, current_user: CurrentUser):
    return _item(QueueStore(db).get(queue_id))


@router.post("/queue/{queue_id}/retry")
@limiter.limit("30/minute")
def retry_queue_item(request: Request, queue_id: str, db: DbSession, current_user: RequireManager):
    """Operator reset of a failed or conflicted item back to pending."""
    item = QueueStore(db).reset_for_retry(queue_id, actor=_actor(request, current_user))
    return _item(item)


@router.post("/queue/{kind}", status_code=status.HTTP_201_CREATED)
@limiter.limit("300/minute")
def enqueue_operation(
    request: Request,
    kind: str,
    body: EnqueueRequest,
    db: DbSession,
    current_user: CurrentUser,
):
    """Queue one offline operation (sale, payment, receipt, inventory_update, other)."""
    ensure_device_access(current_user, body.device_id)
    item = QueueStore(db).enqueue(
        device_id=body.device_id,
        operation_kind=kind,
        payload=body.payload,
        offline_timestamp=body.offline_timestamp,
        actor=_actor(request, current_user),
        priority=body.priority,
        queue_id=body.queue_id,
        max_attempts=body.max_attempts,
    )
    return _item(item)


# ==================== SYNC ====================

@router.post("/sync")
@limiter.limit("30/minute")
def run_sync(
    request: Request,
    body: SyncRequest,
    db: DbSession,
    current_user: CurrentUser,
    registry: Registry,
):
    """Run a sync session for one device and return its outcome."""
    ensure_device_access(current_user, body.device_id)
    orchestrator = SyncOrchestrator(db, registry=registry)
    result = orchestrator.run_session(
        body.device_id,
        SyncOptions(
            trigger=body.trigger.value,
            batch_size=body.batch_size,
            initiated_by=current_user.user_id,
            initiated_by_name=current_user.full_name,
        ),
    )
    return _session(orchestrator.get_session(result.session_id))


@router.get("/sync/history")
@limiter.limit("60/minute")
def get_sync_history(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    registry: Registry,
    device_id: Optional[str] = Query(None),
    limit: int = Query(20, ge=1, le=200),
):
    sessions = SyncOrchestrator(db, registry=registry).history(device_id, limit)
    return list_response([_session(s) for s in sessions], device_id=device_id)


@router.get("/sync/stats")
@limiter.limit("60/minute")
def get_sync_stats(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    registry: Registry,
    device_id: Optional[str] = Query(None),
    days: int = Query(7, ge=1, le=365),
):
    return SyncOrchestrator(db, registry=registry).session_stats(device_id, days)


@router.get("/sync/inventory-snapshot", response_model=InventorySnapshotResponse)
@limiter.limit("30/minute")
def get_inventory_snapshot(request: Request, db: DbSession, current_user: CurrentUser):
    """Active products and stock for a terminal to refresh its offline catalog."""
    return inventory_snapshot(db)


@router.get("/sync/{session_id}")
@limiter.limit("120/minute")
def get_sync_session(
    request: Request,
    session_id: str,
    db: DbSession,
    current_user: CurrentUser,
    registry: Registry,
):
    return _session(SyncOrchestrator(db, registry=registry).get_session(session_id))


@router.post("/sync/{session_id}/cancel", response_model=CancelResponse)
@limiter.limit("30/minute")
def cancel_sync_session(
    request: Request,
    session_id: str,
    db: DbSession,
    current_user: CurrentUser,
    registry: Registry,
):
    orchestrator = SyncOrchestrator(db, registry=registry)
    ensure_device_access(current_user, orchestrator.get_session(session_id).device_id)
    signalled = orchestrator.cancel(session_id)
    session = orchestrator.get_session(session_id)
    return CancelResponse(
        session_id=session_id,
        signalled=signalled,
        status="cancelling" if signalled else session.status,
    )


# ==================== CONFLICTS ====================

@router.get("/conflicts")
@limiter.limit("60/minute")
def get_conflicts(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    device_id: Optional[str] = Query(None),
):
    items = QueueStore(db).get_conflicts(device_id)
    return list_response([_item(i) for i in items], device_id=device_id)


@router.post("/conflicts/{queue_id}/resolve")
@limiter.limit("30/minute")
def resolve_conflict(
    request: Request,
    queue_id: str,
    body: ResolveConflictRequest,
    db: DbSession,
    current_user: RequireManager,
    registry: Registry,
):
    item = ConflictResolver(db, registry=registry).apply_resolution(
        queue_id,
        body.strategy,
        actor=_actor(request, current_user),
        reason=body.reason,
        merge_data=body.merge_data,
    )
    return _item(item)
