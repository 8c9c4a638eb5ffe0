"""Offline queue and sync schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from possync.models.offline_queue import ResolutionStrategy, SyncTrigger


class EnqueueRequest(BaseModel):
    """Operation recorded on a device while it was offline."""

    device_id: str = Field(..., min_length=1, max_length=100)
    payload: Dict[str, Any]
    queue_id: Optional[str] = Field(None, max_length=100)
    offline_timestamp: Optional[datetime] = None
    priority: Optional[int] = Field(None, ge=1, le=10)
    max_attempts: Optional[int] = Field(None, ge=1, le=50)


class QueueItemResponse(BaseModel):
    """Queue item as returned to devices and operators."""

    model_config = ConfigDict(from_attributes=True)

    queue_id: str
    device_id: str
    operation_kind: str
    status: str
    priority: int
    payload: Dict[str, Any]
    content_checksum: str
    offline_timestamp: datetime
    cashier_id: Optional[int] = None
    cashier_name: Optional[str] = None
    attempts: int
    max_attempts: int
    last_attempt_at: Optional[datetime] = None
    not_before: Optional[datetime] = None
    sync_session_id: Optional[str] = None
    synced_at: Optional[datetime] = None
    server_id: Optional[int] = None
    server_reference: Optional[str] = None
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    conflict_kind: Optional[str] = None
    conflict_details: Optional[Dict[str, Any]] = None
    detected_at: Optional[datetime] = None
    resolution_strategy: Optional[str] = None
    resolved_by: Optional[int] = None
    resolved_at: Optional[datetime] = None
    resolution_reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias="item_metadata")
    is_exhausted: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class SyncRequest(BaseModel):
    device_id: str = Field(..., min_length=1, max_length=100)
    trigger: SyncTrigger = SyncTrigger.MANUAL
    batch_size: Optional[int] = Field(None, ge=1, le=500)


class SyncSessionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

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
    operation_stats: Optional[Dict[str, Any]] = None
    conflicts: Optional[List[Dict[str, Any]]] = None
    error_message: Optional[str] = None
    initiated_by: Optional[int] = None
    initiated_by_name: Optional[str] = None


class CancelResponse(BaseModel):
    session_id: str
    signalled: bool
    status: str


class ProductSnapshot(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    sku: str
    name: str
    price: Decimal
    stock_quantity: Decimal
    track_inventory: bool


class InventorySnapshotResponse(BaseModel):
    """Catalog a terminal caches for offline selling."""

    products: List[ProductSnapshot]
    product_count: int
    snapshot_time: datetime


class ResolveConflictRequest(BaseModel):
    strategy: ResolutionStrategy
    reason: Optional[str] = Field(None, max_length=1000)
    merge_data: Optional[Dict[str, Any]] = None


class PurgeResponse(BaseModel):
    deleted: int
    older_than_days: int
    device_id: Optional[str] = None
