"""Abstract base class for operation collaborators.

A collaborator owns one operation kind: it knows how to find an operation
on the server by its natural key, which server-side facts can make a replay
unsafe, and how to apply the payload inside the caller's transaction.
Collaborators never commit; the sync engine owns the transaction.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from possync.models.offline_queue import OperationKind
from possync.services.offline.exceptions import MergeNotSupportedError
from possync.services.offline.payloads import parse_payload

# Finding severities, most severe first
CRITICAL = "critical"
HIGH = "high"
MEDIUM = "medium"
LOW = "low"


def finding(
    code: str,
    message: str,
    severity: str,
    field_name: Optional[str] = None,
    expected: Any = None,
    actual: Any = None,
) -> dict[str, Any]:
    """Build one conflict finding in the shape stored on the queue item."""
    entry: dict[str, Any] = {"code": code, "message": message, "severity": severity}
    if field_name is not None:
        entry["field"] = field_name
        entry["expected"] = _jsonable(expected)
        entry["actual"] = _jsonable(actual)
    return entry


def _jsonable(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


@dataclass
class ServerEntityRef:
    """An entity that already exists on the server."""

    entity: str
    server_id: int
    server_reference: Optional[str] = None
    state: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity,
            "server_id": self.server_id,
            "server_reference": self.server_reference,
            "state": self.state,
        }


@dataclass
class ApplyContext:
    """Queue-side facts a collaborator may need while applying."""

    queue_id: str
    device_id: str
    offline_timestamp: Optional[datetime] = None
    cashier_id: Optional[int] = None
    cashier_name: Optional[str] = None
    force: bool = False
    existing: Optional[ServerEntityRef] = None


@dataclass
class ApplyResult:
    server_id: int
    server_reference: Optional[str] = None


@dataclass
class MergeResult:
    """Either a merged payload to re-check and apply, or an adopted server entity."""

    payload: Optional[dict[str, Any]] = None
    adopted: Optional[ServerEntityRef] = None


class OperationCollaborator(ABC):
    """Base interface for applying one kind of offline operation."""

    kind: OperationKind
    entity_name: str = ""
    supports_merge: bool = False
    # A replayed payment or receipt is money counted twice; a sale usually is not
    duplicate_severity: str = CRITICAL

    def parse(self, payload: dict[str, Any]) -> BaseModel:
        return parse_payload(self.kind, payload)

    @abstractmethod
    def natural_key(self, payload: BaseModel) -> str:
        """The business identifier duplicates are detected by."""

    @abstractmethod
    def find_existing(self, db: Session, payload: BaseModel) -> Optional[ServerEntityRef]:
        """Look the operation up on the server by its natural key."""

    def check_dependencies(self, db: Session, payload: BaseModel) -> list[dict[str, Any]]:
        """Findings for dependent entities whose server state differs from the device's.

        Raises DependencyPendingError when a referenced entity is not on the
        server yet.
        """
        return []

    def validate(self, db: Session, payload: BaseModel) -> list[dict[str, Any]]:
        """Findings for business rules that can only be checked online."""
        return []

    @abstractmethod
    def apply(self, db: Session, payload: BaseModel, context: ApplyContext) -> ApplyResult:
        """Write the operation. With ``context.force`` and ``context.existing``
        the existing server entity is overwritten with the offline version.

        Raises TransientApplyError or ApplyRejectedError.
        """

    def merge(
        self,
        db: Session,
        payload: BaseModel,
        existing: Optional[ServerEntityRef],
        merge_data: Optional[dict[str, Any]] = None,
    ) -> MergeResult:
        raise MergeNotSupportedError(self.kind.value)

    def _override(self, payload: BaseModel, merge_data: Optional[dict[str, Any]]) -> dict[str, Any]:
        merged = payload.model_dump(mode="json")
        merged.update(merge_data or {})
        return merged
