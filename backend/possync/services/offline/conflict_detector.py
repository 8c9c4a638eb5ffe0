"""Conflict detection for queued operations.

Checks run in a fixed order and the first one that finds something wins:

1. integrity      the stored payload no longer matches its checksum
2. duplicate      the operation already exists on the server (natural key)
3. data_mismatch  a dependent entity differs from what the device saw
4. validation     business rules that can only be checked online

Detection never writes; it runs inside the transaction the apply will use.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from pydantic import BaseModel
from sqlalchemy.orm import Session

from possync.models.offline_queue import ConflictKind, OfflineQueueItem, ResolutionStrategy
from possync.services.offline import checksum
from possync.services.offline.collaborators.base import CRITICAL, HIGH, LOW, MEDIUM, ServerEntityRef, finding
from possync.services.offline.collaborators.registry import CollaboratorRegistry
from possync.services.offline.exceptions import PayloadIntegrityError, QueueValidationError

logger = logging.getLogger(__name__)

_SEVERITY_RANK = {LOW: 0, MEDIUM: 1, HIGH: 2, CRITICAL: 3}


def highest_severity(findings: list[dict[str, Any]]) -> str:
    if not findings:
        return LOW
    return max((f.get("severity", LOW) for f in findings), key=lambda s: _SEVERITY_RANK.get(s, 0))


def suggest_resolution(findings: list[dict[str, Any]]) -> dict[str, str]:
    """Critical findings need a human, high ones are safest skipped, the rest can replay."""
    severity = highest_severity(findings)
    if severity == CRITICAL:
        return {
            "strategy": ResolutionStrategy.MANUAL.value,
            "reason": "Critical conflicts require manual review",
        }
    if severity == HIGH:
        return {
            "strategy": ResolutionStrategy.SKIP.value,
            "reason": "High severity conflicts detected",
        }
    return {
        "strategy": ResolutionStrategy.KEEP_OFFLINE.value,
        "reason": "Minor conflicts, offline version can be applied",
    }


@dataclass
class ConflictReport:
    has_conflict: bool
    conflict_type: str = ConflictKind.NONE.value
    details: dict[str, Any] = field(default_factory=dict)
    payload: Optional[BaseModel] = None
    existing: Optional[ServerEntityRef] = None

    @classmethod
    def clear(cls, payload: BaseModel) -> "ConflictReport":
        return cls(has_conflict=False, payload=payload)

    @classmethod
    def flagged(
        cls,
        conflict_type: ConflictKind,
        findings: list[dict[str, Any]],
        payload: Optional[BaseModel] = None,
        existing: Optional[ServerEntityRef] = None,
    ) -> "ConflictReport":
        details: dict[str, Any] = {
            "severity": highest_severity(findings),
            "findings": findings,
            "suggested_resolution": suggest_resolution(findings),
        }
        if existing is not None:
            details["server_entity"] = existing.to_dict()
        return cls(
            has_conflict=True,
            conflict_type=conflict_type.value,
            details=details,
            payload=payload,
            existing=existing,
        )


class ConflictDetector:
    """Decides whether replaying a queue item is safe."""

    def __init__(self, registry: CollaboratorRegistry):
        self.registry = registry

    def detect(self, db: Session, item: OfflineQueueItem) -> ConflictReport:
        """Classify ``item`` against current server state.

        Raises DependencyPendingError (transient) when the item references an
        entity that has not reached the server yet.
        """
        try:
            checksum.ensure_intact(item)
        except PayloadIntegrityError as e:
            logger.warning(f"Checksum mismatch on queue item {item.queue_id}")
            return ConflictReport.flagged(ConflictKind.INTEGRITY, [finding(
                "checksum_mismatch",
                "Payload changed after it was queued",
                CRITICAL,
                field_name="content_checksum",
                expected=e.expected,
                actual=e.actual,
            )])

        collaborator = self.registry.get(item.operation_kind)
        try:
            payload = collaborator.parse(item.payload)
        except QueueValidationError as e:
            return ConflictReport.flagged(ConflictKind.VALIDATION, [finding(
                "invalid_payload",
                e.message,
                CRITICAL,
            )])

        existing = collaborator.find_existing(db, payload)
        if existing is not None:
            return ConflictReport.flagged(
                ConflictKind.DUPLICATE,
                [finding(
                    f"duplicate_{collaborator.entity_name}",
                    f"{collaborator.entity_name} '{collaborator.natural_key(payload)}' already exists on the server",
                    collaborator.duplicate_severity,
                )],
                payload=payload,
                existing=existing,
            )

        mismatches = collaborator.check_dependencies(db, payload)
        if mismatches:
            return ConflictReport.flagged(ConflictKind.DATA_MISMATCH, mismatches, payload=payload)

        violations = collaborator.validate(db, payload)
        if violations:
            return ConflictReport.flagged(ConflictKind.VALIDATION, violations, payload=payload)

        return ConflictReport.clear(payload)
