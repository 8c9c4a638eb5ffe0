"""Errors raised by the offline queue and sync engine.

Every error carries the HTTP status the API layer renders it with, so route
handlers can let them propagate to the single registered exception handler.
"""

from typing import Any, Optional


class OfflineSyncError(Exception):
    """Base class for offline queue / sync errors."""

    status_code = 500

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class QueueValidationError(OfflineSyncError):
    """Malformed enqueue request: empty payload, unknown kind, schema errors."""

    status_code = 400


class PayloadIntegrityError(OfflineSyncError):
    """Stored payload no longer matches its checksum."""

    status_code = 409

    def __init__(self, queue_id: str, expected: str, actual: str):
        self.queue_id = queue_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Checksum mismatch for queue item {queue_id}",
            {"expected_checksum": expected, "actual_checksum": actual},
        )


class SyncConflictError(OfflineSyncError):
    """Replay is unsafe given current server state."""

    status_code = 409

    def __init__(self, conflict_type: str, details: Optional[dict[str, Any]] = None):
        self.conflict_type = conflict_type
        super().__init__(f"Sync conflict: {conflict_type}", details)


class TransientApplyError(OfflineSyncError):
    """Downstream failure that is expected to clear on retry."""

    status_code = 503


class DependencyPendingError(TransientApplyError):
    """A referenced entity has not reached the server yet."""

    def __init__(self, entity: str, reference: str):
        self.entity = entity
        self.reference = reference
        super().__init__(
            f"{entity} '{reference}' is not on the server yet",
            {"entity": entity, "reference": reference},
        )


class ExhaustedRetriesError(OfflineSyncError):
    """Item used up its attempts; only an operator reset makes it due again."""

    status_code = 409

    def __init__(self, attempts: int, max_attempts: int):
        self.attempts = attempts
        self.max_attempts = max_attempts
        super().__init__(
            f"Gave up after {attempts} of {max_attempts} attempts",
            {"attempts": attempts, "max_attempts": max_attempts},
        )


class ApplyRejectedError(OfflineSyncError):
    """Collaborator refused the payload on business grounds."""

    status_code = 422


class QueueItemNotFoundError(OfflineSyncError):
    status_code = 404

    def __init__(self, queue_id: str):
        self.queue_id = queue_id
        super().__init__(f"Queue item {queue_id} not found")


class SyncSessionNotFoundError(OfflineSyncError):
    status_code = 404

    def __init__(self, session_id: str):
        self.session_id = session_id
        super().__init__(f"Sync session {session_id} not found")


class InvalidTransitionError(OfflineSyncError):
    """Requested status change is not allowed from the current status."""

    status_code = 409

    def __init__(self, queue_id: str, current: str, target: str):
        self.queue_id = queue_id
        self.current = current
        self.target = target
        super().__init__(
            f"Cannot move queue item {queue_id} from '{current}' to '{target}'",
            {"current_status": current, "target_status": target},
        )


class MergeNotSupportedError(OfflineSyncError):
    status_code = 409

    def __init__(self, operation_kind: str):
        self.operation_kind = operation_kind
        super().__init__(f"Merge is not supported for '{operation_kind}' operations")


class SyncSessionError(OfflineSyncError):
    """The session could not be started or finalized."""

    status_code = 503


class SessionAlreadyFinalizedError(SyncSessionError):
    """Session records are append-only once finalized."""

    status_code = 409

    def __init__(self, session_id: str, status: str):
        self.session_id = session_id
        self.status = status
        super().__init__(
            f"Sync session {session_id} is already {status}",
            {"session_id": session_id, "status": status},
        )
