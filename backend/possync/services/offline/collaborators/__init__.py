"""Operation collaborators that apply replayed payloads to the server ledger."""

from possync.services.offline.collaborators.base import (
    ApplyContext,
    ApplyResult,
    MergeResult,
    OperationCollaborator,
    ServerEntityRef,
)
from possync.services.offline.collaborators.registry import CollaboratorRegistry, default_registry

__all__ = [
    "ApplyContext",
    "ApplyResult",
    "MergeResult",
    "OperationCollaborator",
    "ServerEntityRef",
    "CollaboratorRegistry",
    "default_registry",
]
