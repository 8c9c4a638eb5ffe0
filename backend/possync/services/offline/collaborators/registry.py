"""Collaborator registry: one collaborator per operation kind."""

from typing import Iterable, Optional

from possync.models.offline_queue import OperationKind
from possync.services.offline.collaborators.base import OperationCollaborator


class CollaboratorRegistry:
    def __init__(self, collaborators: Optional[Iterable[OperationCollaborator]] = None):
        self._collaborators: dict[OperationKind, OperationCollaborator] = {}
        for collaborator in collaborators or ():
            self.register(collaborator)

    def register(self, collaborator: OperationCollaborator) -> None:
        self._collaborators[OperationKind(collaborator.kind)] = collaborator

    def get(self, kind) -> OperationCollaborator:
        try:
            return self._collaborators[OperationKind(kind)]
        except KeyError:
            raise LookupError(f"No collaborator registered for '{kind}'")

    def missing_kinds(self) -> list[OperationKind]:
        return [kind for kind in OperationKind if kind not in self._collaborators]

    def ensure_complete(self) -> None:
        missing = self.missing_kinds()
        if missing:
            names = ", ".join(kind.value for kind in missing)
            raise ValueError(f"Collaborator registry does not cover: {names}")

    def __contains__(self, kind) -> bool:
        return OperationKind(kind) in self._collaborators


def default_registry() -> CollaboratorRegistry:
    """Registry wired with the reference ledger collaborators."""
    from possync.services.offline.collaborators.inventory import InventoryUpdateCollaborator
    from possync.services.offline.collaborators.other import GenericOperationCollaborator
    from possync.services.offline.collaborators.payment import PaymentCollaborator
    from possync.services.offline.collaborators.receipt import ReceiptCollaborator
    from possync.services.offline.collaborators.sale import SaleCollaborator

    return CollaboratorRegistry([
        SaleCollaborator(),
        PaymentCollaborator(),
        ReceiptCollaborator(),
        InventoryUpdateCollaborator(),
        GenericOperationCollaborator(),
    ])
