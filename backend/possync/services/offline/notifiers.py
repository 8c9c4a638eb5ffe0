"""Side-channel notified of sync outcomes.

The orchestrator calls the notifier after every item outcome and once at the
end of a session. The default implementation writes log lines; deployments
can plug in push notifications or dashboards by subclassing SyncNotifier.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any

from possync.models.offline_queue import OfflineQueueItem

logger = logging.getLogger(__name__)


class SyncNotifier(ABC):
    """Base interface for sync outcome notifications."""

    @abstractmethod
    def item_processed(self, session_id: str, item: OfflineQueueItem, outcome: str) -> None:
        """Called after each item with outcome synced/failed/conflict/skipped."""

    @abstractmethod
    def session_finished(self, result: Any) -> None:
        """Called once the session has been finalized."""


class LoggingSyncNotifier(SyncNotifier):
    def item_processed(self, session_id: str, item: OfflineQueueItem, outcome: str) -> None:
        if outcome == "synced":
            logger.info(
                f"[{session_id}] {item.operation_kind} {item.queue_id} synced as {item.server_reference or item.server_id}"
            )
        elif outcome == "conflict":
            logger.warning(f"[{session_id}] {item.operation_kind} {item.queue_id} conflict: {item.conflict_kind}")
        elif outcome == "failed":
            logger.warning(
                f"[{session_id}] {item.operation_kind} {item.queue_id} failed "
                f"(attempt {item.attempts}/{item.max_attempts}): {item.error_message}"
            )
        else:
            logger.info(f"[{session_id}] {item.queue_id} {outcome}")

    def session_finished(self, result: Any) -> None:
        logger.info(
            f"Sync session {result.session_id} for {result.device_id} {result.status}: "
            f"{result.items_processed} synced, {result.items_failed} failed, "
            f"{result.items_conflicted} conflicts, {result.items_skipped} skipped"
        )

