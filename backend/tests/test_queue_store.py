"""Tests for the offline queue store."""

from datetime import timedelta

import pytest

from possync.models.audit import AuditLogEntry
from possync.models.offline_queue import OfflineQueueItem, QueueStatus, SessionStatus, SyncSession
from possync.services.offline import checksum
from possync.services.offline.exceptions import (
    InvalidTransitionError,
    QueueItemNotFoundError,
    QueueValidationError,
)

from conftest import DEVICE, sale_payload


def _payment(reference="TX-1", sale_reference="OFF-0001", amount="9.00"):
    return {"transaction_reference": reference, "sale_reference": sale_reference, "amount": amount, "method": "card"}


class TestEnqueue:
    def test_enqueue_persists_pending_item_with_checksum(self, store, cashier):
        item = store.enqueue(DEVICE, "sale", sale_payload(), actor=cashier)

        assert item.status == QueueStatus.PENDING.value
        assert item.attempts == 0
        assert item.max_attempts == 5
        assert item.priority == 5
        assert item.cashier_id == 7
        assert item.cashier_name == "Maria Cashier"
        assert checksum.verify(item)
        assert item.item_metadata["item_count"] == 1
        assert item.item_metadata["total_amount"] == "9.00"

    def test_generated_queue_id_format(self, store, clock):
        item = store.enqueue("pos-01", "inventory_update", {
            "adjustment_reference": "ADJ-1", "product_id": 1, "quantity_change": "-2",
        })
        parts = item.queue_id.split("-")
        assert item.queue_id == item.queue_id.upper()
        assert item.queue_id.startswith("POS-01-INVENTORY_UPDATE-")
        assert len(parts[-1]) == 6
        assert item.priority == 4

    def test_kind_default_priorities(self, store):
        payment = store.enqueue(DEVICE, "payment", _payment())
        receipt = store.enqueue(DEVICE, "receipt", {
            "receipt_number": "R-1", "sale_reference": "OFF-0001", "total_amount": "9.00",
        })
        assert payment.priority == 7
        assert receipt.priority == 3

    def test_offline_timestamp_defaults_to_now(self, store, clock):
        item = store.enqueue(DEVICE, "sale", sale_payload())
        assert item.offline_timestamp == clock.now

    def test_empty_payload_rejected(self, store):
        with pytest.raises(QueueValidationError):
            store.enqueue(DEVICE, "sale", {})

    def test_unknown_kind_rejected(self, store):
        with pytest.raises(QueueValidationError) as exc:
            store.enqueue(DEVICE, "refund", sale_payload())
        assert "Unknown operation kind" in exc.value.message

    def test_schema_errors_are_reported_per_field(self, store):
        bad = sale_payload()
        bad["items"] = []
        with pytest.raises(QueueValidationError) as exc:
            store.enqueue(DEVICE, "sale", bad)
        assert exc.value.details["errors"][0]["field"] == "items"

    def test_unknown_fields_rejected(self, store):
        with pytest.raises(QueueValidationError):
            store.enqueue(DEVICE, "payment", {**_payment(), "tip": "1.00"})

    def test_priority_out_of_range(self, store):
        with pytest.raises(QueueValidationError):
            store.enqueue(DEVICE, "sale", sale_payload(), priority=11)

    def test_missing_device_rejected(self, store):
        with pytest.raises(QueueValidationError):
            store.enqueue("", "sale", sale_payload())

    def test_reenqueue_same_content_is_idempotent(self, store, db_session):
        first = store.enqueue(DEVICE, "sale", sale_payload(), queue_id="Q-1")
        again = store.enqueue(DEVICE, "sale", sale_payload(), queue_id="Q-1")

        assert again.id == first.id
        assert db_session.query(OfflineQueueItem).count() == 1

    def test_reenqueue_different_content_rejected(self, store):
        store.enqueue(DEVICE, "sale", sale_payload(), queue_id="Q-1")
        with pytest.raises(QueueValidationError):
            store.enqueue(DEVICE, "sale", sale_payload(total="10.00"), queue_id="Q-1")


class TestFetchDue:
    def test_priority_then_age_ordering(self, store, clock):
        first = store.enqueue(DEVICE, "sale", sale_payload("A"), priority=5)
        clock.advance(seconds=1)
        urgent = store.enqueue(DEVICE, "sale", sale_payload("B"), priority=9)
        clock.advance(seconds=1)
        last = store.enqueue(DEVICE, "sale", sale_payload("C"), priority=5)

        due = store.fetch_due(DEVICE)
        assert [i.queue_id for i in due] == [urgent.queue_id, first.queue_id, last.queue_id]

    def test_offline_timestamp_not_arrival_order(self, store, clock):
        late = store.enqueue(DEVICE, "sale", sale_payload("A"), offline_timestamp=clock.now)
        early = store.enqueue(DEVICE, "sale", sale_payload("B"), offline_timestamp=clock.now - timedelta(hours=1))
        assert [i.queue_id for i in store.fetch_due(DEVICE)] == [early.queue_id, late.queue_id]

    def test_scoped_to_device_and_limited(self, store):
        for n in range(3):
            store.enqueue(DEVICE, "sale", sale_payload(f"A{n}"))
        store.enqueue("POS-02", "sale", sale_payload("B"))

        assert len(store.fetch_due(DEVICE)) == 3
        assert len(store.fetch_due(DEVICE, limit=2)) == 2
        assert len(store.fetch_due()) == 4
        assert store.count_due(DEVICE) == 3
        assert store.devices_with_due_work() == [DEVICE, "POS-02"]

    def test_failed_item_is_gated_by_backoff(self, store, clock):
        item = store.enqueue(DEVICE, "sale", sale_payload())
        store.mark_syncing(item.queue_id)
        store.mark_failed(item.queue_id, {"message": "timeout"})

        assert store.fetch_due(DEVICE) == []
        clock.advance(seconds=2)
        assert [i.queue_id for i in store.fetch_due(DEVICE)] == [item.queue_id]

    def test_exhausted_item_is_never_due(self, store, clock):
        item = store.enqueue(DEVICE, "sale", sale_payload(), max_attempts=1)
        store.mark_syncing(item.queue_id)
        store.mark_failed(item.queue_id, {"message": "timeout"})

        clock.advance(days=1)
        assert store.fetch_due(DEVICE) == []
        assert [i.queue_id for i in store.get_exhausted(DEVICE)] == [item.queue_id]


class TestTransitions:
    def test_claim_is_exclusive(self, store):
        item = store.enqueue(DEVICE, "sale", sale_payload())
        assert store.claim(item.queue_id, "SYNC-A") is True
        assert store.claim(item.queue_id, "SYNC-B") is False

        claimed = store.get(item.queue_id)
        assert claimed.status == QueueStatus.SYNCING.value
        assert claimed.sync_session_id == "SYNC-A"

    def test_mark_failed_schedules_backoff(self, store, clock):
        item = store.enqueue(DEVICE, "sale", sale_payload())
        store.mark_syncing(item.queue_id)
        failed = store.mark_failed(item.queue_id, {"message": "printer offline"})

        assert failed.status == QueueStatus.FAILED.value
        assert failed.attempts == 1
        assert failed.not_before == clock.now + timedelta(seconds=2)
        assert failed.error_message == "printer offline"

    def test_backoff_gaps_grow_with_each_failure(self, store, clock, retry_policy):
        item = store.enqueue(DEVICE, "sale", sale_payload(), max_attempts=4)
        gaps = []
        for _ in range(3):
            store.mark_syncing(item.queue_id)
            item = store.mark_failed(item.queue_id, {"message": "timeout"})
            gaps.append(item.not_before - clock.now)
            clock.now = item.not_before

        assert gaps == [timedelta(seconds=2), timedelta(seconds=4), timedelta(seconds=8)]
        assert not retry_policy.should_give_up(item.attempts, item.max_attempts)

        store.mark_syncing(item.queue_id)
        item = store.mark_failed(item.queue_id, {"message": "timeout"})
        assert item.attempts == item.max_attempts == 4
        assert retry_policy.should_give_up(item.attempts, item.max_attempts)
        assert item.is_exhausted
        assert item.not_before is None

    def test_mark_failed_gives_up_after_max_attempts(self, store, clock):
        item = store.enqueue(DEVICE, "sale", sale_payload(), max_attempts=2)
        for _ in range(2):
            clock.advance(minutes=10)
            store.mark_syncing(item.queue_id)
            item = store.mark_failed(item.queue_id, {"message": "timeout"})

        assert item.attempts == 2
        assert item.is_exhausted
        assert item.not_before is None
        assert item.error_details["exhausted"] is True

    def test_synced_is_terminal(self, store):
        item = store.enqueue(DEVICE, "sale", sale_payload())
        store.mark_syncing(item.queue_id)
        store.mark_synced(item.queue_id, 10, "SALE-000010")

        with pytest.raises(InvalidTransitionError):
            store.mark_failed(item.queue_id, {"message": "late"})
        with pytest.raises(InvalidTransitionError):
            store.reset_for_retry(item.queue_id)

    def test_pending_cannot_jump_to_synced(self, store):
        item = store.enqueue(DEVICE, "sale", sale_payload())
        with pytest.raises(InvalidTransitionError):
            store.mark_synced(item.queue_id, 1)

    def test_reset_for_retry_clears_bookkeeping_and_audits(self, store, db_session, manager):
        item = store.enqueue(DEVICE, "sale", sale_payload(), max_attempts=1)
        store.mark_syncing(item.queue_id)
        store.mark_failed(item.queue_id, {"message": "timeout"})

        reset = store.reset_for_retry(item.queue_id, actor=manager)
        assert reset.status == QueueStatus.PENDING.value
        assert reset.attempts == 0
        assert reset.not_before is None
        assert reset.error_message is None

        entry = db_session.query(AuditLogEntry).filter_by(action="reset_retry").one()
        assert entry.entity_id == item.queue_id
        assert entry.user_id == manager.id
        assert entry.details["previous_status"] == "failed"

    def test_reset_from_conflict(self, store):
        item = store.enqueue(DEVICE, "sale", sale_payload())
        store.mark_syncing(item.queue_id)
        store.mark_conflict(item.queue_id, "duplicate", {"severity": "high"})

        reset = store.reset_for_retry(item.queue_id)
        assert reset.status == QueueStatus.PENDING.value
        assert reset.conflict_kind is None

    def test_unknown_item(self, store):
        with pytest.raises(QueueItemNotFoundError):
            store.get("NOPE")


class TestStaleClaims:
    def test_old_claim_is_released(self, store, db_session, clock):
        session = SyncSession(session_id="SYNC-LIVE", device_id=DEVICE, started_at=clock.now,
                              status=SessionStatus.IN_PROGRESS.value)
        db_session.add(session)
        db_session.commit()
        item = store.enqueue(DEVICE, "sale", sale_payload())
        store.claim(item.queue_id, "SYNC-LIVE")

        assert store.reconcile_stale_claims(DEVICE, timeout_seconds=300) == 0
        clock.advance(seconds=301)
        assert store.reconcile_stale_claims(DEVICE, timeout_seconds=300) == 1

        released = store.get(item.queue_id)
        assert released.status == QueueStatus.FAILED.value
        assert released.attempts == 0
        assert [i.queue_id for i in store.fetch_due(DEVICE)] == [item.queue_id]

    def test_claim_of_finished_session_is_released(self, store, db_session, clock):
        session = SyncSession(session_id="SYNC-DONE", device_id=DEVICE, started_at=clock.now,
                              status=SessionStatus.FAILED.value)
        db_session.add(session)
        db_session.commit()
        item = store.enqueue(DEVICE, "sale", sale_payload())
        store.claim(item.queue_id, "SYNC-DONE")

        assert store.reconcile_stale_claims(DEVICE, timeout_seconds=300) == 1


class TestStatsAndPurge:
    def test_stats(self, store, clock):
        a = store.enqueue(DEVICE, "sale", sale_payload("A"), offline_timestamp=clock.now - timedelta(hours=2))
        b = store.enqueue(DEVICE, "payment", _payment())
        store.mark_syncing(b.queue_id)
        store.mark_conflict(b.queue_id, "duplicate", {})

        stats = store.stats(DEVICE)
        assert stats["total"] == 2
        assert stats["by_status"]["pending"] == 1
        assert stats["by_status"]["conflict"] == 1
        assert stats["by_kind"] == {"sale": 1, "payment": 1}
        assert stats["conflicts"] == 1
        assert stats["due"] == 1
        assert stats["oldest_pending"] == a.offline_timestamp

    def test_purge_only_touches_old_synced_items(self, store, db_session, clock):
        old = store.enqueue(DEVICE, "sale", sale_payload("A"))
        store.mark_syncing(old.queue_id)
        store.mark_synced(old.queue_id, 1, "SALE-000001")
        pending = store.enqueue(DEVICE, "sale", sale_payload("B"))

        clock.advance(days=10)
        recent = store.enqueue(DEVICE, "sale", sale_payload("C"))
        store.mark_syncing(recent.queue_id)
        store.mark_synced(recent.queue_id, 2, "SALE-000002")

        assert store.purge_synced(older_than_days=7) == 1
        remaining = {i.queue_id for i in db_session.query(OfflineQueueItem)}
        assert remaining == {pending.queue_id, recent.queue_id}
        assert db_session.query(AuditLogEntry).filter_by(action="purge_synced").count() == 1

    def test_purge_rejects_negative_window(self, store):
        with pytest.raises(QueueValidationError):
            store.purge_synced(-1)
