"""Tests for conflict detection."""

from decimal import Decimal

import pytest

from possync.models.ledger import Payment, Sale
from possync.services.offline.conflict_detector import (
    ConflictDetector,
    highest_severity,
    suggest_resolution,
)
from possync.services.offline.exceptions import DependencyPendingError

from conftest import DEVICE, sale_payload


@pytest.fixture
def detector(registry):
    return ConflictDetector(registry)


def _server_sale(db, reference="OFF-0001", total="9.00", status="completed"):
    sale = Sale(
        offline_reference=reference,
        sale_number="SALE-000042",
        items=[{"product_id": 1, "quantity": "2", "unit_price": "4.50"}],
        total_amount=Decimal(total),
        status=status,
    )
    db.add(sale)
    db.commit()
    return sale


class TestSeverityHelpers:
    def test_highest_severity(self):
        assert highest_severity([]) == "low"
        assert highest_severity([{"severity": "medium"}, {"severity": "critical"}, {"severity": "high"}]) == "critical"

    def test_suggestions_follow_severity(self):
        assert suggest_resolution([{"severity": "critical"}])["strategy"] == "manual"
        assert suggest_resolution([{"severity": "high"}])["strategy"] == "skip"
        assert suggest_resolution([{"severity": "medium"}])["strategy"] == "keep_offline"


class TestDetect:
    def test_clean_sale(self, detector, store, db_session, product):
        item = store.enqueue(DEVICE, "sale", sale_payload())
        report = detector.detect(db_session, item)
        assert not report.has_conflict
        assert report.conflict_type == "none"
        assert report.payload.offline_reference == "OFF-0001"

    def test_tampered_payload_is_integrity_conflict(self, detector, store, db_session, product):
        item = store.enqueue(DEVICE, "sale", sale_payload())
        item.payload = sale_payload(quantity="20")

        report = detector.detect(db_session, item)
        assert report.conflict_type == "integrity"
        assert report.details["severity"] == "critical"
        assert report.details["findings"][0]["code"] == "checksum_mismatch"
        assert report.details["suggested_resolution"]["strategy"] == "manual"

    def test_integrity_checked_before_duplicate(self, detector, store, db_session, product):
        _server_sale(db_session)
        item = store.enqueue(DEVICE, "sale", sale_payload())
        item.content_checksum = "0" * 64
        assert detector.detect(db_session, item).conflict_type == "integrity"

    def test_duplicate_sale(self, detector, store, db_session, product):
        sale = _server_sale(db_session)
        item = store.enqueue(DEVICE, "sale", sale_payload())

        report = detector.detect(db_session, item)
        assert report.conflict_type == "duplicate"
        assert report.details["severity"] == "high"
        assert report.details["server_entity"]["server_id"] == sale.id
        assert report.details["server_entity"]["server_reference"] == "SALE-000042"
        assert report.existing.server_id == sale.id

    def test_duplicate_payment_is_critical(self, detector, store, db_session, product):
        sale = _server_sale(db_session)
        db_session.add(Payment(transaction_reference="TX-1", sale_id=sale.id, amount=Decimal("9.00"), method="card"))
        db_session.commit()
        item = store.enqueue(DEVICE, "payment", {
            "transaction_reference": "TX-1", "sale_reference": "OFF-0001", "amount": "9.00", "method": "card",
        })

        report = detector.detect(db_session, item)
        assert report.conflict_type == "duplicate"
        assert report.details["severity"] == "critical"
        assert report.details["suggested_resolution"]["strategy"] == "manual"

    def test_inactive_product_is_data_mismatch(self, detector, store, db_session, product):
        product.active = False
        db_session.commit()
        item = store.enqueue(DEVICE, "sale", sale_payload())

        report = detector.detect(db_session, item)
        assert report.conflict_type == "data_mismatch"
        assert report.details["findings"][0]["code"] == "product_inactive"

    def test_stock_level_drift_is_medium(self, detector, store, db_session, product):
        item = store.enqueue(DEVICE, "inventory_update", {
            "adjustment_reference": "ADJ-1", "product_id": product.id,
            "quantity_change": "-5", "expected_on_hand": "80",
        })
        report = detector.detect(db_session, item)
        assert report.conflict_type == "data_mismatch"
        assert report.details["severity"] == "medium"
        assert report.details["suggested_resolution"]["strategy"] == "keep_offline"

    def test_total_mismatch_is_validation(self, detector, store, db_session, product):
        item = store.enqueue(DEVICE, "sale", sale_payload(total="12.00"))
        report = detector.detect(db_session, item)
        assert report.conflict_type == "validation"
        codes = [f["code"] for f in report.details["findings"]]
        assert codes == ["total_mismatch"]

    def test_insufficient_stock(self, detector, store, db_session, product):
        item = store.enqueue(DEVICE, "sale", sale_payload(quantity="150"))
        report = detector.detect(db_session, item)
        assert report.conflict_type == "validation"
        assert report.details["findings"][0]["code"] == "insufficient_stock"

    def test_missing_product(self, detector, store, db_session):
        item = store.enqueue(DEVICE, "sale", sale_payload(product_id=999))
        report = detector.detect(db_session, item)
        assert report.conflict_type == "validation"
        assert report.details["severity"] == "critical"

    def test_payment_before_its_sale_is_pending(self, detector, store, db_session):
        item = store.enqueue(DEVICE, "payment", {
            "transaction_reference": "TX-1", "sale_reference": "OFF-0001", "amount": "9.00", "method": "card",
        })
        with pytest.raises(DependencyPendingError) as exc:
            detector.detect(db_session, item)
        assert exc.value.reference == "OFF-0001"

    def test_detection_never_writes(self, detector, store, db_session, product):
        item = store.enqueue(DEVICE, "sale", sale_payload())
        detector.detect(db_session, item)
        assert not db_session.new
        assert not db_session.dirty
        assert db_session.query(Sale).count() == 0
