"""Tests for the offline queue and sync API."""

from decimal import Decimal

from possync.db.base import utcnow
from possync.models.ledger import Product
from possync.models.offline_queue import SessionStatus, SyncSession

from conftest import DEVICE, sale_payload

BASE = "/api/v1/offline"


def _enqueue(client, headers, kind="sale", payload=None, **extra):
    body = {"device_id": DEVICE, "payload": payload if payload is not None else sale_payload(), **extra}
    return client.post(f"{BASE}/queue/{kind}", json=body, headers=headers)


class TestAuth:
    def test_requires_token(self, client):
        response = client.get(f"{BASE}/queue/pending")
        assert response.status_code == 401

    def test_rejects_garbage_token(self, client):
        response = client.get(f"{BASE}/queue/pending", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401

    def test_staff_cannot_resolve_conflicts(self, client, auth_headers):
        response = client.post(f"{BASE}/conflicts/Q-1/resolve", json={"strategy": "skip"}, headers=auth_headers)
        assert response.status_code == 403

    def test_staff_cannot_reset_or_purge(self, client, auth_headers):
        assert client.post(f"{BASE}/queue/Q-1/retry", headers=auth_headers).status_code == 403
        assert client.delete(f"{BASE}/queue/clear-synced", headers=auth_headers).status_code == 403

    def test_terminal_token_is_bound_to_its_device(self, client, terminal_headers):
        assert _enqueue(client, terminal_headers).status_code == 201

        other = client.post(
            f"{BASE}/queue/sale",
            json={"device_id": "POS-02", "payload": sale_payload()},
            headers=terminal_headers,
        )
        assert other.status_code == 403
        sync = client.post(f"{BASE}/sync", json={"device_id": "POS-02"}, headers=terminal_headers)
        assert sync.status_code == 403


class TestRateLimitKey:
    def _request(self, headers=None, query=b""):
        from starlette.requests import Request

        scope = {
            "type": "http",
            "method": "GET",
            "path": "/",
            "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
            "query_string": query,
            "client": ("10.1.1.1", 5000),
        }
        return Request(scope)

    def test_device_header_wins(self, auth_headers):
        from possync.core.rate_limit import get_rate_limit_key

        request = self._request({**auth_headers, "X-Device-ID": "POS-09"})
        assert get_rate_limit_key(request) == "device:POS-09"

    def test_device_query_param(self):
        from possync.core.rate_limit import get_rate_limit_key

        assert get_rate_limit_key(self._request(query=b"device_id=POS-03")) == "device:POS-03"

    def test_falls_back_to_user_then_ip(self, auth_headers):
        from possync.core.rate_limit import get_rate_limit_key

        assert get_rate_limit_key(self._request(auth_headers)) == "user:7"
        assert get_rate_limit_key(self._request()) == "10.1.1.1"


class TestQueueRoutes:
    def test_enqueue(self, client, auth_headers):
        response = _enqueue(client, auth_headers)

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["operation_kind"] == "sale"
        assert data["cashier_id"] == 7
        assert data["cashier_name"] == "Maria Cashier"
        assert data["priority"] == 5
        assert len(data["content_checksum"]) == 64
        assert data["metadata"]["item_count"] == 1
        assert data["is_exhausted"] is False

    def test_enqueue_is_idempotent_on_queue_id(self, client, auth_headers):
        first = _enqueue(client, auth_headers, queue_id="POS-01-Q-1")
        again = _enqueue(client, auth_headers, queue_id="POS-01-Q-1")
        assert first.json()["content_checksum"] == again.json()["content_checksum"]

        pending = client.get(f"{BASE}/queue/pending", headers=auth_headers).json()
        assert pending["total"] == 1

    def test_unknown_kind_uses_error_envelope(self, client, auth_headers):
        response = _enqueue(client, auth_headers, kind="refund")

        assert response.status_code == 400
        data = response.json()
        assert data["error"] == "QueueValidationError"
        assert "refund" in data["detail"]
        assert data["details"]["operation_kind"] == "refund"

    def test_empty_payload_rejected(self, client, auth_headers):
        response = _enqueue(client, auth_headers, payload={})
        assert response.status_code == 400

    def test_schema_errors_listed(self, client, auth_headers):
        response = _enqueue(client, auth_headers, kind="payment", payload={"transaction_reference": "TX-1"})
        assert response.status_code == 400
        fields = {e["field"] for e in response.json()["details"]["errors"]}
        assert {"sale_reference", "amount", "method"} <= fields

    def test_get_item_and_not_found(self, client, auth_headers):
        queue_id = _enqueue(client, auth_headers).json()["queue_id"]

        assert client.get(f"{BASE}/queue/{queue_id}", headers=auth_headers).json()["queue_id"] == queue_id
        missing = client.get(f"{BASE}/queue/NOPE", headers=auth_headers)
        assert missing.status_code == 404
        assert missing.json()["error"] == "QueueItemNotFoundError"

    def test_stats(self, client, auth_headers):
        _enqueue(client, auth_headers)
        stats = client.get(f"{BASE}/queue/stats", params={"device_id": DEVICE}, headers=auth_headers).json()
        assert stats["total"] == 1
        assert stats["by_status"]["pending"] == 1
        assert stats["due"] == 1

    def test_purge_as_manager(self, client, manager_headers):
        response = client.delete(
            f"{BASE}/queue/clear-synced", params={"older_than_days": 0}, headers=manager_headers
        )
        assert response.status_code == 200
        assert response.json() == {"deleted": 0, "older_than_days": 0, "device_id": None}


class TestSyncRoutes:
    def test_sync_applies_queue(self, client, auth_headers, product):
        queue_id = _enqueue(client, auth_headers).json()["queue_id"]

        response = client.post(f"{BASE}/sync", json={"device_id": DEVICE}, headers=auth_headers)

        assert response.status_code == 200
        session = response.json()
        assert session["status"] == "completed"
        assert session["items_processed"] == 1
        assert session["initiated_by"] == 7
        assert session["trigger"] == "manual"

        item = client.get(f"{BASE}/queue/{queue_id}", headers=auth_headers).json()
        assert item["status"] == "synced"
        assert item["server_reference"] == "SALE-000001"

    def test_history_stats_and_detail(self, client, auth_headers, product):
        _enqueue(client, auth_headers)
        session_id = client.post(f"{BASE}/sync", json={"device_id": DEVICE}, headers=auth_headers).json()["session_id"]

        history = client.get(f"{BASE}/sync/history", params={"device_id": DEVICE}, headers=auth_headers).json()
        assert [s["session_id"] for s in history["items"]] == [session_id]

        detail = client.get(f"{BASE}/sync/{session_id}", headers=auth_headers).json()
        assert detail["operation_stats"]["sale"]["synced"] == 1

        stats = client.get(f"{BASE}/sync/stats", headers=auth_headers).json()
        assert stats["total_sessions"] == 1
        assert stats["success_rate"] == 100.0

    def test_cancel_finished_session_conflicts(self, client, auth_headers):
        session_id = client.post(f"{BASE}/sync", json={"device_id": DEVICE}, headers=auth_headers).json()["session_id"]

        response = client.post(f"{BASE}/sync/{session_id}/cancel", headers=auth_headers)
        assert response.status_code == 409
        assert response.json()["error"] == "SessionAlreadyFinalizedError"

    def test_terminal_cannot_cancel_another_devices_session(self, client, db_session, terminal_headers, auth_headers):
        db_session.add(SyncSession(
            session_id="SYNC-POS02", device_id="POS-02", direction="upload", trigger="manual",
            started_at=utcnow(), status=SessionStatus.IN_PROGRESS.value,
        ))
        db_session.commit()

        denied = client.post(f"{BASE}/sync/SYNC-POS02/cancel", headers=terminal_headers)
        assert denied.status_code == 403
        assert client.get(f"{BASE}/sync/SYNC-POS02", headers=auth_headers).json()["status"] == "in_progress"

        allowed = client.post(f"{BASE}/sync/SYNC-POS02/cancel", headers=auth_headers)
        assert allowed.status_code == 200
        assert allowed.json()["status"] == "cancelled"

    def test_inventory_snapshot_lists_active_stock(self, client, db_session, terminal_headers, product):
        db_session.add(Product(sku="OLD-001", name="Retired blend", price=Decimal("3.00"), stock_quantity=Decimal("5"), active=False))
        db_session.commit()
        _enqueue(client, terminal_headers)
        client.post(f"{BASE}/sync", json={"device_id": DEVICE}, headers=terminal_headers)

        response = client.get(f"{BASE}/sync/inventory-snapshot", headers=terminal_headers)

        assert response.status_code == 200
        snapshot = response.json()
        assert snapshot["product_count"] == 1
        espresso = snapshot["products"][0]
        assert espresso["sku"] == "ESP-001"
        assert Decimal(espresso["stock_quantity"]) == Decimal("98")
        assert Decimal(espresso["price"]) == Decimal("4.50")
        assert snapshot["snapshot_time"]

    def test_inventory_snapshot_requires_token(self, client):
        assert client.get(f"{BASE}/sync/inventory-snapshot").status_code == 401

    def test_unknown_session(self, client, auth_headers):
        assert client.get(f"{BASE}/sync/SYNC-NOPE", headers=auth_headers).status_code == 404

    def test_invalid_trigger(self, client, auth_headers):
        response = client.post(f"{BASE}/sync", json={"device_id": DEVICE, "trigger": "cron"}, headers=auth_headers)
        assert response.status_code == 422


class TestConflictRoutes:
    def _duplicate(self, client, headers):
        _enqueue(client, headers, queue_id="Q-1")
        _enqueue(client, headers, queue_id="Q-2")
        client.post(f"{BASE}/sync", json={"device_id": DEVICE}, headers=headers)

    def test_list_and_resolve(self, client, auth_headers, manager_headers, product):
        self._duplicate(client, auth_headers)

        conflicts = client.get(f"{BASE}/conflicts", headers=auth_headers).json()
        assert [c["queue_id"] for c in conflicts["items"]] == ["Q-2"]
        assert conflicts["items"][0]["conflict_details"]["suggested_resolution"]["strategy"] == "skip"

        response = client.post(
            f"{BASE}/conflicts/Q-2/resolve",
            json={"strategy": "keep_online", "reason": "Double tap"},
            headers=manager_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "skipped"
        assert data["resolution_strategy"] == "keep_online"
        assert data["resolved_by"] == 2

        assert client.get(f"{BASE}/conflicts", headers=auth_headers).json()["total"] == 0

    def test_resolve_non_conflict(self, client, auth_headers, manager_headers):
        _enqueue(client, auth_headers, queue_id="Q-1")
        response = client.post(f"{BASE}/conflicts/Q-1/resolve", json={"strategy": "skip"}, headers=manager_headers)
        assert response.status_code == 409
        assert response.json()["error"] == "InvalidTransitionError"

    def test_retry_conflict_as_manager(self, client, auth_headers, manager_headers, product):
        self._duplicate(client, auth_headers)

        response = client.post(f"{BASE}/queue/Q-2/retry", headers=manager_headers)
        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["attempts"] == 0

    def test_unknown_strategy(self, client, manager_headers):
        response = client.post(f"{BASE}/conflicts/Q-1/resolve", json={"strategy": "coin_flip"}, headers=manager_headers)
        assert response.status_code == 422


class TestHealth:
    def test_liveness(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert len(response.headers["X-Request-ID"]) == 32

    def test_request_id_is_echoed(self, client, auth_headers):
        response = client.get(f"{BASE}/queue/pending", headers={**auth_headers, "X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"

    def test_readiness(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        data = response.json()
        assert data["checks"]["database"] == "healthy"
        assert set(data["queue"]) == {"due", "conflicts", "exhausted"}
        assert "offline_retention_purge" in data["scheduler"]
