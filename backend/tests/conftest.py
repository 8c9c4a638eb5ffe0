"""Pytest configuration and fixtures."""

import os
import tempfile

# The app module builds its engine at import time; point it at a throwaway
# file so the lifespan and readiness probe never touch a real database.
_TEST_DIR = tempfile.mkdtemp(prefix="possync-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TEST_DIR}/app.db"
os.environ["SECRET_KEY"] = "test-secret-key-for-the-offline-sync-suite-0123456789"
os.environ["OFFLINE_AUTO_SYNC_INTERVAL_SECONDS"] = "0"

import pytest
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Generator, Optional

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from possync.core.rbac import UserRole
from possync.core.security import create_access_token
from possync.db.base import Base
from possync.db.session import get_db
from possync.main import app
# Import all models to ensure they're registered with Base.metadata
from possync.models import *
from possync.models.ledger import Product
from possync.services.offline.actor import Actor
from possync.services.offline.collaborators.registry import default_registry
from possync.services.offline.collaborators.sale import SaleCollaborator
from possync.services.offline.conflict_resolver import ConflictResolver
from possync.services.offline.exceptions import TransientApplyError
from possync.services.offline.notifiers import SyncNotifier
from possync.services.offline.queue_store import QueueStore
from possync.services.offline.retry_policy import RetryPolicy
from possync.services.offline.sync_orchestrator import SyncOrchestrator

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"

DEVICE = "POS-01"


class FakeClock:
    """Deterministic clock; tests move time forward explicitly."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class RecordingNotifier(SyncNotifier):
    def __init__(self):
        self.items = []
        self.sessions = []

    def item_processed(self, session_id, item, outcome):
        self.items.append((item.queue_id, outcome))

    def session_finished(self, result):
        self.sessions.append(result)


class FlakySaleCollaborator(SaleCollaborator):
    """Sale collaborator whose downstream fails the first ``failures`` applies."""

    def __init__(self, failures: int = 1):
        self.failures = failures
        self.calls = 0

    def apply(self, db, payload, context):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientApplyError("Fiscal printer unavailable")
        return super().apply(db, payload, context)


def sale_payload(reference: str = "OFF-0001", product_id: int = 1, quantity: str = "2", unit_price: str = "4.50", total: Optional[str] = None) -> dict:
    total = total if total is not None else str(Decimal(quantity) * Decimal(unit_price))
    return {
        "offline_reference": reference,
        "items": [{"product_id": product_id, "quantity": quantity, "unit_price": unit_price, "name": "Espresso"}],
        "total_amount": total,
        "payment_method": "cash",
        "order_type": "takeaway",
    }


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """Create a test database session."""
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=db_engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(cap_seconds=300, max_attempts=5)


@pytest.fixture
def registry():
    return default_registry()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def store(db_session, clock, retry_policy) -> QueueStore:
    return QueueStore(db_session, retry_policy=retry_policy, clock=clock)


@pytest.fixture
def orchestrator(db_session, registry, notifier, retry_policy, clock) -> SyncOrchestrator:
    return SyncOrchestrator(
        db_session,
        registry=registry,
        notifier=notifier,
        retry_policy=retry_policy,
        clock=clock,
        batch_size=50,
        stale_claim_seconds=300,
    )


@pytest.fixture
def resolver(db_session, registry, retry_policy, clock) -> ConflictResolver:
    return ConflictResolver(db_session, registry=registry, retry_policy=retry_policy, clock=clock)


@pytest.fixture
def cashier() -> Actor:
    return Actor(id=7, name="Maria Cashier")


@pytest.fixture
def manager() -> Actor:
    return Actor(id=2, name="Ivan Manager", ip_address="10.0.0.5")


@pytest.fixture
def product(db_session: Session) -> Product:
    """Create a tracked product with stock."""
    product = Product(
        sku="ESP-001",
        name="Espresso",
        price=Decimal("4.50"),
        stock_quantity=Decimal("100"),
        track_inventory=True,
        active=True,
    )
    db_session.add(product)
    db_session.commit()
    db_session.refresh(product)
    return product


@pytest.fixture(scope="function")
def client(db_session: Session) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # Disable rate limiters during tests to avoid flaky failures
    from possync.core.rate_limit import limiter as global_limiter
    global_limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    global_limiter.enabled = True
    app.dependency_overrides.clear()


def _token(user_id: int, email: str, role: UserRole, full_name: str, **claims) -> str:
    return create_access_token(
        {"sub": str(user_id), "email": email, "role": role.value, "full_name": full_name, **claims}
    )


@pytest.fixture
def auth_headers() -> dict:
    """Staff (cashier) authentication headers."""
    token = _token(7, "maria@example.com", UserRole.STAFF, "Maria Cashier")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def manager_headers() -> dict:
    token = _token(2, "ivan@example.com", UserRole.MANAGER, "Ivan Manager")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def terminal_headers() -> dict:
    """Token bound to the test device."""
    token = _token(7, "maria@example.com", UserRole.STAFF, "Maria Cashier", device_id=DEVICE)
    return {"Authorization": f"Bearer {token}"}
