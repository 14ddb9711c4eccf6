"""
Pytest configuration and fixtures
"""
import pytest
import json
import os
import sys
import time
from pathlib import Path
from typing import Generator
from unittest.mock import Mock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Add src to path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Set test environment variables before importing
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["ADMIN_API_KEY"] = "test-admin-key"
os.environ["ADMIN_USER_IDS"] = "admin-1,admin-2"
os.environ["SENIOR_ADMIN_USER_IDS"] = "senior-1"
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ["LOG_LEVEL"] = "WARNING"  # Reduce log noise in tests
os.environ.pop("STRIPE_SECRET_KEY", None)

# Import after setting env vars
from billing_reconciler.db.base import Base
from billing_reconciler.db.engine import enable_sqlite_savepoints, get_db
from billing_reconciler.db.models import Customer, Subscription, SubscriptionStatus, Payment, PaymentStatus
from billing_reconciler.policies import RetryPolicy, DisputePolicy
from billing_reconciler.services.event_verifier import VerifiedEvent, generate_signature_header
from billing_reconciler.services.notification_gateway import get_notification_gateway
from billing_reconciler.services.processor_client import ProcessorClient
from billing_reconciler.utils import from_timestamp

WEBHOOK_SECRET = "whsec_test_secret"

# 2026-01-15 12:00:00 UTC
BASE_TS = 1768478400


@pytest.fixture(scope="function")
def test_engine():
    """In-memory SQLite engine with SAVEPOINT support, fresh per test"""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )
    enable_sqlite_savepoints(engine)

    from billing_reconciler.db import models  # noqa: F401
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(test_engine) -> Generator[Session, None, None]:
    """Create a database session for each test"""
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def gateway(db_session):
    """Notifier/auditor gateway backed by the test session"""
    return get_notification_gateway(db_session)


@pytest.fixture
def processor_client():
    """Processor control client that always succeeds"""
    client = Mock(spec=ProcessorClient)
    client.pause_collection.return_value = {"paused": True}
    client.resume_collection.return_value = {"paused": False}
    client.create_refund.return_value = {"refund_id": "re_test_1", "status": "succeeded"}
    client.set_default_payment_method.return_value = {"subscription_id": "sub_test123", "status": "active"}
    return client


@pytest.fixture
def retry_policy():
    return RetryPolicy()


@pytest.fixture
def dispute_policy():
    return DisputePolicy(
        admin_user_ids=["admin-1", "admin-2"],
        senior_admin_user_ids=["senior-1"],
    )


@pytest.fixture
def customer(db_session) -> Customer:
    """Known customer linked to user-1"""
    customer = Customer(user_id="user-1", processor_customer_id="cus_test123", email="user1@example.com")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture
def subscription(db_session, customer) -> Subscription:
    """Active monthly subscription for the test customer"""
    subscription = Subscription(
        customer_id=customer.id,
        processor_subscription_id="sub_test123",
        processor_price_id="price_pro",
        status=SubscriptionStatus.ACTIVE.value,
        plan_name="pro",
        amount=150,
        currency="usd",
        interval="month",
        interval_count=1,
        current_period_start=from_timestamp(BASE_TS - 30 * 86400),
        current_period_end=from_timestamp(BASE_TS),
    )
    db_session.add(subscription)
    db_session.commit()
    return subscription


@pytest.fixture
def payment(db_session, customer) -> Payment:
    """Succeeded one-off payment of 600.00 USD"""
    payment = Payment(
        customer_id=customer.id,
        order_reference="appt-42",
        processor_payment_intent_id="pi_test123",
        amount=600,
        currency="usd",
        status=PaymentStatus.SUCCEEDED.value,
    )
    db_session.add(payment)
    db_session.commit()
    return payment


@pytest.fixture
def make_event():
    """Build a VerifiedEvent the way the verifier would"""
    counter = {"n": 0}

    def _make(event_type: str, obj: dict, event_id: str = None, created: int = BASE_TS) -> VerifiedEvent:
        counter["n"] += 1
        return VerifiedEvent(
            id=event_id or f"evt_test_{counter['n']}",
            type=event_type,
            payload=obj,
            created_at=from_timestamp(created),
        )

    return _make


def build_event_body(event_type: str, obj: dict, event_id: str = "evt_http_1", created: int = BASE_TS) -> bytes:
    """Serialized event envelope as the processor sends it"""
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": created,
        "livemode": False,
        "data": {"object": obj},
    }).encode()


def sign(body: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    return generate_signature_header(body, secret, timestamp=timestamp or int(time.time()))


@pytest.fixture
def app():
    from billing_reconciler.main import create_app
    return create_app()


@pytest.fixture
def client(app, db_session) -> TestClient:
    """Test client sharing the test session"""
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()
