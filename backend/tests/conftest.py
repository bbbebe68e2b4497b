"""Shared pytest fixtures for test suite"""
import os
import sys
from pathlib import Path
from typing import Generator
from unittest.mock import AsyncMock, Mock, patch

import fakeredis
import pytest

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("STRIPE_MONTHLY_PRICE_ID", "price_monthly")
os.environ.setdefault("STRIPE_QUARTERLY_PRICE_ID", "price_quarterly")
os.environ.setdefault("STRIPE_ANNUAL_PRICE_ID", "price_annual")
os.environ.setdefault("ENVIRONMENT", "test")

# Add backend directory to Python path
backend_dir = Path(__file__).parent.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.main import app
from app.db.session import get_db
from app.db import redis as redis_module
from app.models import Base
from app.models.user import User
from app.services.idempotency import RedisIdempotencyCache
from app.services.reconciliation import ReconciliationController
from app.services.stripe_gateway import get_checkout_gateway

from stripe_payloads import FakeCheckoutGateway


# SQLite in-memory database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"

# Create test engine with StaticPool for in-memory database
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

# Create test session factory
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)

WEBHOOK_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]


@pytest.fixture(scope="function")
def db_session() -> Generator[Session, None, None]:
    """Create a fresh SQLite in-memory database session for each test"""
    Base.metadata.create_all(bind=test_engine)
    session = TestSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture(scope="function", autouse=True)
def mock_redis():
    """Isolated fakeredis server behind the lazy Redis client"""
    fake_redis = fakeredis.FakeStrictRedis(server=fakeredis.FakeServer(), decode_responses=True)
    with patch.object(redis_module, "_client", fake_redis):
        yield fake_redis


@pytest.fixture(scope="function")
def fake_gateway() -> FakeCheckoutGateway:
    return FakeCheckoutGateway()


@pytest.fixture(scope="function")
def controller(fake_gateway, mock_redis) -> ReconciliationController:
    return ReconciliationController(fake_gateway, RedisIdempotencyCache())


@pytest.fixture(scope="function")
def client(db_session: Session, mock_redis, fake_gateway) -> Generator[TestClient, None, None]:
    """FastAPI test client with test database, fakeredis and the fake gateway"""

    def override_get_db():
        try:
            yield db_session
        finally:
            pass  # Don't close session here, handled by fixture

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_checkout_gateway] = lambda: fake_gateway

    try:
        # No telemetry, schema creation or background loops in tests
        with patch("app.main.initialize_otel", return_value=False):
            with patch("app.main.init_db"):
                with patch("app.tasks.cache_resync.resync_worker_task", new=AsyncMock()):
                    with patch("app.tasks.scheduler.expiry_scheduler_task", new=AsyncMock()):
                        with TestClient(app) as test_client:
                            yield test_client
    finally:
        app.dependency_overrides.clear()


def _create_user(db: Session, username: str, email: str) -> User:
    user = User(username=username, email=email)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture(scope="function")
def test_user(db_session: Session) -> User:
    return _create_user(db_session, "parieur", "parieur@example.com")


@pytest.fixture(scope="function")
def test_user_2(db_session: Session) -> User:
    """Second user for ownership tests"""
    return _create_user(db_session, "parieur2", "parieur2@example.com")


@pytest.fixture(scope="function")
def authenticated_client(client: TestClient, test_user: User, mock_redis) -> TestClient:
    """Client carrying a session cookie for test_user (sessions come from the auth service)"""
    session_id = "test-session-" + str(test_user.id)
    mock_redis.setex(f"session:{session_id}", 2592000, str(test_user.id))
    client.cookies.set("session_id", session_id)
    return client


@pytest.fixture(scope="function", autouse=True)
def auto_mock_stripe():
    """Automatically mock Stripe writes for all tests to prevent creating real objects"""
    with patch("app.services.stripe_service.stripe") as mock_stripe_module:
        mock_stripe_module.Customer.create = Mock(return_value=Mock(id="cus_test123"))
        mock_stripe_module.checkout.Session.create = Mock(return_value=Mock(
            id="cs_test123",
            url="https://checkout.stripe.com/test"
        ))
        mock_stripe_module.Subscription.modify = Mock(return_value=Mock(id="sub_test123"))
        yield mock_stripe_module
