"""Pytest configuration for storepulse integration tests

WHAT: Provides shared fixtures for HTTP endpoint and system-level tests
WHY: Ensures consistent test setup, database isolation, and fresh rate limiters
REFERENCES:
    - storepulse/main.py: FastAPI application
    - storepulse/database.py: Database configuration
    - storepulse/state.py: limiters and sync supervisor
"""

import json
import os
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

# Ensure backend is in path
import sys
from pathlib import Path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment (before any storepulse import reads it)
# Must be URL-safe base64-encoded 32-byte string (storepulse.security validates at import time)
os.environ.setdefault("TOKEN_ENCRYPTION_KEY", "MDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDAwMDA=")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("SHOPIFY_WEBHOOK_SECRET", "test-shopify-secret")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("ADMIN_SECRET_KEY", "test-admin-key")
os.environ.setdefault("SYNC_BACKEND", "inprocess")
os.environ.setdefault("RATE_LIMIT_BACKEND", "memory")

SHOPIFY_SECRET = os.environ["SHOPIFY_WEBHOOK_SECRET"]
STRIPE_SECRET = os.environ["STRIPE_WEBHOOK_SECRET"]
ADMIN_KEY = os.environ["ADMIN_SECRET_KEY"]
SHOP_DOMAIN = "test-store.myshopify.com"


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine(tmp_path):
    """File-backed SQLite so several sessions see each other's commits."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'storepulse-test.db'}",
        connect_args={"check_same_thread": False},
    )

    from storepulse.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_maker(test_db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture
def test_db_session(session_maker) -> Generator[Session, None, None]:
    session = session_maker()
    yield session
    session.rollback()
    session.close()


@pytest.fixture
def session_factory(session_maker):
    """Context-manager factory, shaped like database.get_sync_session."""

    @contextmanager
    def factory():
        session = session_maker()
        try:
            yield session
        finally:
            session.close()

    return factory


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture(autouse=True)
def fresh_limiters():
    """Every test starts with empty rate-limit counters."""
    from storepulse import state
    from storepulse.services.rate_limiter import InMemoryCounterStore

    state.configure_limiters(InMemoryCounterStore())
    yield
    state.limiters = {}


@pytest.fixture
def app(session_maker):
    """Create FastAPI test application."""
    from storepulse.main import create_app
    from storepulse.database import get_db

    test_app = create_app()

    # One session per request, like production
    def override_get_db():
        db = session_maker()
        try:
            yield db
        finally:
            db.close()

    test_app.dependency_overrides[get_db] = override_get_db

    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": ADMIN_KEY}


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def test_organization(test_db_session):
    from storepulse.models import Organization

    organization = Organization(name="Test Store Co")
    test_db_session.add(organization)
    test_db_session.commit()
    test_db_session.refresh(organization)
    return organization


@pytest.fixture
def test_organization_b(test_db_session):
    """Second organization (for isolation tests)."""
    from storepulse.models import Organization

    organization = Organization(name="Other Store Co")
    test_db_session.add(organization)
    test_db_session.commit()
    test_db_session.refresh(organization)
    return organization


def make_integration(db, organization, platform, account_id=None, token="secret-token", status=None):
    from storepulse.models import Integration, IntegrationStatusEnum
    from storepulse.security import encrypt_secret

    integration = Integration(
        organization_id=organization.id,
        platform=platform,
        platform_account_id=account_id,
        credentials_enc=encrypt_secret(token, context=f"{platform.value}:{account_id}"),
        status=status or IntegrationStatusEnum.active,
    )
    db.add(integration)
    db.commit()
    db.refresh(integration)
    return integration


@pytest.fixture
def shopify_integration(test_db_session, test_organization):
    from storepulse.models import PlatformEnum

    return make_integration(test_db_session, test_organization, PlatformEnum.shopify, SHOP_DOMAIN, "shpat_test")


@pytest.fixture
def stripe_integration(test_db_session, test_organization):
    from storepulse.models import PlatformEnum

    return make_integration(test_db_session, test_organization, PlatformEnum.stripe, "acct_test", "sk_test_123")


def add_points(db, integration, metric_type, *observations):
    """Insert DataPoints: observations are (value, datetime[, metadata])."""
    from storepulse.models import DataPoint

    for observation in observations:
        value, when = observation[0], observation[1]
        meta = observation[2] if len(observation) > 2 else {}
        db.add(DataPoint(
            integration_id=integration.id,
            metric_type=metric_type,
            value=Decimal(str(value)),
            meta=meta,
            date_recorded=when,
        ))
    db.commit()


# ============================================================================
# Webhook helpers
# ============================================================================

def shopify_delivery(payload, topic="orders/paid", secret=SHOPIFY_SECRET, raw=None):
    """(body, headers) for a signed Shopify delivery."""
    from storepulse.services.webhook_signatures import compute_shopify_hmac

    body = raw if raw is not None else json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "X-Shopify-Topic": topic,
        "X-Shopify-Shop-Domain": SHOP_DOMAIN,
        "X-Shopify-Hmac-SHA256": compute_shopify_hmac(body, secret),
    }
    return body, headers


def stripe_delivery(event, secret=STRIPE_SECRET, timestamp=None):
    """(body, headers) for a signed Stripe delivery."""
    from storepulse.services.webhook_signatures import compute_stripe_signature

    body = json.dumps(event).encode("utf-8")
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = compute_stripe_signature(body, timestamp, secret)
    return body, {"Content-Type": "application/json", "Stripe-Signature": f"t={timestamp},v1={signature}"}


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def shopify_order():
    return {
        "id": 820982911946154508,
        "order_number": 1001,
        "total_price": "100.00",
        "currency": "USD",
        "financial_status": "paid",
        "created_at": "2025-01-15T10:00:00-05:00",
    }
