"""
Shared pytest configuration for the TalentLedger API tests.

Settings are read from the environment at import time, so test defaults are
installed here before any application module is imported.
"""
import os
import sys

# Add project root to path FIRST
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.dependencies import get_stripe_gateway
from app.core.security import create_access_token
from app.db.base import Base
from app.db.session import get_db
from app.db import models  # noqa: F401
from app.db.models.organization import Organization
from app.db.models.user import User
from app.main import app
from app.services.credit_ledger import CreditLedger
from app.services.pricing_registry import PricingRegistry

from stripe_fixtures import FakeGateway


# Setup in-memory SQLite database for testing
TEST_DATABASE_URL = "sqlite:///:memory:"
test_engine = create_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


def override_get_db():
    """Override get_db dependency for testing."""
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture(scope="function")
def db():
    """Create a fresh database for each test."""
    Base.metadata.create_all(bind=test_engine)
    db = TestSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=test_engine)


@pytest.fixture
def organization(db):
    org = Organization(name="Acme Recruiting")
    db.add(org)
    db.commit()
    db.refresh(org)
    return org


@pytest.fixture
def other_organization(db):
    org = Organization(name="Globex Talent")
    db.add(org)
    db.commit()
    db.refresh(org)
    return org


@pytest.fixture
def member(db, organization):
    user = User(
        full_name="Test Recruiter",
        email="recruiter@example.com",
        role="member",
        organization_id=organization.id,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def admin_user(db, organization):
    user = User(
        full_name="Platform Admin",
        email="admin@example.com",
        role="super_admin",
        organization_id=organization.id,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def ledger(db):
    return CreditLedger(db)


@pytest.fixture
def pricing(db):
    registry = PricingRegistry(db)
    registry.initialize_defaults()
    return registry


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(db, gateway):
    """TestClient wired to the test database and the fake Stripe gateway."""
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_stripe_gateway] = lambda: gateway
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_headers(user):
    token = create_access_token({"sub": user.email})
    return {"Authorization": f"Bearer {token}"}
