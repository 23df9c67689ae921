"""
Root test configuration and fixtures.

Provides database, clock and factory fixtures shared by unit and
integration tests. Every test gets a fresh in-memory SQLite database.
"""

import tempfile
import pytest
import yaml
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Generator
from unittest.mock import MagicMock

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Day 10 of a membership that started on 2025-01-01 12:00 UTC
FIXED_NOW = datetime(2025, 1, 10, 12, 0, tzinfo=timezone.utc)
MEMBERSHIP_START = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

FACILITY_LAT = 51.4881
FACILITY_LNG = -0.0300

QR_SECRET = "test-qr-signing-secret-0123456789abcdef"


class FrozenClock:
    """Injectable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, now: datetime) -> datetime:
        self.now = now
        return self.now


@pytest.fixture
def clock():
    return FrozenClock(FIXED_NOW)


@pytest.fixture(scope="function")
def db_engine():
    """
    Create a fresh SQLite in-memory engine with all tables.

    Function scoped: services commit their own transactions, so isolation
    comes from a new database per test rather than a rolled-back outer
    transaction.
    """
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from gymaccess.db_base import Base
    import gymaccess.models  # noqa: F401 - registers all tables

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=db_engine,
    )
    session = SessionLocal()

    yield session

    session.close()


@pytest.fixture
def access_config():
    from gymaccess.config.access_control import AccessControlConfig

    return AccessControlConfig(
        facility_lat=FACILITY_LAT,
        facility_lng=FACILITY_LNG,
        max_distance_meters=100.0,
        qr_token_ttl_seconds=300,
        qr_signing_secret=QR_SECRET,
    )


@pytest.fixture
def make_plan(db_session):
    """Factory for MembershipPlan rows."""
    from gymaccess.models.plan import MembershipPlan

    def _make(name: str = "Monthly Unlimited", price: str = "30.00", duration_days: int = 30):
        plan = MembershipPlan(
            name=name,
            price=Decimal(price),
            duration_days=duration_days,
            access_level="standard",
        )
        db_session.add(plan)
        db_session.commit()
        return plan
    return _make


@pytest.fixture
def plan(make_plan):
    return make_plan()


@pytest.fixture
def make_membership(db_session, plan):
    """
    Factory for UserMembership rows.

    Defaults to a paid cash membership from 2025-01-01 12:00 for 30 days.
    """
    from gymaccess.models.membership import UserMembership

    def _make(
        user_id: str = "user-1",
        payment_method="cash",
        status: str = "active",
        payment_status: str = "paid",
        start_date: datetime = MEMBERSHIP_START,
        end_date: datetime = None,
        external_subscription_ref: str = None,
        cancelled_at: datetime = None,
        processor_synced_at: datetime = None,
        plan_id: str = None,
    ):
        membership = UserMembership(
            user_id=user_id,
            plan_id=plan_id or plan.id,
            payment_method=payment_method,
            status=status,
            payment_status=payment_status,
            start_date=start_date,
            end_date=end_date or start_date + timedelta(days=30),
            external_subscription_ref=external_subscription_ref,
            cancelled_at=cancelled_at,
            processor_synced_at=processor_synced_at,
        )
        db_session.add(membership)
        db_session.commit()
        return membership
    return _make


@pytest.fixture
def member():
    from gymaccess.auth.identity import AuthenticatedUser

    return AuthenticatedUser(user_id="user-1", email="member@example.com", email_verified=True)


@pytest.fixture
def make_subscription(plan):
    """Factory for StripeSubscription values as the client returns them."""
    from gymaccess.integrations.stripe.billing_client import StripeSubscription

    def _make(
        subscription_id: str = "sub_123",
        status: str = "active",
        user_id: str = "user-1",
        plan_id: str = None,
        current_period_end: datetime = None,
        cancel_at_period_end: bool = False,
        customer_id: str = "cus_123",
        created_at: datetime = None,
    ):
        metadata = {}
        if user_id:
            metadata["user_id"] = user_id
        metadata["plan_id"] = plan_id or plan.id
        return StripeSubscription(
            id=subscription_id,
            status=status,
            customer_id=customer_id,
            current_period_end=current_period_end or MEMBERSHIP_START + timedelta(days=30),
            cancel_at_period_end=cancel_at_period_end,
            created_at=created_at or MEMBERSHIP_START,
            metadata=metadata,
        )
    return _make


@pytest.fixture
def billing_client():
    """
    Mock StripeBillingClient.

    Async methods become AsyncMocks through spec=; tests set return values
    and assert on awaits.
    """
    from gymaccess.integrations.stripe.billing_client import StripeBillingClient

    client = MagicMock(spec=StripeBillingClient)
    client.list_customers.return_value = []
    client.list_subscriptions.return_value = []
    client.get_subscription.return_value = None
    return client


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "integration: mark test as API integration test")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Shared Config Fixtures
# =============================================================================


@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("access_control.yaml", {"facilityLat": 51.5})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
