import sys
import uuid
from datetime import UTC, datetime, timedelta
from types import ModuleType
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import DateTime, create_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

# Create a test engine BEFORE any app imports
_test_engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# Create a mock for the app.db module that uses our test engine
class TestBase(DeclarativeBase):
    pass


_TestSessionLocal = sessionmaker(bind=_test_engine, autoflush=False, autocommit=False)


class TimestampMixin:
    """Mixin that adds created_at / updated_at columns to any model."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )


mock_db_module = ModuleType("app.db")
mock_db_module.Base = TestBase
mock_db_module.TimestampMixin = TimestampMixin
mock_db_module.SessionLocal = _TestSessionLocal
mock_db_module.get_engine = lambda: _test_engine

# Also mock app.config to prevent .env loading
mock_config_module = ModuleType("app.config")


class MockSettings:
    database_url = "sqlite+pysqlite:///:memory:"
    redis_url = "redis://localhost:6379/0"
    db_pool_size = 5
    db_max_overflow = 10
    db_pool_timeout = 30
    db_pool_recycle = 1800
    waafipay_base_url = "https://waafipay.test/asm"
    waafipay_merchant_uid = "M0000001"
    waafipay_api_user_id = "1000001"
    waafipay_api_key = "API-test-key"
    waafipay_webhook_url = "https://billing.test/billing/callbacks/waafipay"
    gateway_timeout_seconds = 5.0
    gateway_max_retries = 2
    gateway_retry_initial_delay = 1.0
    waafipay_status_service = "API_GETTRANSACTIONINFO"
    billing_currency = "USD"
    data_retention_days = 30
    trial_reminder_days = 2
    expiry_reminder_days = 5
    renewal_lookahead_days = 3
    pending_grace_days = 3
    pending_payment_timeout_minutes = 15
    pending_payment_max_age_hours = 24
    notify_on_offline_rejection = True
    lookup_cache_max_size = 128
    lookup_cache_ttl_seconds = 60
    smtp_host = "localhost"
    smtp_port = 587
    smtp_username = ""
    smtp_password = ""
    smtp_use_tls = False
    smtp_from_email = "billing@example.com"
    smtp_from_name = "Billing"
    sweep_expired_interval = 3600
    reminder_interval = 86400
    auto_renewal_interval = 86400
    reconcile_interval = 600
    cors_origins = ""


mock_config_module.settings = MockSettings()
mock_config_module.Settings = MockSettings
mock_config_module.validate_settings = lambda s: []

# Insert mocks before any app imports
sys.modules["app.config"] = mock_config_module
sys.modules["app.db"] = mock_db_module

# Now import the models - they'll use our mocked db module
from app.models.billing import (  # noqa: E402
    DiscountApplicability,
    DiscountCode,
    DiscountType,
    PlanType,
)
from app.models.tenant import AccountRole, Tenant, TenantAccount  # noqa: E402

# Create all tables
TestBase.metadata.create_all(_test_engine)

# Re-export Base for compatibility
Base = TestBase


class FrozenClock:
    """Injectable clock; call it for ``now`` and ``advance`` it between steps."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture()
def db_session(engine):
    """Create a database session for testing.

    Uses the same connection as the StaticPool engine to ensure
    all operations see the same data.
    """
    Session = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = Session()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _clean_tables(engine):
    yield
    with engine.begin() as conn:
        for table in reversed(TestBase.metadata.sorted_tables):
            conn.execute(table.delete())


def _unique_email(prefix: str = "shop") -> str:
    return f"{prefix}-{uuid.uuid4().hex}@example.com"


@pytest.fixture()
def clock():
    return FrozenClock(datetime(2024, 1, 1, tzinfo=UTC))


@pytest.fixture()
def plans(db_session):
    from app.services.billing.plans import PlanCatalog

    created = PlanCatalog(db_session).seed_default_plans()
    db_session.commit()
    return {plan.plan_type: plan for plan in created}


@pytest.fixture()
def tenant(db_session):
    shop = Tenant(business_name="Hodan Store", email=_unique_email(), phone="615000000")
    db_session.add(shop)
    db_session.flush()
    db_session.add(
        TenantAccount(
            tenant_id=shop.id,
            full_name="Hodan Ali",
            email=_unique_email("owner"),
            role=AccountRole.owner,
        )
    )
    db_session.commit()
    return shop


@pytest.fixture()
def make_discount(db_session, clock):
    def _make(code: str = "FIXED10", **overrides) -> DiscountCode:
        values = {
            "code": code,
            "type": DiscountType.fixed,
            "value": 10,
            "minimum_purchase": 0,
            "start_date": clock() - timedelta(days=1),
            "expiry_date": clock() + timedelta(days=30),
            "usage_limit": None,
            "per_user_limit": 0,
            "usage_count": 0,
            "applicable_for": [DiscountApplicability.all.value],
            "is_active": True,
        }
        values.update(overrides)
        discount = DiscountCode(**values)
        db_session.add(discount)
        db_session.commit()
        return discount

    return _make


@pytest.fixture()
def gateway():
    """WaafiPay client double; tests set ``initiate_with_retry``/``query_status`` results."""
    from app.services.payment_gateway import WaafiPayGateway

    mock = MagicMock(spec=WaafiPayGateway)
    mock.is_configured.return_value = True
    return mock


@pytest.fixture()
def sender():
    return MagicMock(return_value=True)


@pytest.fixture()
def coordinator(db_session, gateway, sender, clock, plans):
    from app.services.billing.channels import GatewayChannel
    from app.services.billing.notifications import BillingNotifier
    from app.services.billing.settlement import SettlementCoordinator

    return SettlementCoordinator(
        db_session,
        gateway_channel=GatewayChannel(gateway=gateway),
        notifier=BillingNotifier(sender=sender),
        clock=clock,
    )


@pytest.fixture()
def trial_subscription(coordinator, tenant):
    subscription = coordinator.subscriptions.create(tenant.id, PlanType.trial)
    coordinator.db.commit()
    return subscription


@pytest.fixture()
def pending_subscription(coordinator, tenant):
    subscription = coordinator.subscriptions.create(tenant.id, PlanType.monthly)
    coordinator.db.commit()
    return subscription


# ============ FastAPI Test Client Fixtures ============


@pytest.fixture()
def actor_holder():
    """Mutable actor used by the ``client`` fixture; tests swap it per request."""
    from app.api.deps import Actor

    return {"actor": Actor(id="owner-1", role="owner")}


@pytest.fixture()
def client(db_session, actor_holder, coordinator):
    """Create a test client with database, actor and coordinator overrides."""
    from app.api.billing import get_coordinator
    from app.api.deps import get_actor
    from app.api.deps import get_db as api_get_db
    from app.main import app

    def override_get_db():
        yield db_session

    app.dependency_overrides[api_get_db] = override_get_db
    app.dependency_overrides[get_actor] = lambda: actor_holder["actor"]
    app.dependency_overrides[get_coordinator] = lambda: coordinator

    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client

    app.dependency_overrides.clear()


@pytest.fixture()
def as_admin(actor_holder):
    from app.api.deps import Actor

    actor_holder["actor"] = Actor(id="admin-1", role="admin")
    return actor_holder["actor"]
