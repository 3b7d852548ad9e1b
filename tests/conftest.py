import os

# Must be set before blogpay is imported: settings and db_manager are built at import time
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")

import hashlib
import json
from datetime import datetime
from decimal import Decimal

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from unittest.mock import AsyncMock
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from blogpay.main import app
from blogpay.core.config import GatewayCredentials, PaymentConfig
from blogpay.core.dependencies import get_current_user, get_current_admin, get_db
from blogpay.models.base import Base
from blogpay.models.subscription_order_model import SubscriptionOrder
from blogpay.schemas.token_schema import TokenData

MIDTRANS_SERVER_KEY = "SB-Mid-server-test"
XENDIT_CALLBACK_TOKEN = "xendit-callback-token"
STRIPE_WEBHOOK_SECRET = "whsec_test_secret"


def midtrans_signature(order_id: str, status: str, gross_amount: str, server_key: str = MIDTRANS_SERVER_KEY) -> str:
    return hashlib.sha512(f"{order_id}{status}{gross_amount}{server_key}".encode()).hexdigest()


def midtrans_body(order_id: str, status: str, gross_amount: str = "99000.00", **extra) -> bytes:
    payload = {
        "order_id": order_id,
        "transaction_status": status,
        "gross_amount": gross_amount,
        "transaction_id": extra.pop("transaction_id", f"trx-{order_id}"),
        "status_code": "200",
        "signature_key": midtrans_signature(order_id, status, gross_amount),
    }
    payload.update(extra)
    return json.dumps(payload).encode()


def build_config(**overrides) -> PaymentConfig:
    values = dict(
        midtrans=GatewayCredentials(
            secret_key=MIDTRANS_SERVER_KEY, public_key="SB-Mid-client-test", base_url="https://midtrans.test/v2"
        ),
        xendit=GatewayCredentials(
            secret_key="xnd_development_test", webhook_secret=XENDIT_CALLBACK_TOKEN, base_url="https://xendit.test"
        ),
        stripe=GatewayCredentials(
            secret_key="sk_test_123", public_key="pk_test_123", base_url="https://stripe.test/v1"
        ),
        app_base_url="https://blog.test",
        timeout_seconds=1.0,
        max_attempts=3,
        retry_wait_seconds=0,
        stale_after_seconds=3600,
        reservation_timeout_seconds=300,
    )
    values.update(overrides)
    return PaymentConfig(**values)


@pytest.fixture
def payment_config():
    return build_config()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def make_order(db):
    async def _make(
        order_id: str = "SUB-1",
        *,
        status: str = "pending",
        gateway: str = "midtrans",
        amount: str = "99000.00",
        user_id: str = "user-1",
        plan_id: str = "premium",
        billing_cycle: str = "monthly",
        gateway_transaction_id: str = None,
        created_at: datetime = None,
        updated_at: datetime = None,
        customer_email: str = "reader@blog.test",
    ) -> SubscriptionOrder:
        now = datetime.utcnow()
        order = SubscriptionOrder(
            order_id=order_id,
            user_id=user_id,
            plan_id=plan_id,
            gateway=gateway,
            gateway_transaction_id=gateway_transaction_id,
            amount=Decimal(amount),
            currency="IDR",
            billing_cycle=billing_cycle,
            status=status,
            customer_email=customer_email,
            customer_name="Reader",
            created_at=created_at or now,
            updated_at=updated_at or now,
        )
        db.add(order)
        await db.commit()
        return order

    return _make


@pytest.fixture
def mock_db_session():
    return AsyncMock(spec=AsyncSession)


@pytest.fixture(autouse=True)
def override_get_db(mock_db_session):
    async def _override():
        yield mock_db_session
    app.dependency_overrides[get_db] = _override
    yield
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture
def app_instance():
    return app


@pytest.fixture
def authenticated_client():
    """Provide an authenticated client for testing (as regular user)."""
    mock_user = TokenData(sub="user-1", role="user", email="reader@blog.test", name="Reader")
    app.dependency_overrides[get_current_user] = lambda: mock_user
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.pop(get_current_user, None)


@pytest.fixture
def admin_client():
    """Provide an authenticated client as admin."""
    mock_admin = TokenData(sub="admin-1", role="admin", email="admin@blog.test", name="Admin")
    app.dependency_overrides[get_current_admin] = lambda: mock_admin
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.pop(get_current_admin, None)
