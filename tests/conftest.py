import itertools
import json
import os
from datetime import timedelta
from decimal import Decimal

# Settings are read at import time; point them at a throwaway database first
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["DEBUG"] = "false"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = ""
os.environ["RESEND_API_KEY"] = ""

import pytest
import stripe
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from billing.app import app
from billing.constants import ROLE_USER
from billing.db.session import get_db
from billing.errors import UpstreamPaymentError
from billing.models import Base, Coupon, Plan, User
from billing.services.auth_service import create_jwt
from billing.services.processor import CheckoutSession, ProcessorSubscription, get_payment_processor
from billing.utils import now_utc

_ids = itertools.count(1)


class FakeProcessor:
    """In-memory PaymentProcessor recording every call."""

    def __init__(self, enabled: bool = True):
        self.enabled = enabled
        self.customers: list[dict] = []
        self.sessions: list[dict] = []
        self.subscriptions: dict[str, ProcessorSubscription] = {}
        self.canceled: list[str] = []
        self.price_changes: list[tuple[str, str]] = []
        self.fail_checkout = False

    async def create_customer(self, email: str, name: str, user_id: int) -> str:
        customer_id = f"cus_test_{len(self.customers) + 1}"
        self.customers.append({"id": customer_id, "email": email, "name": name, "user_id": user_id})
        return customer_id

    async def create_checkout_session(self, customer_id, price_id, trial_days, metadata, stripe_coupon_id=None):
        if self.fail_checkout:
            raise UpstreamPaymentError("Payment processor error: card declined")
        session_id = f"cs_test_{len(self.sessions) + 1}"
        self.sessions.append({
            "id": session_id,
            "customer_id": customer_id,
            "price_id": price_id,
            "trial_days": trial_days,
            "metadata": metadata,
            "stripe_coupon_id": stripe_coupon_id,
        })
        return CheckoutSession(id=session_id, url=f"https://checkout.test/{session_id}")

    async def retrieve_subscription(self, subscription_id: str) -> ProcessorSubscription:
        if subscription_id not in self.subscriptions:
            raise UpstreamPaymentError(f"No such subscription: {subscription_id}")
        return self.subscriptions[subscription_id]

    async def cancel_at_period_end(self, subscription_id: str) -> None:
        self.canceled.append(subscription_id)

    async def change_price(self, subscription_id: str, price_id: str) -> None:
        self.price_changes.append((subscription_id, price_id))

    def parse_event(self, payload: bytes, signature: str) -> dict:
        if signature != "valid-signature":
            raise stripe.SignatureVerificationError("No signatures found matching the expected signature", signature)
        return json.loads(payload)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def file_engine(tmp_path):
    """File-backed database so concurrent sessions get separate connections."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'billing.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db(engine):
    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session


@pytest.fixture
def processor():
    return FakeProcessor()


@pytest.fixture
async def client(db, processor):
    async def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_payment_processor] = lambda: processor
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    def _headers(user: User) -> dict:
        return {"Authorization": f"Bearer {create_jwt(user.id)}"}

    return _headers


# --- Factories ---


async def create_user(session: AsyncSession, role: str = ROLE_USER, **kwargs) -> User:
    n = next(_ids)
    user = User(email=kwargs.pop("email", f"user{n}@example.com"), name=kwargs.pop("name", f"User {n}"), role=role, **kwargs)
    session.add(user)
    await session.commit()
    return user


async def create_plan(session: AsyncSession, **kwargs) -> Plan:
    fields = {
        "name": f"Plan {next(_ids)}",
        "price_monthly": Decimal("50.00"),
        "price_yearly": Decimal("500.00"),
        "features": ["Reports", "Email support"],
        "usage_limits": {"max_users": 5, "max_storage": -1},
        "trial_days": 0,
        "is_active": True,
    }
    fields.update(kwargs)
    plan = Plan(**fields)
    session.add(plan)
    await session.commit()
    return plan


async def create_coupon(session: AsyncSession, **kwargs) -> Coupon:
    now = now_utc()
    fields = {
        "code": f"SAVE{next(_ids)}",
        "name": "Test coupon",
        "discount_type": "percentage",
        "discount_value": Decimal("20"),
        "min_amount": Decimal("0"),
        "valid_from": now - timedelta(days=1),
        "valid_until": now + timedelta(days=30),
        "used_count": 0,
        "is_active": True,
        "applicable_plan_ids": [],
    }
    fields.update(kwargs)
    coupon = Coupon(**fields)
    session.add(coupon)
    await session.commit()
    return coupon


@pytest.fixture
def make_user(db):
    async def _make(role: str = ROLE_USER, **kwargs) -> User:
        return await create_user(db, role=role, **kwargs)

    return _make


@pytest.fixture
def make_plan(db):
    async def _make(**kwargs) -> Plan:
        return await create_plan(db, **kwargs)

    return _make


@pytest.fixture
def make_coupon(db):
    async def _make(**kwargs) -> Coupon:
        return await create_coupon(db, **kwargs)

    return _make


@pytest.fixture
async def user(make_user):
    return await make_user()


@pytest.fixture
async def super_admin(make_user):
    return await make_user(role="super_admin")


@pytest.fixture
async def company_admin(make_user):
    return await make_user(role="company_admin")
