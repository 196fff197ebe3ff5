from datetime import datetime, timezone
from decimal import Decimal
from itertools import count

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront.config import Settings
from storefront.db import Base
from storefront.main import create_app
from storefront.models import (
    BillingCycle,
    Order,
    PageView,
    PaymentStatus,
    Role,
    Store,
    Subscription,
    SubscriptionStatus,
    User,
)
from storefront.tenancy import PlatformScope, TenantScope

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
TEST_SECRET = "test-secret-for-signing-bearer-tokens"


def fixed_clock() -> datetime:
    return NOW


class Seeder:
    def __init__(self, db) -> None:
        self.db = db
        self._ids = count(1)

    def user(self, role: Role = Role.STORE_OWNER, name: str = "Owner", is_active: bool = True) -> User:
        n = next(self._ids)
        user = User(
            email=f"user{n}@example.com",
            name=f"{name} {n}",
            role=role.value,
            is_active=is_active,
            created_at=NOW,
        )
        self.db.add(user)
        self.db.commit()
        return user

    def store(self, owner: User | None = None, is_active: bool = True, is_verified: bool = False) -> Store:
        owner = owner or self.user()
        n = next(self._ids)
        store = Store(
            owner_id=owner.id,
            name=f"Store {n}",
            subdomain=f"store-{n}",
            is_active=is_active,
            is_verified=is_verified,
            created_at=NOW,
        )
        self.db.add(store)
        self.db.commit()
        return store

    def order(
        self,
        store: Store,
        total,
        payment_status: PaymentStatus = PaymentStatus.PAID,
        paid_at: datetime | None = NOW,
        created_at: datetime = NOW,
    ) -> Order:
        order = Order(
            store_id=store.id,
            order_number=f"ORD-{next(self._ids):05d}",
            total=Decimal(str(total)),
            payment_status=payment_status.value,
            paid_at=paid_at if payment_status == PaymentStatus.PAID else None,
            created_at=created_at,
        )
        self.db.add(order)
        self.db.commit()
        return order

    def subscription(
        self,
        store: Store,
        plan: str,
        price,
        status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
        start_date: datetime = NOW,
    ) -> Subscription:
        subscription = Subscription(
            user_id=store.owner_id,
            store_id=store.id,
            plan=plan,
            status=status.value,
            price=Decimal(str(price)),
            billing_cycle=BillingCycle.MONTHLY.value,
            start_date=start_date,
            created_at=start_date,
        )
        self.db.add(subscription)
        self.db.commit()
        return subscription

    def page_view(self, store: Store, visitor_id: str | None, viewed_at: datetime = NOW) -> PageView:
        view = PageView(store_id=store.id, visitor_id=visitor_id, page="/", viewed_at=viewed_at)
        self.db.add(view)
        self.db.commit()
        return view


def token_for(user: User, secret: str = TEST_SECRET) -> str:
    return jwt.encode({"sub": str(user.id)}, secret, algorithm="HS256")


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {token_for(user)}"}


def tenant_scope_for(store: Store) -> TenantScope:
    return TenantScope(store_id=store.id, user_id=store.owner_id, role=Role.STORE_OWNER)


def platform_scope_for(user: User) -> PlatformScope:
    return PlatformScope(user_id=user.id, role=Role(user.role))


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def seed(db) -> Seeder:
    return Seeder(db)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(database_url="sqlite://", jwt_secret=TEST_SECRET)


@pytest.fixture
def client(test_settings, session_factory):
    app = create_app(settings=test_settings, session_factory=session_factory, clock=fixed_clock)
    with TestClient(app) as client:
        yield client
