import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("STRIPE_SECRET_KEY", "sk_test_dummy")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("STRIPE_PRICE_ID", "price_test_monthly")
os.environ.setdefault("DEBUG", "false")

from datetime import datetime, timedelta
from types import SimpleNamespace
from unittest.mock import DEFAULT, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tenant_billing.core.database import Base, get_db
from tenant_billing.core.rate_limit import limiter
from tenant_billing.main import app
from tenant_billing.models import Community, Organizer, OrganizerSubscription
from tenant_billing.routers.deps import require_admin, require_organizer
from tenant_billing.services import stripe_service
from tenant_billing.services.subscription_state import utcnow


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture
def session_factory(tmp_path):
    """ファイルDB上のセッションファクトリ (別接続で並行リクエストを再現する)"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'billing.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    try:
        yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    finally:
        engine.dispose()


@pytest.fixture
def now():
    return utcnow().replace(microsecond=0)


@pytest.fixture
def organizer(db):
    return make_organizer(db)


@pytest.fixture
def client(db, organizer):
    def override_get_db():
        yield db

    async def override_require_organizer():
        return organizer

    async def override_require_admin():
        return {"user_id": "admin-1", "role": "admin"}

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[require_organizer] = override_require_organizer
    app.dependency_overrides[require_admin] = override_require_admin
    limiter.enabled = False
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
        limiter.enabled = True


def make_organizer(db, user_id="user-1", email="host@example.com", **kwargs) -> Organizer:
    organizer = Organizer(
        user_id=user_id,
        email=email,
        business_name=kwargs.pop("business_name", "Maple Meetups"),
        trial_used=kwargs.pop("trial_used", False),
        created_at=kwargs.pop("created_at", utcnow()),
        **kwargs,
    )
    db.add(organizer)
    db.commit()
    db.refresh(organizer)
    return organizer


def make_record(db, organizer, **kwargs) -> OrganizerSubscription:
    kwargs.setdefault("status", "incomplete")
    kwargs.setdefault("created_at", utcnow())
    kwargs.setdefault("placement_credits_available", 0)
    kwargs.setdefault("placement_credits_used", 0)
    record = OrganizerSubscription(organizer_id=organizer.id, **kwargs)
    db.add(record)
    db.commit()
    db.refresh(record)
    return record


def make_community(db, organizer, name="Board Games Night", status="draft") -> Community:
    community = Community(organizer_id=organizer.id, name=name, status=status)
    db.add(community)
    db.commit()
    db.refresh(community)
    return community


def community_statuses(db, organizer) -> list[str]:
    db.expire_all()
    return [
        c.status
        for c in db.query(Community).filter(Community.organizer_id == organizer.id).order_by(Community.id)
    ]


def days(n: float) -> timedelta:
    return timedelta(days=n)


def ts(value: datetime) -> int:
    """naive UTC datetime → Unix秒 (Stripeのタイムスタンプ形式)"""
    return int((value - datetime(1970, 1, 1)).total_seconds())


GATEWAY_FUNCTIONS = (
    "create_customer",
    "create_subscription",
    "retrieve_subscription",
    "cancel_subscription",
    "create_setup_intent",
    "retrieve_setup_intent",
    "set_default_payment_method",
    "get_default_payment_method",
    "pay_invoice",
    "create_billing_portal_session",
    "get_price_id",
    "construct_webhook_event",
)


@pytest.fixture
def gateway():
    """Stripe呼び出しをすべてモックに置き換える"""
    with patch.multiple(stripe_service, **{name: DEFAULT for name in GATEWAY_FUNCTIONS}) as mocks:
        mocks["create_customer"].return_value = "cus_1"
        mocks["get_price_id"].return_value = "price_test_monthly"
        mocks["create_subscription"].return_value = stripe_subscription("incomplete")
        mocks["create_setup_intent"].return_value = {"id": "seti_1", "client_secret": "seti_1_secret_abc"}
        mocks["get_default_payment_method"].return_value = "pm_default"
        mocks["create_billing_portal_session"].return_value = "https://billing.stripe.com/session/test"
        yield SimpleNamespace(**mocks)


def stripe_subscription(
    status,
    sub_id="sub_1",
    customer="cus_1",
    period_start=None,
    period_end=None,
    trial_start=None,
    trial_end=None,
    cancel_at=None,
    canceled_at=None,
    ended_at=None,
    latest_invoice=None,
    metadata=None,
) -> dict:
    """Stripe Subscription オブジェクト相当の dict"""
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "current_period_start": ts(period_start) if period_start else None,
        "current_period_end": ts(period_end) if period_end else None,
        "trial_start": ts(trial_start) if trial_start else None,
        "trial_end": ts(trial_end) if trial_end else None,
        "cancel_at": ts(cancel_at) if cancel_at else None,
        "canceled_at": ts(canceled_at) if canceled_at else None,
        "ended_at": ts(ended_at) if ended_at else None,
        "latest_invoice": latest_invoice,
        "metadata": metadata or {},
    }


def stripe_invoice(invoice_id="in_1", sub_id="sub_1", amount_paid=2900, period_start=None, period_end=None) -> dict:
    lines = []
    if period_start and period_end:
        lines.append({"period": {"start": ts(period_start), "end": ts(period_end)}})
    return {
        "id": invoice_id,
        "object": "invoice",
        "subscription": sub_id,
        "amount_paid": amount_paid,
        "currency": "cad",
        "status": "paid",
        "hosted_invoice_url": f"https://invoice.stripe.com/{invoice_id}",
        "lines": {"data": lines},
    }
