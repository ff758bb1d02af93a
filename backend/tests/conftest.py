"""
Shared fixtures for the booking and payment lifecycle tests.

Each test gets a fresh in-memory SQLite database. Services commit their
own transactions, so isolation comes from a new engine per test rather
than a rolled back outer transaction.
"""

import os

# Configure before any carshare import reads settings
os.environ["CI"] = "1"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["STRIPE_SECRET_KEY"] = ""
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["ALLOWED_REDIRECT_HOSTS"] = ""

from datetime import datetime, timezone  # noqa: E402
from typing import Callable, Generator  # noqa: E402
from unittest.mock import MagicMock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.engine import Engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import carshare.models  # noqa: E402,F401
from carshare.models.types import Base  # noqa: E402
from carshare.schemas.stripe_payloads import (  # noqa: E402
    CheckoutSessionSnapshot,
    SetupIntentDetails,
)
from carshare.services.stripe_service import StripeService  # noqa: E402

from tests.factories import FrozenClock, make_car, make_host, make_user  # noqa: E402

NOW = datetime(2030, 6, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db(engine: Engine) -> Generator[Session, None, None]:
    TestingSessionLocal = sessionmaker(
        bind=engine, autocommit=False, autoflush=False, expire_on_commit=False
    )
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(NOW)


@pytest.fixture
def stripe_gateway() -> MagicMock:
    """StripeService double; no processor call leaves the test."""
    gateway = MagicMock(spec=StripeService)
    gateway.create_customer.return_value = "cus_test"
    gateway.create_setup_checkout_session.side_effect = lambda payment, **_: (
        CheckoutSessionSnapshot(
            id=f"cs_setup_{payment.id}",
            mode="setup",
            status="open",
            url="https://checkout.stripe.test/setup",
        )
    )
    gateway.create_payment_checkout_session.side_effect = lambda payment, **_: (
        CheckoutSessionSnapshot(
            id=f"cs_pay_{payment.id}",
            mode="payment",
            status="open",
            url="https://checkout.stripe.test/pay",
        )
    )
    gateway.fetch_setup_intent_payment_method.side_effect = lambda setup_intent_id: (
        SetupIntentDetails(
            setup_intent_id=setup_intent_id, customer_id="cus_test", payment_method_id="pm_test"
        )
    )
    gateway.create_transfer.return_value = "tr_test"
    gateway.create_refund.return_value = "re_test"
    gateway.create_transfer_reversal.return_value = "trr_test"
    return gateway


@pytest.fixture
def renter(db: Session):
    return make_user(db, name="Rita Renter")


@pytest.fixture
def host(db: Session):
    return make_host(db)


@pytest.fixture
def car(db: Session, host):
    return make_car(db, host)


@pytest.fixture
def support_user(db: Session):
    return make_user(db, role="support", name="Sam Support")


@pytest.fixture
def use_settings(monkeypatch: pytest.MonkeyPatch) -> Callable[..., None]:
    """Override settings fields for one test."""
    from carshare.core.config import settings

    def _apply(**overrides: object) -> None:
        for name, value in overrides.items():
            monkeypatch.setattr(settings, name, value)

    return _apply
