"""
Pytest configuration and fixtures.

Tests run against a temporary SQLite file through aiosqlite, so concurrent
callers use separate connections and the unique constraints do the real
work. The Razorpay adapter is swapped for one that opens orders locally
but signs and verifies exactly like the real client.
"""
import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./event_settlement_test.db")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_fakekey")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "test_key_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "test_webhook_secret")
os.environ.setdefault("QR_SIGNING_KEY", "test_qr_signing_key_with_enough_entropy")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import uuid  # noqa: E402
from datetime import timedelta  # noqa: E402
from decimal import Decimal  # noqa: E402
from typing import Any, AsyncGenerator, Dict, List, Optional  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402

from event_settlement.config import get_settings  # noqa: E402

get_settings.cache_clear()

from event_settlement.core.checkin import CheckInCoordinator  # noqa: E402
from event_settlement.core.intents import EventPaymentIntent, GuestDetails  # noqa: E402
from event_settlement.core.ledger import PaymentLedger  # noqa: E402
from event_settlement.core.qr_tokens import QRTokenService  # noqa: E402
from event_settlement.core.registration import RegistrationCommitService  # noqa: E402
from event_settlement.database.connection import make_session_factory  # noqa: E402
from event_settlement.database.models import Base, Event  # noqa: E402
from event_settlement.integrations.razorpay_client import (  # noqa: E402
    GatewayError,
    GatewayOrder,
    RazorpayClient,
)
from event_settlement.timeutils import utcnow  # noqa: E402

TENANT = "tenant_alpha"
OTHER_TENANT = "tenant_beta"


class FakeGateway(RazorpayClient):
    """Opens orders in memory; signature checks are the real client's."""

    def __init__(self) -> None:
        super().__init__()
        self.orders: List[GatewayOrder] = []
        self.fail_with: Optional[GatewayError] = None

    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        if self.fail_with is not None:
            raise self.fail_with
        order = GatewayOrder(
            id=f"order_{uuid.uuid4().hex[:14]}",
            amount=amount,
            currency=currency,
            receipt=receipt,
            raw={"notes": notes or {}},
        )
        self.orders.append(order)
        return order


@pytest.fixture
def settings() -> Any:
    return get_settings()


@pytest_asyncio.fixture
async def engine(tmp_path: Any) -> AsyncGenerator[AsyncEngine, Any]:
    """Fresh database file per test."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'settlement.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def registrations(session_factory: async_sessionmaker[AsyncSession]) -> RegistrationCommitService:
    return RegistrationCommitService(session_factory=session_factory)


@pytest.fixture
def ledger(
    gateway: FakeGateway,
    registrations: RegistrationCommitService,
    session_factory: async_sessionmaker[AsyncSession],
) -> PaymentLedger:
    return PaymentLedger(
        gateway=gateway,
        registration_service=registrations,
        session_factory=session_factory,
    )


@pytest.fixture
def qr_service(session_factory: async_sessionmaker[AsyncSession]) -> QRTokenService:
    return QRTokenService(session_factory=session_factory)


@pytest.fixture
def coordinator(
    qr_service: QRTokenService, session_factory: async_sessionmaker[AsyncSession]
) -> CheckInCoordinator:
    return CheckInCoordinator(qr_service=qr_service, session_factory=session_factory)


@pytest.fixture
def make_event(session_factory: async_sessionmaker[AsyncSession]) -> Any:
    """Factory inserting an event; starts now so the check-in window is open."""

    async def _make_event(
        tenant_id: str = TENANT,
        registration_fee: str = "500.00",
        guest_fee: str = "100.00",
        max_capacity: Optional[int] = None,
        starts_at: Any = None,
    ) -> Event:
        event = Event(
            id=uuid.uuid4(),
            tenant_id=tenant_id,
            title="Annual Meet",
            starts_at=starts_at or utcnow() + timedelta(minutes=30),
            registration_fee=Decimal(registration_fee),
            guest_fee=Decimal(guest_fee),
            max_capacity=max_capacity,
            confirmed_registrations=0,
            created_at=utcnow(),
        )
        async with session_factory() as db:
            db.add(event)
            await db.commit()
        return event

    return _make_event


def event_intent(guests: int = 2, donation: str = "50.00", meal: str = "VEG") -> EventPaymentIntent:
    return EventPaymentIntent(
        meal_preference=meal,
        guests=[GuestDetails(name=f"Guest {i + 1}") for i in range(guests)],
        donation_amount=Decimal(donation),
    )


@pytest.fixture
def pay(ledger: PaymentLedger, gateway: FakeGateway) -> Any:
    """Initiate and verify an event payment, returning the COMPLETED transaction."""

    async def _pay(
        event: Event,
        user_id: str = "member_1",
        guests: int = 2,
        donation: str = "50.00",
        tenant_id: str = TENANT,
    ) -> Any:
        txn = await ledger.initiate(
            tenant_id=tenant_id,
            user_id=user_id,
            reference_type="EVENT_PAYMENT",
            reference_id=str(event.id),
            intent=event_intent(guests=guests, donation=donation),
        )
        payment_id = f"pay_{uuid.uuid4().hex[:14]}"
        return await ledger.verify(
            txn.id,
            gateway_payment_id=payment_id,
            gateway_signature=gateway.sign_payment(txn.gateway_order_id, payment_id),
        )

    return _pay
