"""
Tests for the registration commit service.
"""
import uuid
from decimal import Decimal
from typing import Any

import pytest
from sqlalchemy import func, select

from conftest import OTHER_TENANT, TENANT, event_intent
from event_settlement.core.exceptions import (
    DuplicateRegistration,
    EventFull,
    PaymentNotCompleted,
    RegistrationNotFound,
    TokenRevoked,
    TransactionNotFound,
)
from event_settlement.core.ledger import PaymentLedger
from event_settlement.core.registration import RegistrationCommitService
from event_settlement.database.models import (
    Donation,
    Event,
    OutboxEvent,
    RegistrationStatus,
)


async def confirmed_count(session_factory: Any, event_id: Any) -> int:
    async with session_factory() as db:
        event = await db.get(Event, event_id)
        return event.confirmed_registrations


class TestCommit:
    """Test suite for turning payments into registrations."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_commit_writes_registration_donation_and_outbox(
        self, registrations: Any, make_event: Any, pay: Any, session_factory: Any
    ) -> None:
        event = await make_event()
        txn = await pay(event, guests=1, donation="25.00")

        registration = await registrations.find_by_transaction(txn.id)

        assert registration.status == RegistrationStatus.CONFIRMED
        assert registration.tenant_id == TENANT
        assert registration.meal_preference == "VEG"
        assert registration.total_amount == Decimal("625.00")
        assert registration.donation_amount == Decimal("25.00")
        assert await confirmed_count(session_factory, event.id) == 1

        async with session_factory() as db:
            donation = (
                await db.execute(select(Donation).where(Donation.source_transaction_id == txn.id))
            ).scalar_one()
            event_types = (
                await db.execute(
                    select(OutboxEvent.event_type).where(OutboxEvent.aggregate_id == registration.id)
                )
            ).scalars().all()
        assert donation.amount == Decimal("25.00")
        assert donation.event_id == event.id
        assert "registration.confirmed" in event_types

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_donation_row_without_donation(
        self, make_event: Any, pay: Any, session_factory: Any
    ) -> None:
        event = await make_event()
        await pay(event, donation="0")

        async with session_factory() as db:
            count = (await db.execute(select(func.count(Donation.id)))).scalar_one()
        assert count == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_repeated_commit_returns_same_registration(
        self, registrations: Any, make_event: Any, pay: Any, session_factory: Any
    ) -> None:
        event = await make_event()
        txn = await pay(event)

        first = await registrations.commit(txn.id)
        second = await registrations.commit(txn.id)

        assert first.id == second.id
        assert await confirmed_count(session_factory, event.id) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_commit_requires_completed_payment(
        self, registrations: Any, ledger: Any, make_event: Any
    ) -> None:
        event = await make_event()
        txn = await ledger.initiate(
            tenant_id=TENANT,
            user_id="member_1",
            reference_type="EVENT_PAYMENT",
            reference_id=str(event.id),
            intent=event_intent(),
        )

        with pytest.raises(PaymentNotCompleted):
            await registrations.commit(txn.id)
        with pytest.raises(TransactionNotFound):
            await registrations.commit(uuid.uuid4())

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_payment_by_same_user_is_duplicate(
        self, ledger: Any, gateway: Any, registrations: Any, make_event: Any
    ) -> None:
        """Two payments opened before either settled: only one registers."""
        event = await make_event()
        txns = [
            await ledger.initiate(
                tenant_id=TENANT,
                user_id="member_1",
                reference_type="EVENT_PAYMENT",
                reference_id=str(event.id),
                intent=event_intent(),
            )
            for _ in range(2)
        ]

        await ledger.verify(
            txns[0].id, "pay_1", gateway.sign_payment(txns[0].gateway_order_id, "pay_1")
        )
        with pytest.raises(DuplicateRegistration):
            await ledger.verify(
                txns[1].id, "pay_2", gateway.sign_payment(txns[1].gateway_order_id, "pay_2")
            )

        assert await registrations.find_by_transaction(txns[1].id) is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capacity_enforced_at_commit(
        self, ledger: Any, gateway: Any, make_event: Any, session_factory: Any
    ) -> None:
        event = await make_event(max_capacity=1)
        txns = [
            await ledger.initiate(
                tenant_id=TENANT,
                user_id=f"member_{i}",
                reference_type="EVENT_PAYMENT",
                reference_id=str(event.id),
                intent=event_intent(),
            )
            for i in range(2)
        ]

        await ledger.verify(
            txns[0].id, "pay_1", gateway.sign_payment(txns[0].gateway_order_id, "pay_1")
        )
        with pytest.raises(EventFull):
            await ledger.verify(
                txns[1].id, "pay_2", gateway.sign_payment(txns[1].gateway_order_id, "pay_2")
            )

        assert await confirmed_count(session_factory, event.id) == 1


class TestCancel:
    """Test suite for cancellation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_frees_seat_and_slot(
        self, registrations: Any, qr_service: Any, make_event: Any, pay: Any, session_factory: Any
    ) -> None:
        event = await make_event(max_capacity=1)
        txn = await pay(event, user_id="member_1")
        registration = await registrations.find_by_transaction(txn.id)
        credential = await qr_service.issue(registration.id)

        cancelled = await registrations.cancel(registration.id, tenant_id=TENANT)

        assert cancelled.status == RegistrationStatus.CANCELLED
        assert cancelled.cancelled_at is not None
        assert await confirmed_count(session_factory, event.id) == 0
        with pytest.raises(TokenRevoked):
            await qr_service.decode(credential.token)

        # The user may register again
        again = await pay(event, user_id="member_1")
        assert (await registrations.find_by_transaction(again.id)).status == RegistrationStatus.CONFIRMED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_is_idempotent(
        self, registrations: Any, make_event: Any, pay: Any, session_factory: Any
    ) -> None:
        event = await make_event()
        txn = await pay(event)
        registration = await registrations.find_by_transaction(txn.id)

        await registrations.cancel(registration.id)
        second = await registrations.cancel(registration.id)

        assert second.status == RegistrationStatus.CANCELLED
        assert await confirmed_count(session_factory, event.id) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cancel_is_tenant_scoped(
        self, registrations: Any, make_event: Any, pay: Any
    ) -> None:
        event = await make_event()
        txn = await pay(event)
        registration = await registrations.find_by_transaction(txn.id)

        with pytest.raises(RegistrationNotFound):
            await registrations.cancel(registration.id, tenant_id=OTHER_TENANT)


class TestStatsCacheInvalidation:
    """Attendance totals change when registrations are created or cancelled."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_commit_and_cancel_invalidate_stats(
        self, session_factory: Any, gateway: Any, make_event: Any, mocker: Any
    ) -> None:
        cache = mocker.AsyncMock()
        registrations = RegistrationCommitService(session_factory=session_factory, stats_cache=cache)
        ledger = PaymentLedger(
            gateway=gateway, registration_service=registrations, session_factory=session_factory
        )
        event = await make_event()
        txn = await ledger.initiate(
            tenant_id=TENANT,
            user_id="member_1",
            reference_type="EVENT_PAYMENT",
            reference_id=str(event.id),
            intent=event_intent(),
        )

        await ledger.verify(txn.id, "pay_1", gateway.sign_payment(txn.gateway_order_id, "pay_1"))
        cache.invalidate.assert_awaited_once_with(event.id)

        # A repeated commit creates nothing, so the cache is left alone
        registration = await registrations.commit(txn.id)
        assert cache.invalidate.await_count == 1

        await registrations.cancel(registration.id)
        assert cache.invalidate.await_count == 2
