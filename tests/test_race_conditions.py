"""
Race condition tests.

Each coroutine below opens its own session, so callers meet only at the
database file, the same way separate API replicas meet at PostgreSQL.
"""
import asyncio
from typing import Any, List

import pytest
from sqlalchemy import func, select

from conftest import TENANT, event_intent
from event_settlement.core.exceptions import AlreadyCheckedIn, EventFull
from event_settlement.database.models import (
    CheckInRecord,
    Event,
    EventRegistration,
    QRCredential,
    RegistrationStatus,
    TransactionStatus,
)


async def count(session_factory: Any, column: Any, *criteria: Any) -> int:
    async with session_factory() as db:
        stmt = select(func.count(column))
        if criteria:
            stmt = stmt.where(*criteria)
        return int((await db.execute(stmt)).scalar_one())


class TestRaceConditions:
    """Test suite for concurrent callers."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_verify_creates_one_registration(
        self, ledger: Any, gateway: Any, make_event: Any, session_factory: Any
    ) -> None:
        """Client callback and webhook retries racing: one registration, same result."""
        event = await make_event()
        txn = await ledger.initiate(
            tenant_id=TENANT,
            user_id="member_1",
            reference_type="EVENT_PAYMENT",
            reference_id=str(event.id),
            intent=event_intent(),
        )
        signature = gateway.sign_payment(txn.gateway_order_id, "pay_race")

        results = await asyncio.gather(
            *[ledger.verify(txn.id, "pay_race", signature) for _ in range(10)],
            return_exceptions=True,
        )

        errors = [r for r in results if isinstance(r, Exception)]
        assert errors == []
        assert all(r.status == TransactionStatus.COMPLETED for r in results)
        assert await count(session_factory, EventRegistration.id) == 1
        async with session_factory() as db:
            assert (await db.get(Event, event.id)).confirmed_registrations == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_commit_is_idempotent(
        self, registrations: Any, make_event: Any, pay: Any, session_factory: Any
    ) -> None:
        event = await make_event()
        txn = await pay(event)

        results = await asyncio.gather(
            *[registrations.commit(txn.id) for _ in range(10)], return_exceptions=True
        )

        assert not [r for r in results if isinstance(r, Exception)]
        assert len({r.id for r in results}) == 1
        assert await count(session_factory, EventRegistration.id) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_capacity_never_exceeded(
        self, ledger: Any, gateway: Any, make_event: Any, session_factory: Any
    ) -> None:
        """K seats, K + 1 concurrent settlements: K registrations and at least one EventFull."""
        capacity = 3
        event = await make_event(max_capacity=capacity)
        txns = [
            await ledger.initiate(
                tenant_id=TENANT,
                user_id=f"member_{i}",
                reference_type="EVENT_PAYMENT",
                reference_id=str(event.id),
                intent=event_intent(),
            )
            for i in range(capacity + 1)
        ]

        results = await asyncio.gather(
            *[
                ledger.verify(
                    txn.id,
                    f"pay_{i}",
                    gateway.sign_payment(txn.gateway_order_id, f"pay_{i}"),
                )
                for i, txn in enumerate(txns)
            ],
            return_exceptions=True,
        )

        full: List[Exception] = [r for r in results if isinstance(r, EventFull)]
        unexpected = [
            r for r in results if isinstance(r, Exception) and not isinstance(r, EventFull)
        ]
        assert unexpected == []
        assert len(full) >= 1
        confirmed = await count(
            session_factory,
            EventRegistration.id,
            EventRegistration.status == RegistrationStatus.CONFIRMED,
        )
        assert confirmed == capacity
        async with session_factory() as db:
            assert (await db.get(Event, event.id)).confirmed_registrations == capacity

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_issue_returns_one_token(
        self, registrations: Any, qr_service: Any, make_event: Any, pay: Any, session_factory: Any
    ) -> None:
        event = await make_event()
        txn = await pay(event)
        registration = await registrations.find_by_transaction(txn.id)

        results = await asyncio.gather(
            *[qr_service.issue(registration.id) for _ in range(10)], return_exceptions=True
        )

        assert not [r for r in results if isinstance(r, Exception)]
        assert len({r.token for r in results}) == 1
        assert await count(session_factory, QRCredential.id) == 1

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_concurrent_scans_record_once(
        self,
        registrations: Any,
        qr_service: Any,
        coordinator: Any,
        make_event: Any,
        pay: Any,
        session_factory: Any,
    ) -> None:
        """Two gate devices scanning the same QR: one record, the other AlreadyCheckedIn."""
        event = await make_event()
        txn = await pay(event, guests=2)
        registration = await registrations.find_by_transaction(txn.id)
        credential = await qr_service.issue(registration.id)

        results = await asyncio.gather(
            *[
                coordinator.scan(credential.token, guests_checked_in=2, staff_id=f"staff_{i}")
                for i in range(5)
            ],
            return_exceptions=True,
        )

        records = [r for r in results if isinstance(r, CheckInRecord)]
        conflicts = [r for r in results if isinstance(r, AlreadyCheckedIn)]
        assert len(records) == 1
        assert len(conflicts) == 4
        assert all(c.checked_in_by_staff_id == records[0].checked_in_by_staff_id for c in conflicts)
        assert await count(session_factory, CheckInRecord.id) == 1
        async with session_factory() as db:
            stored = (
                await db.execute(
                    select(QRCredential).where(QRCredential.registration_id == registration.id)
                )
            ).scalar_one()
        assert stored.scan_count == 1
