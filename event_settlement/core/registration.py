"""
Registration commit service.

Turns a COMPLETED payment into exactly one registration (with its guests
and optional donation), or a standalone donation entry. There are no
application-level locks: the unique source_transaction_id, the partial
unique (event_id, user_id) index and a conditional capacity update decide
every race, and IntegrityError is translated back into the domain outcome.
"""
import uuid
from typing import Any, Optional

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from event_settlement.core.exceptions import (
    DuplicateRegistration,
    EventFull,
    EventNotFound,
    PaymentNotCompleted,
    PaymentValidationError,
    RegistrationNotFound,
    TransactionNotFound,
)
from event_settlement.core.fees import to_money
from event_settlement.core.ids import coerce_uuid
from event_settlement.core.intents import (
    REFERENCE_DONATION,
    REFERENCE_EVENT_PAYMENT,
    DonationIntent,
    EventPaymentIntent,
    parse_intent,
)
from event_settlement.core.outbox import write_outbox_event
from event_settlement.core.stats_cache import StatsCache
from event_settlement.database.connection import get_session_factory
from event_settlement.database.models import (
    Donation,
    Event,
    EventRegistration,
    Guest,
    PaymentTransaction,
    QRCredential,
    RegistrationStatus,
    TransactionStatus,
)
from event_settlement.monitoring.metrics import metrics
from event_settlement.timeutils import utcnow

logger = structlog.get_logger(__name__)


class RegistrationCommitService:
    """
    Idempotent boundary between a verified payment and a registration.

    Each call runs in its own session, so concurrent callers (client
    callback and webhook for the same payment, or two users racing for the
    last seat) meet only at the database.
    """

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        stats_cache: Optional[StatsCache] = None,
    ):
        self.session_factory = session_factory
        self.stats_cache = stats_cache

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self.session_factory or get_session_factory()

    @staticmethod
    async def _find_by_transaction(
        db: AsyncSession, transaction_id: uuid.UUID
    ) -> Optional[EventRegistration]:
        stmt = select(EventRegistration).where(
            EventRegistration.source_transaction_id == transaction_id
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def _find_donation(db: AsyncSession, transaction_id: uuid.UUID) -> Optional[Donation]:
        stmt = select(Donation).where(Donation.source_transaction_id == transaction_id)
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    async def _load_completed_transaction(
        db: AsyncSession, transaction_id: uuid.UUID, reference_type: str
    ) -> PaymentTransaction:
        txn = await db.get(PaymentTransaction, transaction_id)
        if txn is None:
            raise TransactionNotFound(transaction_id)
        if txn.status != TransactionStatus.COMPLETED:
            raise PaymentNotCompleted(transaction_id, txn.status)
        if txn.reference_type != reference_type:
            raise PaymentValidationError(
                f"Transaction {transaction_id} is a {txn.reference_type} payment",
                transaction_id=transaction_id,
            )
        return txn

    async def commit(self, transaction_id: Any) -> EventRegistration:
        """
        Create the registration paid for by a COMPLETED EVENT_PAYMENT transaction.

        Safe to call any number of times, concurrently: every caller gets the
        same registration row back.

        Raises:
            TransactionNotFound: Unknown transaction
            PaymentNotCompleted: Transaction is not COMPLETED
            EventNotFound: The event disappeared from the tenant
            DuplicateRegistration: The user holds a CONFIRMED slot paid by another transaction
            EventFull: The event reached max_capacity
        """
        txn_id = coerce_uuid(transaction_id)
        if txn_id is None:
            raise TransactionNotFound(transaction_id)

        async with self._sessions()() as db:
            existing = await self._find_by_transaction(db, txn_id)
            if existing is not None:
                metrics.record_registration_commit("idempotent")
                logger.info(
                    "registration_commit_idempotent",
                    transaction_id=str(txn_id),
                    registration_id=str(existing.id),
                )
                return existing

            txn = await self._load_completed_transaction(db, txn_id, REFERENCE_EVENT_PAYMENT)
            intent = parse_intent(txn.registration_intent)
            if not isinstance(intent, EventPaymentIntent):
                raise PaymentValidationError(
                    "Event payment carries a non-event intent", transaction_id=txn_id
                )

            event_id = coerce_uuid(txn.reference_id)
            event = await db.get(Event, event_id) if event_id is not None else None
            if event is None or event.tenant_id != txn.tenant_id:
                raise EventNotFound(txn.reference_id)

            # Plain values only past this point; rollback expires ORM state
            tenant_id = txn.tenant_id
            user_id = txn.user_id
            total_amount = to_money(txn.amount)
            donation_amount = to_money(intent.donation_amount)
            max_capacity = event.max_capacity

            holder = (
                await db.execute(
                    select(EventRegistration).where(
                        EventRegistration.event_id == event_id,
                        EventRegistration.user_id == user_id,
                        EventRegistration.status == RegistrationStatus.CONFIRMED,
                    )
                )
            ).scalar_one_or_none()
            if holder is not None and holder.source_transaction_id == txn_id:
                # Committed by a concurrent caller since the lookup above
                metrics.record_registration_commit("idempotent")
                return holder
            if holder is not None:
                metrics.record_registration_commit("duplicate")
                raise DuplicateRegistration(event_id, user_id, transaction_id=txn_id)

            # First write of the unit of work: capacity check and seat claim
            # in one statement. The row lock it takes serializes concurrent
            # commits for the same event.
            claim = await db.execute(
                update(Event)
                .where(
                    Event.id == event_id,
                    or_(
                        Event.max_capacity.is_(None),
                        Event.confirmed_registrations < Event.max_capacity,
                    ),
                )
                .values(confirmed_registrations=Event.confirmed_registrations + 1)
                .execution_options(synchronize_session=False)
            )
            if claim.rowcount == 0:
                await db.rollback()
                # A concurrent commit of this same payment may have taken the last seat
                existing = await self._find_by_transaction(db, txn_id)
                if existing is not None:
                    metrics.record_registration_commit("idempotent")
                    return existing
                metrics.record_registration_commit("event_full")
                logger.warning(
                    "registration_event_full",
                    transaction_id=str(txn_id),
                    event_id=str(event_id),
                    max_capacity=max_capacity,
                )
                raise EventFull(event_id, max_capacity=max_capacity)

            registration_id = uuid.uuid4()
            registration = EventRegistration(
                id=registration_id,
                tenant_id=tenant_id,
                event_id=event_id,
                user_id=user_id,
                status=RegistrationStatus.CONFIRMED,
                meal_preference=intent.meal_preference,
                guest_count=intent.guest_count,
                total_amount=total_amount,
                donation_amount=donation_amount,
                source_transaction_id=txn_id,
                created_at=utcnow(),
            )
            registration.guests = [
                Guest(
                    name=guest.name,
                    email=guest.email,
                    phone=guest.phone,
                    meal_preference=guest.meal_preference,
                )
                for guest in intent.guests
            ]
            db.add(registration)

            if donation_amount > 0:
                db.add(
                    Donation(
                        tenant_id=tenant_id,
                        user_id=user_id,
                        event_id=event_id,
                        amount=donation_amount,
                        source_transaction_id=txn_id,
                        created_at=utcnow(),
                    )
                )

            write_outbox_event(
                db,
                aggregate_id=registration_id,
                aggregate_type="registration",
                event_type="registration.confirmed",
                tenant_id=tenant_id,
                payload={
                    "registration_id": str(registration_id),
                    "event_id": str(event_id),
                    "user_id": user_id,
                    "transaction_id": str(txn_id),
                    "guest_count": intent.guest_count,
                    "total_amount": str(total_amount),
                    "donation_amount": str(donation_amount),
                },
            )

            try:
                await db.flush()
                await db.commit()
            except IntegrityError as e:
                # Unique violation on insert. Two constraints can fire:
                #   - source_transaction_id: a concurrent commit of this same
                #     payment got there first
                #   - (event_id, user_id) WHERE CONFIRMED: another payment by
                #     this user holds the slot
                # The rollback also returns the seat claimed above. Looking the
                # registration up by source transaction tells the cases apart:
                # found is idempotent success, missing is a real duplicate.
                await db.rollback()
                existing = await self._find_by_transaction(db, txn_id)
                if existing is not None:
                    metrics.record_registration_commit("idempotent")
                    logger.info(
                        "registration_commit_race_resolved",
                        transaction_id=str(txn_id),
                        registration_id=str(existing.id),
                    )
                    return existing
                metrics.record_registration_commit("duplicate")
                logger.warning(
                    "registration_duplicate",
                    transaction_id=str(txn_id),
                    event_id=str(event_id),
                    user_id=user_id,
                )
                raise DuplicateRegistration(event_id, user_id, transaction_id=txn_id) from e

        if self.stats_cache is not None:
            await self.stats_cache.invalidate(event_id)

        metrics.record_registration_commit("created")
        logger.info(
            "registration_committed",
            registration_id=str(registration_id),
            transaction_id=str(txn_id),
            event_id=str(event_id),
            guest_count=registration.guest_count,
            total_amount=str(total_amount),
        )
        return registration

    async def record_donation(self, transaction_id: Any) -> Donation:
        """
        Record the donation paid by a COMPLETED DONATION transaction.

        Idempotent on source_transaction_id, like commit.
        """
        txn_id = coerce_uuid(transaction_id)
        if txn_id is None:
            raise TransactionNotFound(transaction_id)

        async with self._sessions()() as db:
            existing = await self._find_donation(db, txn_id)
            if existing is not None:
                return existing

            txn = await self._load_completed_transaction(db, txn_id, REFERENCE_DONATION)
            intent = parse_intent(txn.registration_intent)
            if not isinstance(intent, DonationIntent):
                raise PaymentValidationError(
                    "Donation payment carries a non-donation intent", transaction_id=txn_id
                )

            donation_id = uuid.uuid4()
            donation = Donation(
                id=donation_id,
                tenant_id=txn.tenant_id,
                user_id=txn.user_id,
                event_id=intent.event_id,
                amount=to_money(txn.amount),
                message=intent.message,
                source_transaction_id=txn_id,
                created_at=utcnow(),
            )
            db.add(donation)
            write_outbox_event(
                db,
                aggregate_id=donation_id,
                aggregate_type="donation",
                event_type="donation.recorded",
                tenant_id=txn.tenant_id,
                payload={
                    "donation_id": str(donation_id),
                    "user_id": txn.user_id,
                    "transaction_id": str(txn_id),
                    "amount": str(donation.amount),
                    "event_id": str(intent.event_id) if intent.event_id else None,
                },
            )

            try:
                await db.flush()
                await db.commit()
            except IntegrityError as e:
                # Unique source_transaction_id: a concurrent delivery recorded it
                await db.rollback()
                existing = await self._find_donation(db, txn_id)
                if existing is not None:
                    return existing
                raise PaymentValidationError(
                    "Donation could not be recorded", transaction_id=txn_id
                ) from e

        logger.info(
            "donation_recorded",
            donation_id=str(donation_id),
            transaction_id=str(txn_id),
            amount=str(donation.amount),
        )
        return donation

    async def cancel(self, registration_id: Any, tenant_id: Optional[str] = None) -> EventRegistration:
        """
        Cancel a CONFIRMED registration.

        Frees the (event_id, user_id) slot and the seat, and deactivates the
        check-in credential. Cancelling twice returns the cancelled row.
        """
        async with self._sessions()() as db:
            registration = await self._get(db, registration_id, tenant_id)
            if registration.status == RegistrationStatus.CANCELLED:
                return registration

            reg_id = registration.id
            event_id = registration.event_id
            cancelled_at = utcnow()

            result = await db.execute(
                update(EventRegistration)
                .where(
                    EventRegistration.id == reg_id,
                    EventRegistration.status == RegistrationStatus.CONFIRMED,
                )
                .values(status=RegistrationStatus.CANCELLED, cancelled_at=cancelled_at)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                # Lost to a concurrent cancel
                await db.rollback()
                return await self._get(db, reg_id, tenant_id)

            await db.execute(
                update(Event)
                .where(Event.id == event_id, Event.confirmed_registrations > 0)
                .values(confirmed_registrations=Event.confirmed_registrations - 1)
                .execution_options(synchronize_session=False)
            )
            await db.execute(
                update(QRCredential)
                .where(QRCredential.registration_id == reg_id)
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            write_outbox_event(
                db,
                aggregate_id=reg_id,
                aggregate_type="registration",
                event_type="registration.cancelled",
                tenant_id=registration.tenant_id,
                payload={
                    "registration_id": str(reg_id),
                    "event_id": str(event_id),
                    "user_id": registration.user_id,
                    "cancelled_at": cancelled_at.isoformat(),
                },
            )
            await db.commit()

            registration = await self._get(db, reg_id, tenant_id, refresh=True)

        if self.stats_cache is not None:
            await self.stats_cache.invalidate(event_id)
        metrics.record_registration_cancelled()
        logger.info(
            "registration_cancelled",
            registration_id=str(reg_id),
            event_id=str(event_id),
        )
        return registration

    @staticmethod
    async def _get(
        db: AsyncSession,
        registration_id: Any,
        tenant_id: Optional[str] = None,
        refresh: bool = False,
    ) -> EventRegistration:
        reg_id = coerce_uuid(registration_id)
        if reg_id is None:
            raise RegistrationNotFound(registration_id)
        stmt = select(EventRegistration).where(EventRegistration.id == reg_id)
        if tenant_id is not None:
            stmt = stmt.where(EventRegistration.tenant_id == tenant_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await db.execute(stmt)
        registration = result.scalar_one_or_none()
        if registration is None:
            raise RegistrationNotFound(registration_id)
        return registration

    async def get(self, registration_id: Any, tenant_id: Optional[str] = None) -> EventRegistration:
        """Load a registration, scoped to a tenant when one is given."""
        async with self._sessions()() as db:
            return await self._get(db, registration_id, tenant_id)

    async def find_by_transaction(self, transaction_id: Any) -> Optional[EventRegistration]:
        """Registration created from a payment, if commit has run."""
        txn_id = coerce_uuid(transaction_id)
        if txn_id is None:
            return None
        async with self._sessions()() as db:
            return await self._find_by_transaction(db, txn_id)

