"""
Payment transaction ledger.

Single source of truth for "has this money arrived". Flow:
1. initiate: price the intent, open a gateway order, record INITIATED
2. verify: check the gateway signature against the stored order and move
   INITIATED forward exactly once (COMPLETED or FAILED)
3. settle: on COMPLETED, hand the transaction to the registration commit
   service, on every verify, so a crash between steps heals on redelivery

Transitions are conditional updates (WHERE status = 'INITIATED'); the row
count tells a caller whether it performed the transition or lost the race.
"""
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Union

import structlog
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from event_settlement.config import get_settings
from event_settlement.core.exceptions import (
    DuplicateRegistration,
    EventFull,
    EventNotFound,
    GatewayUnavailable,
    PaymentValidationError,
    SignatureMismatch,
    TransactionNotFound,
)
from event_settlement.core.fees import calculate_donation_total, calculate_event_total
from event_settlement.core.ids import coerce_uuid
from event_settlement.core.intents import (
    REFERENCE_DONATION,
    REFERENCE_EVENT_PAYMENT,
    DonationIntent,
    EventPaymentIntent,
    dump_intent,
    parse_intent,
)
from event_settlement.core.outbox import write_outbox_event
from event_settlement.core.registration import RegistrationCommitService
from event_settlement.database.connection import get_session_factory
from event_settlement.database.models import (
    Event,
    EventRegistration,
    PaymentTransaction,
    RegistrationStatus,
    TransactionStatus,
)
from event_settlement.integrations.razorpay_client import (
    GatewayError,
    PaymentGateway,
    RazorpayClient,
)
from event_settlement.monitoring.metrics import metrics
from event_settlement.timeutils import utcnow

logger = structlog.get_logger(__name__)

Intent = Union[EventPaymentIntent, DonationIntent]


class PaymentLedger:
    """
    Records payment attempts and their verified outcome.

    Every operation opens its own session; no session is held open across
    the gateway call.
    """

    def __init__(
        self,
        gateway: Optional[PaymentGateway] = None,
        registration_service: Optional[RegistrationCommitService] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        """
        Initialize payment ledger.

        Args:
            gateway: Payment gateway adapter (defaults to RazorpayClient)
            registration_service: Settlement hook for completed payments
            session_factory: Session factory (defaults to the shared one)
        """
        self.settings = get_settings()
        self.gateway = gateway or RazorpayClient()
        self.session_factory = session_factory
        self.registration_service = registration_service or RegistrationCommitService(
            session_factory=session_factory
        )

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self.session_factory or get_session_factory()

    # ------------------------------------------------------------------
    # initiate
    # ------------------------------------------------------------------

    async def _price_event_payment(
        self,
        db: AsyncSession,
        tenant_id: str,
        user_id: str,
        reference_id: str,
        intent: EventPaymentIntent,
    ):
        """
        Advisory pre-flight checks plus server-side pricing.

        The authoritative duplicate and capacity checks happen in commit;
        these only stop a user from paying for something already doomed.
        """
        event_id = coerce_uuid(reference_id)
        event = await db.get(Event, event_id) if event_id is not None else None
        if event is None or event.tenant_id != tenant_id:
            raise EventNotFound(reference_id)

        if intent.guest_count > self.settings.max_guests_per_registration:
            raise PaymentValidationError(
                f"At most {self.settings.max_guests_per_registration} guests per registration",
                guest_count=intent.guest_count,
            )

        existing = await db.execute(
            select(EventRegistration.id).where(
                EventRegistration.event_id == event_id,
                EventRegistration.user_id == user_id,
                EventRegistration.status == RegistrationStatus.CONFIRMED,
            )
        )
        if existing.scalar_one_or_none() is not None:
            raise DuplicateRegistration(event_id, user_id)

        if event.max_capacity is not None and event.confirmed_registrations >= event.max_capacity:
            raise EventFull(event_id, max_capacity=event.max_capacity)

        return calculate_event_total(
            registration_fee=event.registration_fee,
            guest_fee=event.guest_fee,
            guest_count=intent.guest_count,
            donation_amount=intent.donation_amount,
        ).total

    async def initiate(
        self,
        tenant_id: str,
        user_id: str,
        reference_type: str,
        reference_id: str,
        intent: Union[Intent, Dict[str, Any]],
    ) -> PaymentTransaction:
        """
        Open a gateway order and record an INITIATED transaction.

        The gateway is called before any row is written: if it is
        unreachable, GatewayUnavailable is raised and nothing is recorded.

        Args:
            tenant_id: Tenant scope
            user_id: Paying user
            reference_type: EVENT_PAYMENT or DONATION
            reference_id: Event id, or tenant/campaign id for donations
            intent: Typed intent (or its JSON form)

        Returns:
            PaymentTransaction: The INITIATED transaction with its gateway order id

        Raises:
            PaymentValidationError: Bad input, or the gateway rejected the order
            EventNotFound / DuplicateRegistration / EventFull: Pre-flight checks
            GatewayUnavailable: Gateway unreachable after retries
        """
        if not user_id:
            raise PaymentValidationError("User ID is required")
        if isinstance(intent, dict):
            try:
                intent = parse_intent(intent)
            except ValueError as e:
                raise PaymentValidationError(f"Invalid registration intent: {e}") from e
        if intent.kind != reference_type:
            raise PaymentValidationError(
                f"Intent kind {intent.kind} does not match reference type {reference_type}"
            )

        logger.info(
            "payment_initiation_started",
            tenant_id=tenant_id,
            user_id=user_id,
            reference_type=reference_type,
            reference_id=reference_id,
        )

        async with self._sessions()() as db:
            if isinstance(intent, EventPaymentIntent):
                amount = await self._price_event_payment(
                    db, tenant_id, user_id, reference_id, intent
                )
            else:
                amount = calculate_donation_total(intent.amount)

        transaction_id = uuid.uuid4()
        currency = self.settings.currency

        try:
            order = await self.gateway.create_order(
                amount=amount,
                currency=currency,
                receipt=str(transaction_id),
                notes={
                    "transaction_id": str(transaction_id),
                    "tenant_id": tenant_id,
                    "reference_type": reference_type,
                    "reference_id": str(reference_id),
                },
            )
        except GatewayError as e:
            logger.error(
                "payment_gateway_order_failed",
                transaction_id=str(transaction_id),
                error=str(e),
                error_type=e.error_type.value,
            )
            if not e.retryable:
                raise PaymentValidationError(f"Payment gateway rejected the order: {e}") from e
            raise GatewayUnavailable(str(e)) from e

        now = utcnow()
        txn = PaymentTransaction(
            id=transaction_id,
            tenant_id=tenant_id,
            reference_type=reference_type,
            reference_id=str(reference_id),
            user_id=user_id,
            amount=amount,
            currency=currency,
            status=TransactionStatus.INITIATED,
            gateway_order_id=order.id,
            registration_intent=dump_intent(intent),
            created_at=now,
            expires_at=now + timedelta(minutes=self.settings.payment_timeout_minutes),
        )

        async with self._sessions()() as db:
            db.add(txn)
            write_outbox_event(
                db,
                aggregate_id=transaction_id,
                aggregate_type="payment",
                event_type="payment.initiated",
                tenant_id=tenant_id,
                payload={
                    "transaction_id": str(transaction_id),
                    "user_id": user_id,
                    "reference_type": reference_type,
                    "reference_id": str(reference_id),
                    "amount": str(amount),
                    "currency": currency,
                    "gateway_order_id": order.id,
                },
            )
            await db.commit()

        metrics.record_payment_transaction(TransactionStatus.INITIATED, reference_type)
        metrics.record_payment_amount(float(amount))
        logger.info(
            "payment_initiated",
            transaction_id=str(transaction_id),
            gateway_order_id=order.id,
            amount=str(amount),
            currency=currency,
        )
        return txn

    # ------------------------------------------------------------------
    # verify / fail / expire
    # ------------------------------------------------------------------

    @staticmethod
    async def _load(
        db: AsyncSession,
        transaction_id: uuid.UUID,
        tenant_id: Optional[str] = None,
        refresh: bool = False,
    ) -> PaymentTransaction:
        stmt = select(PaymentTransaction).where(PaymentTransaction.id == transaction_id)
        if tenant_id is not None:
            stmt = stmt.where(PaymentTransaction.tenant_id == tenant_id)
        if refresh:
            stmt = stmt.execution_options(populate_existing=True)
        result = await db.execute(stmt)
        txn = result.scalar_one_or_none()
        if txn is None:
            raise TransactionNotFound(transaction_id)
        return txn

    @staticmethod
    async def _transition(
        db: AsyncSession, transaction_id: uuid.UUID, to_status: str, **values: Any
    ) -> bool:
        """Move INITIATED to `to_status`; False if another caller already moved it."""
        result = await db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction_id,
                PaymentTransaction.status == TransactionStatus.INITIATED,
            )
            .values(status=to_status, **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def verify(
        self,
        transaction_id: Any,
        gateway_payment_id: str,
        gateway_signature: str,
        gateway_order_id: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> PaymentTransaction:
        """
        Verify a gateway confirmation and settle the payment.

        The signature is recomputed from the stored order id, never from the
        caller's. Idempotent: a repeated valid confirmation returns the
        COMPLETED record, and the settlement hook short-circuits.

        Raises:
            TransactionNotFound: Unknown transaction (or other tenant)
            SignatureMismatch: Signature invalid; an INITIATED transaction is marked FAILED
        """
        txn_id = coerce_uuid(transaction_id)
        if txn_id is None:
            raise TransactionNotFound(transaction_id)

        async with self._sessions()() as db:
            txn = await self._load(db, txn_id, tenant_id)
            order_id = txn.gateway_order_id
            reference_type = txn.reference_type

            if gateway_order_id is not None and gateway_order_id != order_id:
                logger.warning(
                    "payment_verify_order_mismatch",
                    transaction_id=str(txn_id),
                    claimed_order_id=gateway_order_id,
                )

            matches = bool(gateway_payment_id) and self.gateway.verify_payment_signature(
                order_id, gateway_payment_id, gateway_signature
            )

            if txn.status == TransactionStatus.INITIATED:
                if matches:
                    completed_at = utcnow()
                    transitioned = await self._transition(
                        db,
                        txn_id,
                        TransactionStatus.COMPLETED,
                        gateway_payment_id=gateway_payment_id,
                        gateway_signature=gateway_signature,
                        completed_at=completed_at,
                        failure_reason=None,
                    )
                    if transitioned:
                        write_outbox_event(
                            db,
                            aggregate_id=txn_id,
                            aggregate_type="payment",
                            event_type="payment.completed",
                            tenant_id=txn.tenant_id,
                            payload={
                                "transaction_id": str(txn_id),
                                "user_id": txn.user_id,
                                "reference_type": reference_type,
                                "reference_id": txn.reference_id,
                                "amount": str(txn.amount),
                                "gateway_payment_id": gateway_payment_id,
                            },
                        )
                        await db.commit()
                        metrics.record_payment_transaction(
                            TransactionStatus.COMPLETED, reference_type
                        )
                        logger.info(
                            "payment_completed",
                            transaction_id=str(txn_id),
                            gateway_payment_id=gateway_payment_id,
                        )
                    else:
                        await db.rollback()
                else:
                    transitioned = await self._transition(
                        db,
                        txn_id,
                        TransactionStatus.FAILED,
                        gateway_payment_id=gateway_payment_id or None,
                        failure_reason="signature_mismatch",
                    )
                    if transitioned:
                        write_outbox_event(
                            db,
                            aggregate_id=txn_id,
                            aggregate_type="payment",
                            event_type="payment.failed",
                            tenant_id=txn.tenant_id,
                            payload={
                                "transaction_id": str(txn_id),
                                "user_id": txn.user_id,
                                "reason": "signature_mismatch",
                            },
                        )
                        await db.commit()
                        metrics.record_payment_transaction(TransactionStatus.FAILED, reference_type)
                    else:
                        await db.rollback()
                    metrics.record_signature_mismatch()
                    logger.warning(
                        "payment_signature_mismatch",
                        transaction_id=str(txn_id),
                        marked_failed=transitioned,
                    )
                    raise SignatureMismatch(txn_id)

                txn = await self._load(db, txn_id, refresh=True)

            if not matches:
                # Terminal records are never rewritten by a bad callback
                metrics.record_signature_mismatch()
                logger.warning(
                    "payment_signature_mismatch",
                    transaction_id=str(txn_id),
                    status=txn.status,
                    marked_failed=False,
                )
                raise SignatureMismatch(txn_id, status=txn.status)

        if txn.status == TransactionStatus.COMPLETED:
            await self._settle(txn)
        else:
            logger.warning(
                "payment_verify_terminal",
                transaction_id=str(txn_id),
                status=txn.status,
            )
        return txn

    async def _settle(self, txn: PaymentTransaction) -> None:
        """Run the settlement hook for a COMPLETED transaction."""
        if txn.reference_type == REFERENCE_EVENT_PAYMENT:
            await self.registration_service.commit(txn.id)
        elif txn.reference_type == REFERENCE_DONATION:
            await self.registration_service.record_donation(txn.id)

    async def fail(
        self,
        transaction_id: Any,
        reason: str,
        gateway_payment_id: Optional[str] = None,
    ) -> PaymentTransaction:
        """
        Close an open transaction as FAILED (INITIATED -> FAILED).

        For operator and reconciliation use. A failed attempt reported by
        the gateway goes to record_failed_attempt instead, since the order
        stays payable.

        Idempotent; a transaction already past INITIATED is returned as is.
        """
        txn_id = coerce_uuid(transaction_id)
        if txn_id is None:
            raise TransactionNotFound(transaction_id)

        async with self._sessions()() as db:
            txn = await self._load(db, txn_id)
            if txn.status != TransactionStatus.INITIATED:
                return txn

            transitioned = await self._transition(
                db,
                txn_id,
                TransactionStatus.FAILED,
                gateway_payment_id=gateway_payment_id,
                failure_reason=reason,
            )
            if transitioned:
                write_outbox_event(
                    db,
                    aggregate_id=txn_id,
                    aggregate_type="payment",
                    event_type="payment.failed",
                    tenant_id=txn.tenant_id,
                    payload={
                        "transaction_id": str(txn_id),
                        "user_id": txn.user_id,
                        "reason": reason,
                    },
                )
                await db.commit()
                metrics.record_payment_transaction(TransactionStatus.FAILED, txn.reference_type)
                logger.info("payment_failed", transaction_id=str(txn_id), reason=reason)
            else:
                await db.rollback()

            return await self._load(db, txn_id, refresh=True)

    async def record_failed_attempt(
        self,
        transaction_id: Any,
        reason: str,
        gateway_payment_id: Optional[str] = None,
    ) -> PaymentTransaction:
        """
        Note a failed payment attempt on an order that is still open.

        Razorpay reports each declined attempt separately and the user may
        retry on the same order, so the transaction stays INITIATED. A later
        capture completes it; otherwise expire_stale closes it.
        """
        txn_id = coerce_uuid(transaction_id)
        if txn_id is None:
            raise TransactionNotFound(transaction_id)

        async with self._sessions()() as db:
            result = await db.execute(
                update(PaymentTransaction)
                .where(
                    PaymentTransaction.id == txn_id,
                    PaymentTransaction.status == TransactionStatus.INITIATED,
                )
                .values(failure_reason=reason)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            txn = await self._load(db, txn_id, refresh=True)

        if result.rowcount == 1:
            metrics.record_payment_attempt_failed()
            logger.warning(
                "payment_attempt_failed",
                transaction_id=str(txn_id),
                gateway_payment_id=gateway_payment_id,
                reason=reason,
            )
        return txn

    async def expire_stale(self, older_than: Optional[datetime] = None, batch_size: int = 500) -> int:
        """
        Expire INITIATED transactions whose expires_at has passed.

        Uses the same conditional transition as verify, so a confirmation
        racing the sweep wins or loses cleanly.

        Args:
            older_than: Cutoff; defaults to now
            batch_size: Max transactions examined per call

        Returns:
            int: Number of transactions expired
        """
        cutoff = older_than or utcnow()
        expired = 0

        async with self._sessions()() as db:
            result = await db.execute(
                select(
                    PaymentTransaction.id,
                    PaymentTransaction.tenant_id,
                    PaymentTransaction.reference_type,
                )
                .where(
                    PaymentTransaction.status == TransactionStatus.INITIATED,
                    PaymentTransaction.expires_at < cutoff,
                )
                .order_by(PaymentTransaction.expires_at)
                .limit(batch_size)
            )
            candidates = result.all()

            for txn_id, tenant_id, reference_type in candidates:
                if await self._transition(
                    db, txn_id, TransactionStatus.EXPIRED, failure_reason="payment_timeout"
                ):
                    write_outbox_event(
                        db,
                        aggregate_id=txn_id,
                        aggregate_type="payment",
                        event_type="payment.expired",
                        tenant_id=tenant_id,
                        payload={"transaction_id": str(txn_id)},
                    )
                    metrics.record_payment_transaction(TransactionStatus.EXPIRED, reference_type)
                    expired += 1

            await db.commit()

        metrics.record_expired_transactions(expired)
        logger.info(
            "stale_transactions_expired",
            examined=len(candidates),
            expired=expired,
            cutoff=cutoff.isoformat(),
        )
        return expired

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def get(self, transaction_id: Any, tenant_id: Optional[str] = None) -> PaymentTransaction:
        """Load a transaction, scoped to a tenant when one is given."""
        txn_id = coerce_uuid(transaction_id)
        if txn_id is None:
            raise TransactionNotFound(transaction_id)
        async with self._sessions()() as db:
            return await self._load(db, txn_id, tenant_id)

    async def find_by_order_id(self, gateway_order_id: str) -> Optional[PaymentTransaction]:
        async with self._sessions()() as db:
            result = await db.execute(
                select(PaymentTransaction).where(
                    PaymentTransaction.gateway_order_id == gateway_order_id
                )
            )
            return result.scalar_one_or_none()
