"""
QR check-in credentials.

One credential per confirmed registration. The token is an HS256 JWT
binding registration, event, user and a random nonce; the nonce is stored
with the credential so a revoked or re-armed credential invalidates every
token issued before it.
"""
import secrets
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

import jwt
import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from event_settlement.config import get_settings
from event_settlement.core.exceptions import (
    EventNotFound,
    InvalidToken,
    RegistrationNotConfirmed,
    RegistrationNotFound,
    TokenRevoked,
    TransactionNotFound,
)
from event_settlement.core.ids import coerce_uuid
from event_settlement.database.connection import get_session_factory
from event_settlement.database.models import (
    Event,
    EventRegistration,
    PaymentTransaction,
    QRCredential,
    RegistrationStatus,
)
from event_settlement.monitoring.metrics import metrics
from event_settlement.timeutils import as_utc, utcnow

logger = structlog.get_logger(__name__)

ALGORITHM = "HS256"


@dataclass(frozen=True)
class TokenClaims:
    """Verified contents of a check-in token."""

    registration_id: uuid.UUID
    event_id: uuid.UUID
    user_id: str
    nonce: str


@dataclass(frozen=True)
class QRAnalytics:
    """Usage of an event's active credentials."""

    event_id: str
    credentials_generated: int
    credentials_scanned: int
    total_scans: int

    @property
    def average_scans_per_credential(self) -> float:
        if self.credentials_generated == 0:
            return 0.0
        return round(self.total_scans / self.credentials_generated, 2)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["average_scans_per_credential"] = self.average_scans_per_credential
        return data


class QRTokenService:
    """Issues, verifies and revokes check-in credentials."""

    def __init__(
        self,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        signing_key: Optional[str] = None,
    ):
        self.settings = get_settings()
        self.session_factory = session_factory
        self.signing_key = signing_key or self.settings.qr_signing_key

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self.session_factory or get_session_factory()

    def expires_at(self, event: Optional[Event]) -> Optional[datetime]:
        """
        Token expiry for an event: qr_token_ttl_hours after the start, but
        never before the check-in window closes. None when the event has no
        start time or the TTL is 0.
        """
        ttl_hours = self.settings.qr_token_ttl_hours
        starts_at = as_utc(event.starts_at) if event is not None else None
        if ttl_hours <= 0 or starts_at is None:
            return None
        lifetime = max(
            timedelta(hours=ttl_hours),
            timedelta(minutes=self.settings.checkin_window_after_minutes),
        )
        return starts_at + lifetime

    def _sign(self, registration: EventRegistration, event: Optional[Event], nonce: str) -> str:
        now = utcnow()
        claims = {
            "sub": str(registration.id),
            "evt": str(registration.event_id),
            "uid": registration.user_id,
            "nonce": nonce,
            "iat": int(now.timestamp()),
        }
        expires_at = self.expires_at(event)
        if expires_at is not None:
            claims["exp"] = int(expires_at.timestamp())
        return jwt.encode(claims, self.signing_key, algorithm=ALGORITHM)

    @staticmethod
    async def _find_credential(db: AsyncSession, registration_id: uuid.UUID) -> Optional[QRCredential]:
        result = await db.execute(
            select(QRCredential)
            .where(QRCredential.registration_id == registration_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def _load_registration(
        db: AsyncSession, registration_id: Any, tenant_id: Optional[str]
    ) -> EventRegistration:
        reg_id = coerce_uuid(registration_id)
        if reg_id is None:
            raise RegistrationNotFound(registration_id)
        stmt = select(EventRegistration).where(EventRegistration.id == reg_id)
        if tenant_id is not None:
            stmt = stmt.where(EventRegistration.tenant_id == tenant_id)
        registration = (await db.execute(stmt)).scalar_one_or_none()
        if registration is None:
            raise RegistrationNotFound(registration_id)
        return registration

    async def issue(self, registration_id: Any, tenant_id: Optional[str] = None) -> QRCredential:
        """
        Return the registration's active credential, creating it on first use.

        Repeated calls return the same token. Concurrent first calls race on
        the unique registration_id; the loser returns the winner's row.

        Raises:
            RegistrationNotFound: Unknown registration (or other tenant)
            RegistrationNotConfirmed: Registration is not CONFIRMED
        """
        async with self._sessions()() as db:
            registration = await self._load_registration(db, registration_id, tenant_id)
            reg_id = registration.id
            if registration.status != RegistrationStatus.CONFIRMED:
                metrics.record_qr_issuance("not_confirmed")
                raise RegistrationNotConfirmed(reg_id, status=registration.status)

            credential = await self._find_credential(db, reg_id)
            if credential is not None and credential.is_active:
                metrics.record_qr_issuance("existing")
                return credential

            event = await db.get(Event, registration.event_id)
            nonce = secrets.token_urlsafe(16)
            token = self._sign(registration, event, nonce)
            generated_at = utcnow()

            if credential is not None:
                # Revoked earlier: re-arm the same row with a fresh nonce
                result = await db.execute(
                    update(QRCredential)
                    .where(QRCredential.id == credential.id, QRCredential.is_active == False)  # noqa: E712
                    .values(token=token, nonce=nonce, generated_at=generated_at, is_active=True)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    await db.commit()
                    outcome = "rearmed"
                else:
                    await db.rollback()
                    outcome = "existing"
                metrics.record_qr_issuance(outcome)
                logger.info("qr_credential_issued", registration_id=str(reg_id), outcome=outcome)
                return await self._find_credential(db, reg_id)

            credential = QRCredential(
                id=uuid.uuid4(),
                registration_id=reg_id,
                token=token,
                nonce=nonce,
                generated_at=generated_at,
                scan_count=0,
                is_active=True,
            )
            db.add(credential)
            try:
                await db.flush()
                await db.commit()
            except IntegrityError:
                # Unique registration_id: a concurrent issue created the
                # credential first. Its token is the one to hand out.
                await db.rollback()
                winner = await self._find_credential(db, reg_id)
                if winner is None:
                    raise
                metrics.record_qr_issuance("existing")
                logger.info("qr_credential_issue_race_resolved", registration_id=str(reg_id))
                return winner

        metrics.record_qr_issuance("created")
        logger.info("qr_credential_issued", registration_id=str(reg_id), outcome="created")
        return credential

    async def issue_for_transaction(
        self, transaction_id: Any, tenant_id: Optional[str] = None
    ) -> QRCredential:
        """
        Issue by payment id, for clients polling after checkout.

        Raises:
            TransactionNotFound: Unknown transaction (or other tenant)
            RegistrationNotConfirmed: Payment not settled into a registration yet
        """
        txn_id = coerce_uuid(transaction_id)
        if txn_id is None:
            raise TransactionNotFound(transaction_id)

        async with self._sessions()() as db:
            stmt = select(EventRegistration.id).where(
                EventRegistration.source_transaction_id == txn_id
            )
            if tenant_id is not None:
                stmt = stmt.where(EventRegistration.tenant_id == tenant_id)
            registration_id = (await db.execute(stmt)).scalar_one_or_none()

            if registration_id is None:
                txn_stmt = select(PaymentTransaction.status).where(PaymentTransaction.id == txn_id)
                if tenant_id is not None:
                    txn_stmt = txn_stmt.where(PaymentTransaction.tenant_id == tenant_id)
                status = (await db.execute(txn_stmt)).scalar_one_or_none()
                if status is None:
                    raise TransactionNotFound(transaction_id)
                metrics.record_qr_issuance("not_confirmed")
                raise RegistrationNotConfirmed(txn_id, payment_status=status)

        return await self.issue(registration_id, tenant_id=tenant_id)

    async def decode(self, token: str, verify_exp: bool = True) -> TokenClaims:
        """
        Verify a scanned token against its signature and stored credential.

        Args:
            token: Encoded token
            verify_exp: Reject tokens past their exp claim

        Raises:
            InvalidToken: Bad signature, expired, malformed or unknown credential
            TokenRevoked: Credential deactivated or superseded by a newer nonce
        """
        try:
            payload = jwt.decode(
                token,
                self.signing_key,
                algorithms=[ALGORITHM],
                options={
                    "require": ["sub", "evt", "uid", "nonce", "iat"],
                    "verify_exp": verify_exp,
                },
            )
        except jwt.ExpiredSignatureError as e:
            metrics.record_qr_rejection("expired")
            logger.warning("qr_token_expired")
            raise InvalidToken("expired") from e
        except jwt.InvalidTokenError as e:
            metrics.record_qr_rejection("invalid")
            logger.warning("qr_token_invalid", error=str(e))
            raise InvalidToken("invalid") from e

        registration_id = coerce_uuid(payload["sub"])
        event_id = coerce_uuid(payload["evt"])
        if registration_id is None or event_id is None:
            metrics.record_qr_rejection("invalid")
            logger.warning("qr_token_malformed_claims")
            raise InvalidToken("malformed")

        async with self._sessions()() as db:
            credential = await self._find_credential(db, registration_id)

        if credential is None:
            metrics.record_qr_rejection("invalid")
            logger.warning("qr_token_unknown_credential", registration_id=str(registration_id))
            raise InvalidToken("unknown_credential")

        if not credential.is_active or credential.nonce != payload["nonce"]:
            metrics.record_qr_rejection("revoked")
            logger.warning(
                "qr_token_revoked",
                registration_id=str(registration_id),
                active=credential.is_active,
            )
            raise TokenRevoked(registration_id)

        return TokenClaims(
            registration_id=registration_id,
            event_id=event_id,
            user_id=str(payload["uid"]),
            nonce=payload["nonce"],
        )

    async def revoke(self, registration_id: Any, tenant_id: Optional[str] = None) -> bool:
        """
        Deactivate the registration's credential.

        Returns:
            bool: True if an active credential was revoked
        """
        async with self._sessions()() as db:
            registration = await self._load_registration(db, registration_id, tenant_id)
            reg_id = registration.id
            result = await db.execute(
                update(QRCredential)
                .where(QRCredential.registration_id == reg_id, QRCredential.is_active == True)  # noqa: E712
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        revoked = result.rowcount == 1
        logger.info("qr_credential_revoked", registration_id=str(reg_id), revoked=revoked)
        return revoked

    async def analytics(self, event_id: Any, tenant_id: Optional[str] = None) -> QRAnalytics:
        """
        Counts over the event's active credentials.

        Revoked credentials are left out; a re-armed one counts again with
        its scan history.

        Raises:
            EventNotFound: Unknown event (or other tenant)
        """
        ev_id = coerce_uuid(event_id)
        async with self._sessions()() as db:
            event = await db.get(Event, ev_id) if ev_id is not None else None
            if event is None or (tenant_id is not None and event.tenant_id != tenant_id):
                raise EventNotFound(event_id)

            row = (
                await db.execute(
                    select(
                        func.count(QRCredential.id),
                        func.count(QRCredential.id).filter(QRCredential.scan_count > 0),
                        func.coalesce(func.sum(QRCredential.scan_count), 0),
                    )
                    .join(EventRegistration, EventRegistration.id == QRCredential.registration_id)
                    .where(
                        EventRegistration.event_id == event.id,
                        QRCredential.is_active == True,  # noqa: E712
                    )
                )
            ).one()

        return QRAnalytics(
            event_id=str(event.id),
            credentials_generated=int(row[0]),
            credentials_scanned=int(row[1]),
            total_scans=int(row[2]),
        )
