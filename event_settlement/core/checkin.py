"""
Check-in coordinator.

Per registration: NotCheckedIn -> CheckedIn, terminal. Gate devices are
separate processes, so the unique registration_id on check_in_records is
what decides a race: the insert is attempted first, and the loser's
IntegrityError becomes AlreadyCheckedIn carrying the winner's details.
"""
import math
import time
import uuid
from collections import Counter
from dataclasses import asdict, dataclass, fields
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from event_settlement.config import get_settings
from event_settlement.core.exceptions import (
    AlreadyCheckedIn,
    CheckInValidationError,
    CheckInWindowClosed,
    EventNotFound,
    GuestCountExceeded,
    InvalidToken,
    RegistrationNotConfirmed,
    RegistrationNotFound,
)
from event_settlement.core.ids import coerce_uuid
from event_settlement.core.outbox import write_outbox_event
from event_settlement.core.qr_tokens import QRTokenService
from event_settlement.core.stats_cache import StatsCache
from event_settlement.database.connection import get_session_factory
from event_settlement.database.models import (
    CheckInRecord,
    Event,
    EventRegistration,
    QRCredential,
    RegistrationStatus,
)
from event_settlement.monitoring.metrics import metrics
from event_settlement.timeutils import as_utc, utcnow

logger = structlog.get_logger(__name__)

MAX_HISTORY_PAGE_SIZE = 100


@dataclass(frozen=True)
class CheckInStats:
    """
    Attendance aggregate for one event.

    remaining, check_in_rate and average_guests_per_check_in are derived
    from the stored counts, so cached payloads only need the counts.
    """

    event_id: str
    total_confirmed: int
    total_checked_in: int
    total_guests_checked_in: int
    total_guests_registered: int = 0

    @property
    def remaining(self) -> int:
        return max(self.total_confirmed - self.total_checked_in, 0)

    @property
    def check_in_rate(self) -> float:
        """Percentage of confirmed registrations checked in, 2 decimals."""
        if self.total_confirmed == 0:
            return 0.0
        return round(self.total_checked_in / self.total_confirmed * 100, 2)

    @property
    def average_guests_per_check_in(self) -> float:
        if self.total_checked_in == 0:
            return 0.0
        return round(self.total_guests_checked_in / self.total_checked_in, 2)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CheckInStats":
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["remaining"] = self.remaining
        data["check_in_rate"] = self.check_in_rate
        data["average_guests_per_check_in"] = self.average_guests_per_check_in
        return data


@dataclass(frozen=True)
class HourlyCheckIns:
    """Check-ins recorded within one clock hour (UTC)."""

    hour: datetime
    count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"hour": self.hour.isoformat(), "count": self.count}


class CheckInCoordinator:
    """Validates scanned tokens and records attendance exactly once."""

    def __init__(
        self,
        qr_service: Optional[QRTokenService] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        stats_cache: Optional[StatsCache] = None,
    ):
        """
        Initialize check-in coordinator.

        Args:
            qr_service: Token verifier (defaults to one on the same sessions)
            session_factory: Session factory (defaults to the shared one)
            stats_cache: Optional Redis cache for stats(); None reads directly
        """
        self.settings = get_settings()
        self.session_factory = session_factory
        self.qr_service = qr_service or QRTokenService(session_factory=session_factory)
        self.stats_cache = stats_cache

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self.session_factory or get_session_factory()

    def _check_window(self, event: Event) -> None:
        if not self.settings.checkin_window_enforced:
            return
        starts_at = as_utc(event.starts_at)
        if starts_at is None:
            return
        opens_at = starts_at - timedelta(minutes=self.settings.checkin_window_before_minutes)
        closes_at = starts_at + timedelta(minutes=self.settings.checkin_window_after_minutes)
        now = utcnow()
        if not opens_at <= now <= closes_at:
            metrics.record_checkin_scan("window_closed")
            raise CheckInWindowClosed(event.id, opens_at=opens_at, closes_at=closes_at)

    async def scan(
        self,
        token: str,
        guests_checked_in: int,
        staff_id: str,
        location: Optional[str] = None,
        notes: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> CheckInRecord:
        """
        Check a registration in from a scanned token.

        Args:
            token: Scanned QR token
            guests_checked_in: Guests arriving with the registrant (0..guest_count)
            staff_id: Staff member operating the gate device
            location: Gate or entrance name
            notes: Free-form staff notes
            tenant_id: Tenant of the scanning device

        Returns:
            CheckInRecord: The new attendance record

        Raises:
            CheckInValidationError: Negative guest count or missing staff id
            InvalidToken / TokenRevoked: Token failed verification
            RegistrationNotConfirmed: Registration was cancelled
            GuestCountExceeded: More guests than registered
            CheckInWindowClosed: Outside the event's check-in window
            AlreadyCheckedIn: Registration already checked in (possibly milliseconds ago)
        """
        start_time = time.time()
        if isinstance(guests_checked_in, bool) or not isinstance(guests_checked_in, int):
            raise CheckInValidationError("guests_checked_in must be an integer")
        if guests_checked_in < 0:
            raise CheckInValidationError("guests_checked_in cannot be negative")
        if not staff_id:
            raise CheckInValidationError("Staff ID is required")

        # exp never precedes the window close, so the window check below
        # reports late scans; with the window disabled late scans are allowed
        claims = await self.qr_service.decode(token, verify_exp=False)

        async with self._sessions()() as db:
            stmt = select(EventRegistration).where(EventRegistration.id == claims.registration_id)
            if tenant_id is not None:
                stmt = stmt.where(EventRegistration.tenant_id == tenant_id)
            registration = (await db.execute(stmt)).scalar_one_or_none()
            if registration is None:
                raise RegistrationNotFound(claims.registration_id)
            if registration.event_id != claims.event_id or registration.user_id != claims.user_id:
                logger.warning(
                    "checkin_token_claims_mismatch",
                    registration_id=str(claims.registration_id),
                )
                raise InvalidToken("claims_mismatch")
            if registration.status != RegistrationStatus.CONFIRMED:
                raise RegistrationNotConfirmed(registration.id, status=registration.status)

            reg_id = registration.id
            event_id = registration.event_id
            allowed = registration.guest_count
            reg_tenant_id = registration.tenant_id
            user_id = registration.user_id

            if guests_checked_in > allowed:
                metrics.record_checkin_scan("guest_count_exceeded")
                logger.warning(
                    "checkin_guest_count_exceeded",
                    registration_id=str(reg_id),
                    requested=guests_checked_in,
                    allowed=allowed,
                )
                raise GuestCountExceeded(guests_checked_in, allowed)

            event = await db.get(Event, event_id)
            if event is None:
                raise EventNotFound(event_id)
            self._check_window(event)

            checked_in_at = utcnow()
            record = CheckInRecord(
                id=uuid.uuid4(),
                registration_id=reg_id,
                event_id=event_id,
                checked_in_at=checked_in_at,
                guests_checked_in=guests_checked_in,
                total_guests_allowed=allowed,
                check_in_location=location,
                checked_in_by_staff_id=staff_id,
                notes=notes,
            )
            db.add(record)

            try:
                # The insert is the first write and the race adjudicator
                await db.flush()
            except IntegrityError as e:
                # Unique registration_id: another device recorded this
                # registration first. Report the original check-in.
                await db.rollback()
                existing = (
                    await db.execute(
                        select(CheckInRecord).where(CheckInRecord.registration_id == reg_id)
                    )
                ).scalar_one_or_none()
                if existing is None:
                    raise
                metrics.record_checkin_scan("already_checked_in", time.time() - start_time)
                logger.warning(
                    "checkin_already_checked_in",
                    registration_id=str(reg_id),
                    checked_in_at=as_utc(existing.checked_in_at).isoformat(),
                    checked_in_by_staff_id=existing.checked_in_by_staff_id,
                    scanning_staff_id=staff_id,
                )
                raise AlreadyCheckedIn(
                    reg_id,
                    checked_in_at=as_utc(existing.checked_in_at),
                    checked_in_by_staff_id=existing.checked_in_by_staff_id,
                ) from e

            await db.execute(
                update(QRCredential)
                .where(QRCredential.registration_id == reg_id)
                .values(
                    scan_count=QRCredential.scan_count + 1,
                    last_scanned_at=checked_in_at,
                )
                .execution_options(synchronize_session=False)
            )
            write_outbox_event(
                db,
                aggregate_id=reg_id,
                aggregate_type="registration",
                event_type="attendee.checked_in",
                tenant_id=reg_tenant_id,
                payload={
                    "registration_id": str(reg_id),
                    "event_id": str(event_id),
                    "user_id": user_id,
                    "guests_checked_in": guests_checked_in,
                    "total_guests_allowed": allowed,
                    "checked_in_at": checked_in_at.isoformat(),
                    "checked_in_by_staff_id": staff_id,
                    "check_in_location": location,
                },
            )
            await db.commit()

        if self.stats_cache is not None:
            await self.stats_cache.invalidate(event_id)

        metrics.record_checkin_scan("checked_in", time.time() - start_time)
        logger.info(
            "attendee_checked_in",
            registration_id=str(reg_id),
            event_id=str(event_id),
            guests_checked_in=guests_checked_in,
            total_guests_allowed=allowed,
            staff_id=staff_id,
            location=location,
        )
        return record

    @staticmethod
    async def _load_event(db: AsyncSession, event_id: Any, tenant_id: Optional[str]) -> Event:
        ev_id = coerce_uuid(event_id)
        event = await db.get(Event, ev_id) if ev_id is not None else None
        if event is None or (tenant_id is not None and event.tenant_id != tenant_id):
            raise EventNotFound(event_id)
        return event

    async def stats(self, event_id: Any, tenant_id: Optional[str] = None) -> CheckInStats:
        """
        Attendance totals for an event.

        Served from the stats cache when one is configured; the cache is
        invalidated on every successful scan.
        """
        async with self._sessions()() as db:
            event = await self._load_event(db, event_id, tenant_id)
            ev_id = event.id

            if self.stats_cache is not None:
                cached = await self.stats_cache.get(ev_id)
                if cached is not None:
                    return CheckInStats.from_dict(cached)

            confirmed = (
                select(func.count(EventRegistration.id))
                .where(
                    EventRegistration.event_id == ev_id,
                    EventRegistration.status == RegistrationStatus.CONFIRMED,
                )
                .scalar_subquery()
            )
            checked_in = (
                select(func.count(CheckInRecord.id))
                .where(CheckInRecord.event_id == ev_id)
                .scalar_subquery()
            )
            guests = (
                select(func.coalesce(func.sum(CheckInRecord.guests_checked_in), 0))
                .where(CheckInRecord.event_id == ev_id)
                .scalar_subquery()
            )
            guests_registered = (
                select(func.coalesce(func.sum(EventRegistration.guest_count), 0))
                .where(
                    EventRegistration.event_id == ev_id,
                    EventRegistration.status == RegistrationStatus.CONFIRMED,
                )
                .scalar_subquery()
            )
            row = (
                await db.execute(select(confirmed, checked_in, guests, guests_registered))
            ).one()

        stats = CheckInStats(
            event_id=str(ev_id),
            total_confirmed=int(row[0]),
            total_checked_in=int(row[1]),
            total_guests_checked_in=int(row[2]),
            total_guests_registered=int(row[3]),
        )
        if self.stats_cache is not None:
            await self.stats_cache.set(ev_id, stats.to_dict())
        return stats

    async def timeline(self, event_id: Any, tenant_id: Optional[str] = None) -> List[HourlyCheckIns]:
        """
        Check-ins per clock hour (UTC), oldest hour first.

        Hours without check-ins are omitted.
        """
        async with self._sessions()() as db:
            event = await self._load_event(db, event_id, tenant_id)
            result = await db.execute(
                select(CheckInRecord.checked_in_at).where(CheckInRecord.event_id == event.id)
            )
            buckets = Counter(
                as_utc(checked_in_at).replace(minute=0, second=0, microsecond=0)
                for checked_in_at in result.scalars()
            )

        return [HourlyCheckIns(hour=hour, count=count) for hour, count in sorted(buckets.items())]

    async def history(
        self,
        event_id: Any,
        page: int = 1,
        limit: int = 20,
        tenant_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Check-ins for an event, newest first.

        Returns:
            Dict[str, Any]: {"items": [CheckInRecord, ...], "pagination": {...}}
        """
        page = max(page, 1)
        limit = min(max(limit, 1), MAX_HISTORY_PAGE_SIZE)

        async with self._sessions()() as db:
            event = await self._load_event(db, event_id, tenant_id)
            total = (
                await db.execute(
                    select(func.count(CheckInRecord.id)).where(CheckInRecord.event_id == event.id)
                )
            ).scalar_one()
            result = await db.execute(
                select(CheckInRecord)
                .where(CheckInRecord.event_id == event.id)
                .order_by(CheckInRecord.checked_in_at.desc(), CheckInRecord.id)
                .offset((page - 1) * limit)
                .limit(limit)
            )
            items = list(result.scalars().all())

        return {
            "items": items,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }
