"""
Transactional outbox.

State changes (payment completed, registration confirmed, attendee checked
in, ...) write an outbox row in the same database transaction as the change
itself. A background worker publishes the rows afterwards, so notification
delivery can fail or lag without affecting what was committed.
"""
import asyncio
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from event_settlement.config import get_settings
from event_settlement.database.connection import get_session_factory
from event_settlement.database.models import OutboxEvent
from event_settlement.monitoring.metrics import metrics
from event_settlement.timeutils import utcnow

logger = structlog.get_logger(__name__)

PublisherFunc = Callable[[Dict[str, Any]], Awaitable[Any]]


def write_outbox_event(
    db: AsyncSession,
    aggregate_id: uuid.UUID,
    aggregate_type: str,
    event_type: str,
    payload: Dict[str, Any],
    tenant_id: Optional[str] = None,
) -> OutboxEvent:
    """
    Stage an outbox event on the caller's session.

    Nothing is flushed here; the row commits or rolls back with the
    caller's transaction.

    Args:
        db: Database session
        aggregate_id: Aggregate ID (e.g., registration ID)
        aggregate_type: Aggregate type (e.g., 'registration')
        event_type: Event type (e.g., 'registration.confirmed')
        payload: JSON-serializable event payload
        tenant_id: Tenant the event belongs to
    """
    outbox_event = OutboxEvent(
        aggregate_id=aggregate_id,
        aggregate_type=aggregate_type,
        event_type=event_type,
        tenant_id=tenant_id,
        payload=payload,
        published=False,
        created_at=utcnow(),
    )
    db.add(outbox_event)
    return outbox_event


class OutboxPublisher:
    """
    Publishes events from the outbox table.

    Delivery is at-least-once:
    1. Read unpublished events from outbox
    2. Hand each to the publisher function
    3. Mark the delivered ones as published
    """

    def __init__(
        self,
        publisher_func: Optional[PublisherFunc] = None,
        batch_size: Optional[int] = None,
        poll_interval_seconds: Optional[float] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    ):
        """
        Initialize outbox publisher.

        Args:
            publisher_func: Coroutine that delivers one event
                (e.g. NotificationDispatcher.dispatch)
            batch_size: Number of events to process per batch
            poll_interval_seconds: Polling interval when the outbox is empty
            session_factory: Session factory (defaults to the shared one)
        """
        settings = get_settings()
        self.publisher_func = publisher_func or self._default_publisher
        self.batch_size = batch_size or settings.outbox_batch_size
        self.poll_interval_seconds = (
            poll_interval_seconds
            if poll_interval_seconds is not None
            else settings.outbox_poll_interval_seconds
        )
        self.session_factory = session_factory
        self._running = False

        logger.info(
            "outbox_publisher_initialized",
            batch_size=self.batch_size,
            poll_interval=self.poll_interval_seconds,
        )

    def _sessions(self) -> async_sessionmaker[AsyncSession]:
        return self.session_factory or get_session_factory()

    async def _default_publisher(self, event_data: Dict[str, Any]) -> None:
        """Log-only publisher used when no dispatcher is configured."""
        logger.info(
            "outbox_event_published_default",
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    async def _fetch_unpublished_events(self, db: AsyncSession) -> List[OutboxEvent]:
        stmt = (
            select(OutboxEvent)
            .where(OutboxEvent.published == False)  # noqa: E712
            .order_by(OutboxEvent.created_at, OutboxEvent.id)
            .limit(self.batch_size)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def _publish_event(self, event: OutboxEvent) -> bool:
        """
        Publish a single event.

        Returns:
            bool: True if published successfully, False otherwise
        """
        try:
            event_data = {
                "id": event.id,
                "aggregate_id": str(event.aggregate_id),
                "aggregate_type": event.aggregate_type,
                "event_type": event.event_type,
                "tenant_id": event.tenant_id,
                "payload": event.payload,
                "created_at": event.created_at.isoformat(),
            }

            await self.publisher_func(event_data)

            metrics.record_outbox_event_published(event.event_type)
            logger.info(
                "outbox_event_published",
                event_id=event.id,
                event_type=event.event_type,
                aggregate_id=str(event.aggregate_id),
            )
            return True

        except Exception as e:
            logger.error(
                "outbox_event_publish_failed",
                event_id=event.id,
                event_type=event.event_type,
                error=str(e),
            )
            return False

    async def _mark_as_published(self, db: AsyncSession, event_ids: List[int]) -> None:
        if not event_ids:
            return

        stmt = (
            update(OutboxEvent)
            .where(OutboxEvent.id.in_(event_ids))
            .values(published=True, published_at=utcnow())
        )
        await db.execute(stmt)
        await db.commit()

        logger.info("outbox_events_marked_published", count=len(event_ids))

    async def process_batch(self) -> int:
        """
        Process a batch of unpublished events.

        Returns:
            int: Number of events published
        """
        async with self._sessions()() as db:
            try:
                events = await self._fetch_unpublished_events(db)
                # Release the read snapshot before calling out
                await db.commit()

                if not events:
                    return 0

                logger.info("outbox_batch_processing_started", batch_size=len(events))

                published_ids = []
                for event in events:
                    if await self._publish_event(event):
                        published_ids.append(event.id)

                if published_ids:
                    await self._mark_as_published(db, published_ids)

                logger.info(
                    "outbox_batch_processed",
                    total=len(events),
                    published=len(published_ids),
                    failed=len(events) - len(published_ids),
                )
                return len(published_ids)

            except Exception as e:
                logger.error("outbox_batch_processing_error", error=str(e))
                await db.rollback()
                return 0

    async def start(self) -> None:
        """
        Start the outbox publisher loop.

        Continuously polls for unpublished events and publishes them.
        """
        self._running = True
        logger.info("outbox_publisher_started")

        try:
            while self._running:
                try:
                    published_count = await self.process_batch()
                    metrics.set_outbox_queue_depth(await self.get_pending_count())

                    if published_count == 0:
                        await asyncio.sleep(self.poll_interval_seconds)
                    else:
                        # More may be waiting
                        await asyncio.sleep(0.1)

                except Exception as e:
                    logger.error("outbox_publisher_error", error=str(e))
                    await asyncio.sleep(self.poll_interval_seconds)

        finally:
            logger.info("outbox_publisher_stopped")

    def stop(self) -> None:
        """Stop the outbox publisher."""
        self._running = False
        logger.info("outbox_publisher_stop_requested")

    async def get_pending_count(self) -> int:
        """Number of unpublished events."""
        async with self._sessions()() as db:
            stmt = (
                select(func.count())
                .select_from(OutboxEvent)
                .where(OutboxEvent.published == False)  # noqa: E712
            )
            result = await db.execute(stmt)
            return int(result.scalar_one())
