"""
Tests for the transactional outbox and the notification dispatcher.
"""
import json
from typing import Any, Dict, List

import httpx
import pytest
from sqlalchemy import select

from event_settlement.core.outbox import OutboxPublisher
from event_settlement.database.models import OutboxEvent
from event_settlement.integrations.notifications import NotificationDispatcher, NotificationError


class TestOutboxPublisher:
    """Test suite for publishing staged events."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_process_batch_publishes_in_order(
        self, make_event: Any, pay: Any, session_factory: Any
    ) -> None:
        event = await make_event()
        await pay(event)
        delivered: List[Dict[str, Any]] = []

        async def publish(event_data: Dict[str, Any]) -> None:
            delivered.append(event_data)

        publisher = OutboxPublisher(
            publisher_func=publish, batch_size=50, session_factory=session_factory
        )
        pending = await publisher.get_pending_count()

        published = await publisher.process_batch()

        assert pending > 0
        assert published == pending
        assert await publisher.get_pending_count() == 0
        event_types = [d["event_type"] for d in delivered]
        assert event_types.index("payment.completed") < event_types.index("registration.confirmed")
        assert all(d["tenant_id"] for d in delivered)

        async with session_factory() as db:
            rows = (await db.execute(select(OutboxEvent))).scalars().all()
        assert all(row.published and row.published_at is not None for row in rows)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_delivery_stays_pending(
        self, make_event: Any, pay: Any, session_factory: Any
    ) -> None:
        event = await make_event()
        await pay(event)

        async def publish(event_data: Dict[str, Any]) -> None:
            if event_data["event_type"] == "registration.confirmed":
                raise NotificationError("notification service down")

        publisher = OutboxPublisher(publisher_func=publish, session_factory=session_factory)
        pending = await publisher.get_pending_count()

        published = await publisher.process_batch()

        assert published == pending - 1
        assert await publisher.get_pending_count() == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_batch_size_limits_work(
        self, make_event: Any, pay: Any, session_factory: Any
    ) -> None:
        event = await make_event()
        await pay(event, user_id="member_1")
        await pay(event, user_id="member_2")

        publisher = OutboxPublisher(batch_size=2, session_factory=session_factory)
        before = await publisher.get_pending_count()

        assert await publisher.process_batch() == 2
        assert await publisher.get_pending_count() == before - 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_empty_outbox(self, session_factory: Any) -> None:
        publisher = OutboxPublisher(session_factory=session_factory)

        assert await publisher.process_batch() == 0
        assert await publisher.get_pending_count() == 0


class TestNotificationDispatcher:
    """Test suite for delivering events over HTTP."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dispatch_posts_event(self) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(202)

        dispatcher = NotificationDispatcher(
            webhook_url="https://notify.test/events", transport=httpx.MockTransport(handler)
        )
        await dispatcher.dispatch({"event_type": "registration.confirmed", "aggregate_id": "r1"})
        await dispatcher.close()

        assert len(requests) == 1
        assert requests[0].headers["X-Event-Type"] == "registration.confirmed"
        assert json.loads(requests[0].content)["aggregate_id"] == "r1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dispatch_error_raises(self) -> None:
        dispatcher = NotificationDispatcher(
            webhook_url="https://notify.test/events",
            transport=httpx.MockTransport(lambda request: httpx.Response(500)),
        )

        with pytest.raises(NotificationError):
            await dispatcher.dispatch({"event_type": "attendee.checked_in"})

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_dispatch_without_endpoint_only_logs(self, mocker: Any) -> None:
        dispatcher = NotificationDispatcher(webhook_url="")
        dispatcher.webhook_url = None
        get_client = mocker.patch.object(dispatcher, "_get_client")

        await dispatcher.dispatch({"event_type": "registration.confirmed"})

        get_client.assert_not_called()
