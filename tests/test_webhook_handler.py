"""
Tests for Razorpay webhook processing.
"""
import hashlib
import hmac
import json
from typing import Any, Dict

import pytest
from sqlalchemy import func, select

from conftest import TENANT, event_intent
from event_settlement.core.exceptions import WebhookError
from event_settlement.database.models import EventRegistration, TransactionStatus
from event_settlement.integrations.webhook_handler import RazorpayWebhookHandler, event_id_for


def sign(body: bytes, secret: str = "test_webhook_secret") -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def payment_event(event_type: str, order_id: str, payment_id: str = "pay_wh_1", **entity: Any) -> Dict[str, Any]:
    return {
        "entity": "event",
        "event": event_type,
        "payload": {
            "payment": {
                "entity": {"id": payment_id, "order_id": order_id, "status": "captured", **entity}
            }
        },
    }


@pytest.fixture
def redis_mock(mocker: Any) -> Any:
    client = mocker.AsyncMock()
    client.exists.return_value = 0
    return client


@pytest.fixture
def handler(ledger: Any, redis_mock: Any) -> RazorpayWebhookHandler:
    return RazorpayWebhookHandler(ledger, redis_client=redis_mock)


@pytest.fixture
def open_payment(ledger: Any, make_event: Any) -> Any:
    async def _open(**event_kwargs: Any) -> Any:
        event = await make_event(**event_kwargs)
        return await ledger.initiate(
            tenant_id=TENANT,
            user_id="member_1",
            reference_type="EVENT_PAYMENT",
            reference_id=str(event.id),
            intent=event_intent(),
        )

    return _open


class TestVerifySignature:
    """Test suite for webhook authentication."""

    @pytest.mark.unit
    def test_valid_signature_returns_event(self, handler: RazorpayWebhookHandler) -> None:
        body = json.dumps(payment_event("payment.captured", "order_1")).encode()

        event = handler.verify_signature(body, sign(body))

        assert event["event"] == "payment.captured"

    @pytest.mark.unit
    @pytest.mark.parametrize("signature", [None, "", "deadbeef"])
    def test_missing_or_invalid_signature(
        self, handler: RazorpayWebhookHandler, signature: Any
    ) -> None:
        body = json.dumps(payment_event("payment.captured", "order_1")).encode()

        with pytest.raises(WebhookError):
            handler.verify_signature(body, signature)

    @pytest.mark.unit
    def test_signed_garbage_rejected(self, handler: RazorpayWebhookHandler) -> None:
        for body in (b"not json", b'{"payload": {}}'):
            with pytest.raises(WebhookError):
                handler.verify_signature(body, sign(body))

    @pytest.mark.unit
    def test_event_id_prefers_header(self) -> None:
        assert event_id_for(b"{}", "evt_123") == "evt_123"
        assert event_id_for(b"{}") == hashlib.sha256(b"{}").hexdigest()


class TestProcessEvent:
    """Test suite for routing events into the ledger."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_captured_settles(
        self,
        handler: RazorpayWebhookHandler,
        open_payment: Any,
        redis_mock: Any,
        session_factory: Any,
    ) -> None:
        txn = await open_payment()

        result = await handler.process_event(
            payment_event("payment.captured", txn.gateway_order_id), "evt_1"
        )

        assert result["status"] == "success"
        assert result["result"]["transaction_status"] == TransactionStatus.COMPLETED
        async with session_factory() as db:
            count = (
                await db.execute(
                    select(func.count(EventRegistration.id)).where(
                        EventRegistration.source_transaction_id == txn.id
                    )
                )
            ).scalar_one()
        assert count == 1
        redis_mock.setex.assert_awaited_once()
        assert redis_mock.setex.await_args.args[0] == "webhook:processed:evt_1"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redelivery_after_client_verify_is_harmless(
        self, handler: RazorpayWebhookHandler, open_payment: Any, ledger: Any, gateway: Any
    ) -> None:
        txn = await open_payment()
        await ledger.verify(txn.id, "pay_wh_1", gateway.sign_payment(txn.gateway_order_id, "pay_wh_1"))

        result = await handler.process_event(
            payment_event("order.paid", txn.gateway_order_id), "evt_2"
        )

        assert result["status"] == "success"
        assert result["result"]["transaction_status"] == TransactionStatus.COMPLETED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_duplicate_event_skipped(
        self, handler: RazorpayWebhookHandler, redis_mock: Any, mocker: Any
    ) -> None:
        redis_mock.exists.return_value = 1
        spy = mocker.patch.object(handler.ledger, "find_by_order_id")

        result = await handler.process_event(payment_event("payment.captured", "order_x"), "evt_3")

        assert result["status"] == "duplicate"
        spy.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_payment_failed_keeps_order_open(
        self, handler: RazorpayWebhookHandler, open_payment: Any, ledger: Any
    ) -> None:
        txn = await open_payment()

        result = await handler.process_event(
            payment_event(
                "payment.failed",
                txn.gateway_order_id,
                error_code="BAD_REQUEST_ERROR",
                error_description="Card declined",
            ),
            "evt_4",
        )

        assert result["status"] == "success"
        stored = await ledger.get(txn.id)
        assert stored.status == TransactionStatus.INITIATED
        assert stored.failure_reason == "Card declined"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_capture_after_failed_attempt_registers(
        self,
        handler: RazorpayWebhookHandler,
        open_payment: Any,
        ledger: Any,
        session_factory: Any,
    ) -> None:
        """A declined card followed by a successful retry on the same order."""
        txn = await open_payment()

        await handler.process_event(
            payment_event(
                "payment.failed",
                txn.gateway_order_id,
                payment_id="pay_try1",
                error_description="Card declined",
            ),
            "evt_fail",
        )
        result = await handler.process_event(
            payment_event("payment.captured", txn.gateway_order_id, payment_id="pay_try2"),
            "evt_capture",
        )

        assert result["result"]["transaction_status"] == TransactionStatus.COMPLETED
        stored = await ledger.get(txn.id)
        assert stored.gateway_payment_id == "pay_try2"
        assert stored.failure_reason is None
        async with session_factory() as db:
            count = (
                await db.execute(
                    select(func.count(EventRegistration.id)).where(
                        EventRegistration.source_transaction_id == txn.id
                    )
                )
            ).scalar_one()
        assert count == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_event_ignored(
        self, handler: RazorpayWebhookHandler, redis_mock: Any
    ) -> None:
        result = await handler.process_event({"event": "refund.created", "payload": {}}, "evt_5")

        assert result["status"] == "ignored"
        redis_mock.setex.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unknown_order_acknowledged(self, handler: RazorpayWebhookHandler) -> None:
        result = await handler.process_event(
            payment_event("payment.captured", "order_nobody"), "evt_6"
        )

        assert result["status"] == "success"
        assert result["result"] == {"transaction_id": None, "action": "unknown_order"}

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_business_rejection_is_acknowledged(
        self,
        handler: RazorpayWebhookHandler,
        ledger: Any,
        gateway: Any,
        make_event: Any,
    ) -> None:
        """A full event cannot be fixed by redelivery, so the event is not retried."""
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
            txns[0].id, "pay_a", gateway.sign_payment(txns[0].gateway_order_id, "pay_a")
        )

        result = await handler.process_event(
            payment_event("payment.captured", txns[1].gateway_order_id, payment_id="pay_b"),
            "evt_7",
        )

        assert result["status"] == "rejected"
        assert result["error_code"] == "EVENT_FULL"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_malformed_payload_rejected(self, handler: RazorpayWebhookHandler) -> None:
        result = await handler.process_event({"event": "payment.captured", "payload": {}}, "evt_8")

        assert result["status"] == "rejected"
        assert result["error_code"] == "WEBHOOK_ERROR"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_unexpected_failure_requests_redelivery(
        self, handler: RazorpayWebhookHandler, mocker: Any
    ) -> None:
        mocker.patch.object(
            handler.ledger, "find_by_order_id", side_effect=RuntimeError("database unavailable")
        )

        with pytest.raises(WebhookError):
            await handler.process_event(payment_event("payment.captured", "order_1"), "evt_10")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_outage_does_not_block_processing(
        self, handler: RazorpayWebhookHandler, redis_mock: Any
    ) -> None:
        redis_mock.exists.side_effect = ConnectionError("redis down")
        redis_mock.setex.side_effect = ConnectionError("redis down")

        result = await handler.process_event({"event": "refund.created", "payload": {}}, "evt_9")

        assert result["status"] == "ignored"
