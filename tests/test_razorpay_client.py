"""
Tests for the Razorpay client: retries, error classification, circuit
breaker and signatures. HTTP is served by httpx.MockTransport.
"""
import hashlib
import hmac
import json
from decimal import Decimal
from typing import Any, Callable, List

import httpx
import pytest

from event_settlement.integrations.razorpay_client import (
    CircuitBreaker,
    GatewayError,
    GatewayErrorType,
    RazorpayClient,
    from_subunits,
    to_subunits,
)


def make_client(handler: Callable[[httpx.Request], httpx.Response], **kwargs: Any) -> RazorpayClient:
    kwargs.setdefault("max_attempts", 3)
    kwargs.setdefault("base_delay", 0)
    return RazorpayClient(
        key_id="rzp_test_key",
        key_secret="secret",
        webhook_secret="whsec",
        api_base="https://api.razorpay.test/v1",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def order_json(request: httpx.Request) -> httpx.Response:
    body = json.loads(request.content)
    return httpx.Response(
        200,
        json={
            "id": "order_Abc123",
            "amount": body["amount"],
            "currency": body["currency"],
            "receipt": body["receipt"],
            "status": "created",
        },
    )


class TestCreateOrder:
    """Test suite for order creation."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_create_order_posts_paise(self) -> None:
        requests: List[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return order_json(request)

        client = make_client(handler)
        order = await client.create_order(Decimal("750.00"), "inr", "txn_1", notes={"tenant_id": "t"})
        await client.close()

        assert order.id == "order_Abc123"
        assert order.amount == Decimal("750.00")
        assert order.currency == "INR"
        assert order.receipt == "txn_1"

        sent = json.loads(requests[0].content)
        assert requests[0].url.path == "/v1/orders"
        assert sent["amount"] == 75000
        assert sent["notes"] == {"tenant_id": "t"}
        assert requests[0].headers["authorization"].startswith("Basic ")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_server_errors_are_retried(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) < 3:
                return httpx.Response(502, json={"error": {"description": "bad gateway"}})
            return order_json(request)

        client = make_client(handler)
        order = await client.create_order(Decimal("10"), "INR", "txn_2")

        assert order.id == "order_Abc123"
        assert len(calls) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_retries_exhausted_raise_transient(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(503, text="unavailable")

        client = make_client(handler)
        with pytest.raises(GatewayError) as exc_info:
            await client.create_order(Decimal("10"), "INR", "txn_3")

        assert exc_info.value.error_type == GatewayErrorType.TRANSIENT
        assert exc_info.value.retryable
        assert len(calls) == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_bad_request_is_permanent_and_not_retried(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(
                400,
                json={"error": {"code": "BAD_REQUEST_ERROR", "description": "amount too small"}},
            )

        client = make_client(handler)
        with pytest.raises(GatewayError) as exc_info:
            await client.create_order(Decimal("0.10"), "INR", "txn_4")

        assert exc_info.value.error_type == GatewayErrorType.PERMANENT
        assert exc_info.value.status_code == 400
        assert str(exc_info.value) == "amount too small"
        assert len(calls) == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_rate_limit_classified(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, text="slow down")

        client = make_client(handler, max_attempts=1)
        with pytest.raises(GatewayError) as exc_info:
            await client.create_order(Decimal("10"), "INR", "txn_5")

        assert exc_info.value.error_type == GatewayErrorType.RATE_LIMIT
        assert exc_info.value.retryable

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_network_error_is_transient(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler, max_attempts=1)
        with pytest.raises(GatewayError) as exc_info:
            await client.create_order(Decimal("10"), "INR", "txn_6")

        assert exc_info.value.error_type == GatewayErrorType.TRANSIENT

    @pytest.mark.unit
    def test_subunit_conversion(self) -> None:
        assert to_subunits(Decimal("625.50")) == 62550
        assert from_subunits(62550) == Decimal("625.50")


class TestCircuitBreaker:
    """Test suite for the circuit breaker."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_opens_after_repeated_failures(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(500, text="boom")

        breaker = CircuitBreaker(failure_threshold=2, timeout=60)
        client = make_client(handler, max_attempts=1, circuit_breaker=breaker)

        for _ in range(2):
            with pytest.raises(GatewayError):
                await client.create_order(Decimal("10"), "INR", "txn")
        assert breaker.state == "open"

        with pytest.raises(GatewayError) as exc_info:
            await client.create_order(Decimal("10"), "INR", "txn")
        assert "Circuit breaker is open" in str(exc_info.value)
        assert len(calls) == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_permanent_errors_do_not_trip(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"error": {"description": "invalid"}})

        breaker = CircuitBreaker(failure_threshold=1)
        client = make_client(handler, max_attempts=1, circuit_breaker=breaker)

        for _ in range(3):
            with pytest.raises(GatewayError):
                await client.create_order(Decimal("10"), "INR", "txn")
        assert breaker.state == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_half_open_recovers(self) -> None:
        breaker = CircuitBreaker(failure_threshold=1, timeout=0, success_threshold=1)
        breaker.on_failure()
        assert breaker.state == "open"

        async def ok() -> str:
            return "ok"

        # timeout=0 lets the next call through as a probe
        breaker.last_failure_time -= 1
        assert await breaker.call(ok) == "ok"
        assert breaker.state == "closed"


class TestSignatures:
    """Test suite for callback and webhook signatures."""

    @pytest.mark.unit
    def test_payment_signature(self) -> None:
        client = make_client(order_json)
        expected = hmac.new(b"secret", b"order_1|pay_1", hashlib.sha256).hexdigest()

        assert client.sign_payment("order_1", "pay_1") == expected
        assert client.verify_payment_signature("order_1", "pay_1", expected)
        assert not client.verify_payment_signature("order_1", "pay_2", expected)
        assert not client.verify_payment_signature("order_1", "pay_1", "")

    @pytest.mark.unit
    def test_webhook_signature(self) -> None:
        client = make_client(order_json)
        body = b'{"event":"payment.captured"}'
        signature = hmac.new(b"whsec", body, hashlib.sha256).hexdigest()

        assert client.verify_webhook_signature(body, signature)
        assert not client.verify_webhook_signature(body + b" ", signature)
        # Signed with the API secret instead of the webhook secret
        assert not client.verify_webhook_signature(
            body, hmac.new(b"secret", body, hashlib.sha256).hexdigest()
        )
