"""
Razorpay API client with retry logic and signature verification.

Implements:
- Order creation over the REST API (httpx)
- Exponential backoff for transient errors (tenacity)
- Circuit breaker pattern
- Checkout callback and webhook signature verification
"""
import hashlib
import hmac
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from event_settlement.config import get_settings
from event_settlement.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class GatewayErrorType(Enum):
    """Classification of gateway errors for retry logic."""

    TRANSIENT = "transient"  # Retry these
    PERMANENT = "permanent"  # Don't retry these
    RATE_LIMIT = "rate_limit"  # Retry with backoff


class GatewayError(Exception):
    """Raised when a gateway call fails."""

    def __init__(
        self,
        message: str,
        error_type: GatewayErrorType,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.error_type = error_type
        self.status_code = status_code
        self.original_error = original_error

    @property
    def retryable(self) -> bool:
        return self.error_type != GatewayErrorType.PERMANENT


@dataclass(frozen=True)
class GatewayOrder:
    """A remote checkout order."""

    id: str
    amount: Decimal
    currency: str
    receipt: Optional[str] = None
    status: str = "created"
    raw: Dict[str, Any] = field(default_factory=dict, compare=False)


class PaymentGateway(Protocol):
    """What the payment ledger needs from a gateway adapter."""

    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        ...

    def sign_payment(self, order_id: str, payment_id: str) -> str:
        ...

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        ...

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        ...


def to_subunits(amount: Decimal) -> int:
    """Convert major units (rupees) to the gateway's integer subunits (paise)."""
    return int((Decimal(amount) * 100).to_integral_value())


def from_subunits(amount: int) -> Decimal:
    return (Decimal(amount) / 100).quantize(Decimal("0.01"))


def hmac_sha256_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


class CircuitBreaker:
    """
    Circuit breaker for gateway calls.

    Opens after `failure_threshold` consecutive retryable failures and
    rejects calls until `timeout` seconds have passed, then lets calls
    through half-open until `success_threshold` of them succeed.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        timeout: int = 60,
        success_threshold: int = 2,
    ):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.success_threshold = success_threshold
        self.failure_count = 0
        self.success_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = "closed"  # closed, open, half_open

    async def call(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """
        Execute an async function with circuit breaker protection.

        Raises:
            GatewayError: If circuit is open
        """
        if self.state == "open":
            if (
                self.last_failure_time
                and time.time() - self.last_failure_time > self.timeout
            ):
                self._set_state("half_open")
                self.success_count = 0
                logger.info("circuit_breaker_half_open")
            else:
                raise GatewayError("Circuit breaker is open", GatewayErrorType.TRANSIENT)

        try:
            result = await func(*args, **kwargs)
        except GatewayError as e:
            # 4xx rejections do not count against the breaker
            if e.retryable:
                self.on_failure()
            raise
        except Exception:
            self.on_failure()
            raise
        self.on_success()
        return result

    def on_success(self) -> None:
        """Record successful call."""
        self.failure_count = 0
        if self.state == "half_open":
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                self._set_state("closed")
                logger.info("circuit_breaker_closed")

    def on_failure(self) -> None:
        """Record failed call."""
        self.failure_count += 1
        self.last_failure_time = time.time()
        if self.state == "half_open" or self.failure_count >= self.failure_threshold:
            self._set_state("open")
            logger.warning(
                "circuit_breaker_opened",
                failure_count=self.failure_count,
            )

    def _set_state(self, state: str) -> None:
        self.state = state
        metrics.set_circuit_breaker_state(state)


class RazorpayClient:
    """
    Razorpay adapter implementing PaymentGateway.

    Features:
    - Automatic retry with exponential backoff for transient and rate-limit errors
    - Circuit breaker pattern
    - HMAC-SHA256 verification of checkout callbacks and webhooks
    """

    def __init__(
        self,
        key_id: Optional[str] = None,
        key_secret: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        api_base: Optional[str] = None,
        timeout: Optional[float] = None,
        max_attempts: Optional[int] = None,
        base_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ) -> None:
        """
        Initialize Razorpay client.

        Args:
            key_id: API key id (defaults to settings)
            key_secret: API key secret, also signs checkout callbacks
            webhook_secret: Webhook signing secret
            api_base: REST API base URL
            timeout: Per-request timeout in seconds
            max_attempts: Attempts per call, including the first
            base_delay: Backoff multiplier in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
            circuit_breaker: Optional circuit breaker instance
        """
        settings = get_settings()
        self.settings = settings
        self.key_id = key_id or settings.razorpay_key_id
        self.key_secret = key_secret or settings.razorpay_key_secret
        self.webhook_secret = webhook_secret or settings.razorpay_webhook_secret
        self.api_base = (api_base or settings.razorpay_api_base).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.gateway_timeout_seconds
        self.max_attempts = max_attempts or settings.gateway_retry_max_attempts
        self.base_delay = base_delay if base_delay is not None else settings.gateway_retry_base_delay
        self.circuit_breaker = circuit_breaker or CircuitBreaker()
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

        logger.info(
            "razorpay_client_initialized",
            api_base=self.api_base,
            test_mode=self.key_id.startswith("rzp_test_"),
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.api_base,
                auth=(self.key_id, self.key_secret),
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    @staticmethod
    def _classify_status(status_code: int) -> GatewayErrorType:
        if status_code == 429:
            return GatewayErrorType.RATE_LIMIT
        if status_code >= 500:
            return GatewayErrorType.TRANSIENT
        return GatewayErrorType.PERMANENT

    async def _send(self, method: str, path: str, json: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Single HTTP round trip, with errors classified for retry."""
        client = self._get_client()
        try:
            response = await client.request(method, path, json=json)
            response.raise_for_status()
            return response.json()

        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            error_type = self._classify_status(status_code)
            description = _error_description(e.response)
            logger.error(
                "razorpay_api_error",
                path=path,
                status_code=status_code,
                error_type=error_type.value,
                error_message=description,
            )
            metrics.record_gateway_error(error_type.value)
            raise GatewayError(
                description, error_type, status_code=status_code, original_error=e
            ) from e

        except (httpx.TimeoutException, httpx.TransportError) as e:
            logger.error(
                "razorpay_transport_error",
                path=path,
                error=str(e) or e.__class__.__name__,
            )
            metrics.record_gateway_error(GatewayErrorType.TRANSIENT.value)
            raise GatewayError(
                f"Gateway unreachable: {e.__class__.__name__}",
                GatewayErrorType.TRANSIENT,
                original_error=e,
            ) from e

        except ValueError as e:
            # Body was not JSON
            metrics.record_gateway_error(GatewayErrorType.TRANSIENT.value)
            raise GatewayError(
                "Invalid response from gateway", GatewayErrorType.TRANSIENT, original_error=e
            ) from e

    async def _request(
        self, operation: str, method: str, path: str, json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Call the API through the circuit breaker, retrying retryable failures."""
        start_time = time.time()
        try:
            async for attempt in AsyncRetrying(
                retry=retry_if_exception(
                    lambda e: isinstance(e, GatewayError) and e.retryable
                ),
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=self.base_delay, max=8),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info(
                            "razorpay_request_retry",
                            operation=operation,
                            attempt=attempt.retry_state.attempt_number,
                        )
                    result = await self.circuit_breaker.call(self._send, method, path, json)
        except GatewayError:
            metrics.record_gateway_call(operation, "error", time.time() - start_time)
            raise

        metrics.record_gateway_call(operation, "success", time.time() - start_time)
        return result

    async def create_order(
        self,
        amount: Decimal,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        """
        Create a Razorpay order.

        Args:
            amount: Amount in major units; sent to Razorpay in paise
            currency: Currency code
            receipt: Our reference for the order (max 40 chars)
            notes: Key/value notes stored with the order

        Returns:
            GatewayOrder: Created order

        Raises:
            GatewayError: After retries are exhausted or on a permanent error
        """
        payload = {
            "amount": to_subunits(amount),
            "currency": currency.upper(),
            "receipt": receipt[:40],
            "notes": notes or {},
        }
        data = await self._request("create_order", "POST", "/orders", json=payload)

        order = GatewayOrder(
            id=data["id"],
            amount=from_subunits(data.get("amount", payload["amount"])),
            currency=data.get("currency", payload["currency"]),
            receipt=data.get("receipt"),
            status=data.get("status", "created"),
            raw=data,
        )
        logger.info(
            "razorpay_order_created",
            order_id=order.id,
            amount=str(order.amount),
            currency=order.currency,
        )
        return order

    def sign_payment(self, order_id: str, payment_id: str) -> str:
        """Signature Razorpay attaches to a successful checkout callback."""
        return hmac_sha256_hex(self.key_secret, f"{order_id}|{payment_id}".encode("utf-8"))

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        """Constant-time check of a checkout callback signature."""
        expected = self.sign_payment(order_id, payment_id)
        return hmac.compare_digest(expected.encode("utf-8"), (signature or "").encode("utf-8"))

    def verify_webhook_signature(self, body: bytes, signature: str) -> bool:
        """Constant-time check of X-Razorpay-Signature over the raw body."""
        expected = hmac_sha256_hex(self.webhook_secret, body)
        return hmac.compare_digest(expected.encode("utf-8"), (signature or "").encode("utf-8"))

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


def _error_description(response: httpx.Response) -> str:
    try:
        error = response.json().get("error", {})
        return error.get("description") or response.text
    except ValueError:
        return response.text or f"HTTP {response.status_code}"
