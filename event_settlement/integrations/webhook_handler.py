"""
Razorpay webhook handler with signature verification and event deduplication.

Implements:
- Webhook signature verification (HMAC-SHA256 of the raw body)
- Event deduplication using Redis
- Routing of payment events into the ledger

The ledger transitions are idempotent on their own; the Redis check only
saves a round trip through the database for redelivered events.
"""
import hashlib
import json
from typing import Any, Awaitable, Callable, Dict, Optional

import redis.asyncio as aioredis
import structlog

from event_settlement.config import get_settings
from event_settlement.core.exceptions import SettlementError, WebhookError

logger = structlog.get_logger(__name__)

EventHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]


def event_id_for(body: bytes, header_value: Optional[str] = None) -> str:
    """Delivery id from the X-Razorpay-Event-Id header, else a body digest."""
    if header_value:
        return header_value
    return hashlib.sha256(body).hexdigest()


class RazorpayWebhookHandler:
    """
    Handles Razorpay webhook events.

    payment.captured and order.paid are routed to PaymentLedger.verify with
    the signature the checkout callback would have carried, derived from the
    authenticated envelope. payment.failed reports one declined attempt and is
    recorded with PaymentLedger.record_failed_attempt; the transaction stays
    open for a retry on the same order.
    """

    def __init__(self, ledger: Any, redis_client: Optional[aioredis.Redis] = None):
        """
        Initialize webhook handler.

        Args:
            ledger: PaymentLedger receiving verified payment events
            redis_client: Optional Redis client for event deduplication
        """
        self.settings = get_settings()
        self.ledger = ledger
        self.redis_client = redis_client
        self._owns_redis = False
        self.event_handlers: Dict[str, EventHandler] = {}

        self.register_handler("payment.captured", self.handle_payment_captured)
        self.register_handler("order.paid", self.handle_payment_captured)
        self.register_handler("payment.failed", self.handle_payment_failed)

    def _ensure_redis(self) -> aioredis.Redis:
        if self.redis_client is None:
            self.redis_client = aioredis.from_url(
                self.settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
            self._owns_redis = True
        return self.redis_client

    def register_handler(self, event_type: str, handler: EventHandler) -> None:
        """Register an async handler for a Razorpay event type."""
        self.event_handlers[event_type] = handler
        logger.debug("webhook_handler_registered", event_type=event_type)

    def verify_signature(self, body: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        Authenticate the raw body and parse the event envelope.

        Args:
            body: Raw request body as bytes
            signature: X-Razorpay-Signature header value

        Returns:
            Dict[str, Any]: Parsed event

        Raises:
            WebhookError: Missing or invalid signature, or unparseable body
        """
        if not signature:
            logger.error("webhook_signature_missing")
            raise WebhookError("Missing X-Razorpay-Signature header")

        if not self.ledger.gateway.verify_webhook_signature(body, signature):
            logger.error("webhook_signature_verification_failed")
            raise WebhookError("Invalid webhook signature")

        try:
            event = json.loads(body)
        except ValueError as e:
            logger.error("webhook_body_invalid", error=str(e))
            raise WebhookError(f"Webhook body is not valid JSON: {e}") from e

        if not isinstance(event, dict) or "event" not in event:
            raise WebhookError("Webhook body has no event type")

        logger.info("webhook_signature_verified", event_type=event["event"])
        return event

    async def is_event_processed(self, event_id: str) -> bool:
        """True if the delivery was already handled. Redis errors read as False."""
        try:
            redis = self._ensure_redis()
            return bool(await redis.exists(f"webhook:processed:{event_id}"))
        except Exception as e:
            logger.warning("webhook_dedup_check_error", error=str(e), event_id=event_id)
            return False

    async def mark_event_processed(self, event_id: str, ttl_seconds: int = 86400 * 7) -> None:
        try:
            redis = self._ensure_redis()
            await redis.setex(f"webhook:processed:{event_id}", ttl_seconds, "1")
        except Exception as e:
            logger.warning("webhook_mark_processed_error", error=str(e), event_id=event_id)

    async def process_event(self, event: Dict[str, Any], event_id: str) -> Dict[str, Any]:
        """
        Process a verified webhook event.

        Returns:
            Dict[str, Any]: {"status": success|duplicate|ignored|rejected, ...}

        Raises:
            WebhookError: Processing failed and the gateway should redeliver
        """
        event_type = event.get("event", "")
        logger.info("processing_webhook_event", event_id=event_id, event_type=event_type)

        if await self.is_event_processed(event_id):
            logger.info("webhook_event_already_processed", event_id=event_id)
            return {"status": "duplicate", "event_id": event_id, "event_type": event_type}

        handler = self.event_handlers.get(event_type)
        if handler is None:
            logger.info("webhook_event_ignored", event_id=event_id, event_type=event_type)
            await self.mark_event_processed(event_id)
            return {"status": "ignored", "event_id": event_id, "event_type": event_type}

        try:
            result = await handler(event.get("payload") or {})
        except SettlementError as e:
            if e.retryable:
                logger.error(
                    "webhook_event_processing_failed",
                    event_id=event_id,
                    event_type=event_type,
                    error=str(e),
                )
                raise WebhookError(f"Failed to process event {event_id}: {e}") from e
            # Redelivery would fail the same way; acknowledge it
            logger.warning(
                "webhook_event_rejected",
                event_id=event_id,
                event_type=event_type,
                error_code=e.error_code,
            )
            await self.mark_event_processed(event_id)
            return {
                "status": "rejected",
                "event_id": event_id,
                "event_type": event_type,
                "error_code": e.error_code,
            }
        except Exception as e:
            logger.error(
                "webhook_event_processing_failed",
                event_id=event_id,
                event_type=event_type,
                error=str(e),
            )
            raise WebhookError(f"Failed to process event {event_id}: {e}") from e

        await self.mark_event_processed(event_id)
        logger.info("webhook_event_processed", event_id=event_id, event_type=event_type)
        return {
            "status": "success",
            "event_id": event_id,
            "event_type": event_type,
            "result": result,
        }

    @staticmethod
    def _payment_entity(payload: Dict[str, Any]) -> Dict[str, Any]:
        entity = (payload.get("payment") or {}).get("entity") or {}
        if not entity.get("id") or not entity.get("order_id"):
            raise WebhookError("Webhook payload has no payment entity")
        return entity

    async def handle_payment_captured(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        entity = self._payment_entity(payload)
        order_id = entity["order_id"]
        payment_id = entity["id"]

        txn = await self.ledger.find_by_order_id(order_id)
        if txn is None:
            logger.warning("webhook_unknown_order", gateway_order_id=order_id)
            return {"transaction_id": None, "action": "unknown_order"}

        signature = self.ledger.gateway.sign_payment(order_id, payment_id)
        txn = await self.ledger.verify(
            txn.id,
            gateway_payment_id=payment_id,
            gateway_signature=signature,
            gateway_order_id=order_id,
        )
        return {"transaction_id": str(txn.id), "transaction_status": txn.status}

    async def handle_payment_failed(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        entity = self._payment_entity(payload)
        order_id = entity["order_id"]

        txn = await self.ledger.find_by_order_id(order_id)
        if txn is None:
            logger.warning("webhook_unknown_order", gateway_order_id=order_id)
            return {"transaction_id": None, "action": "unknown_order"}

        # One declined attempt; the order stays payable and the user may retry
        reason = entity.get("error_description") or entity.get("error_code") or "gateway_failure"
        txn = await self.ledger.record_failed_attempt(
            txn.id, reason=reason, gateway_payment_id=entity["id"]
        )
        return {"transaction_id": str(txn.id), "transaction_status": txn.status}

    async def close(self) -> None:
        """Close the Redis client if this handler created it."""
        if self._owns_redis and self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
            self._owns_redis = False
