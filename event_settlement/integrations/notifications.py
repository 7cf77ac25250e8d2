"""
Notification dispatcher.

Receives outbox events (registration confirmed, attendee checked in, ...)
from the outbox publisher and forwards them to the notification service
over HTTP. Without a configured endpoint events are only logged.
"""
from typing import Any, Dict, Optional

import httpx
import structlog

from event_settlement.config import get_settings

logger = structlog.get_logger(__name__)


class NotificationError(Exception):
    """Raised when the notification service rejects or misses an event."""

    pass


class NotificationDispatcher:
    """Forwards outbox events to the notification service."""

    def __init__(
        self,
        webhook_url: Optional[str] = None,
        timeout: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.webhook_url = webhook_url or settings.notification_webhook_url
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def dispatch(self, event_data: Dict[str, Any]) -> None:
        """
        Deliver one outbox event.

        Raises:
            NotificationError: Delivery failed; the outbox keeps the event for retry
        """
        if not self.webhook_url:
            logger.info(
                "notification_logged",
                event_type=event_data.get("event_type"),
                aggregate_id=event_data.get("aggregate_id"),
                tenant_id=event_data.get("tenant_id"),
            )
            return

        try:
            response = await self._get_client().post(
                self.webhook_url,
                json=event_data,
                headers={"X-Event-Type": str(event_data.get("event_type", ""))},
            )
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise NotificationError(
                f"Notification service returned {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise NotificationError(f"Notification service unreachable: {e}") from e

        logger.info(
            "notification_dispatched",
            event_type=event_data.get("event_type"),
            aggregate_id=event_data.get("aggregate_id"),
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None
