"""
Outbox publisher background worker.

Continuously polls the outbox table and hands events to the notification
dispatcher. Run with ``python -m event_settlement.workers.outbox_publisher``.
"""
import asyncio
import signal
from typing import Any

import structlog

from event_settlement.config import get_settings
from event_settlement.core.outbox import OutboxPublisher
from event_settlement.database.connection import close_db
from event_settlement.integrations.notifications import NotificationDispatcher
from event_settlement.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def start_outbox_publisher() -> None:
    """
    Start the outbox publisher worker.

    Runs continuously until SIGINT/SIGTERM.
    """
    setup_logging()
    settings = get_settings()

    logger.info("outbox_publisher_worker_starting")

    dispatcher = NotificationDispatcher()
    publisher = OutboxPublisher(
        publisher_func=dispatcher.dispatch,
        batch_size=settings.outbox_batch_size,
        poll_interval_seconds=settings.outbox_poll_interval_seconds,
    )

    def signal_handler(sig: int, frame: Any) -> None:
        logger.info("outbox_publisher_worker_shutdown_signal_received", signal=sig)
        publisher.stop()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        await publisher.start()
    except Exception as e:
        logger.error("outbox_publisher_worker_error", error=str(e))
        raise
    finally:
        await dispatcher.close()
        await close_db()
        logger.info("outbox_publisher_worker_stopped")


if __name__ == "__main__":
    asyncio.run(start_outbox_publisher())
