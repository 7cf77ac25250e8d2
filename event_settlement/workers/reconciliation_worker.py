"""
Reconciliation background worker.

Periodically expires INITIATED transactions whose checkout window has
passed. Run with ``python -m event_settlement.workers.reconciliation_worker``.
"""
import asyncio
import signal
from typing import Any, Optional

import structlog

from event_settlement.config import get_settings
from event_settlement.core.ledger import PaymentLedger
from event_settlement.database.connection import close_db
from event_settlement.monitoring.logging import setup_logging

logger = structlog.get_logger(__name__)


async def run_reconciliation(ledger: PaymentLedger) -> int:
    """
    Run one sweep of stale transactions.

    Returns:
        int: Number of transactions expired
    """
    logger.info("reconciliation_started")
    expired = await ledger.expire_stale()
    if expired:
        logger.warning("reconciliation_expired_transactions", expired=expired)
    logger.info("reconciliation_completed", expired=expired)
    return expired


async def start_reconciliation_worker(
    interval_seconds: Optional[int] = None, ledger: Optional[PaymentLedger] = None
) -> None:
    """
    Start the reconciliation worker.

    Args:
        interval_seconds: Seconds between sweeps (default: reconciliation_interval_seconds)
        ledger: Ledger to sweep (default: one on the shared session factory)
    """
    setup_logging()
    settings = get_settings()
    interval = interval_seconds or settings.reconciliation_interval_seconds
    ledger = ledger or PaymentLedger()

    logger.info("reconciliation_worker_starting", interval_seconds=interval)

    running = True

    def signal_handler(sig: int, frame: Any) -> None:
        nonlocal running
        logger.info("reconciliation_worker_shutdown_signal_received", signal=sig)
        running = False

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while running:
            try:
                await run_reconciliation(ledger)
            except Exception as e:
                logger.error("reconciliation_failed", error=str(e))

            # Sleep in short steps so a shutdown signal is noticed promptly
            remaining = interval
            while remaining > 0 and running:
                step = min(remaining, 5)
                await asyncio.sleep(step)
                remaining -= step
    finally:
        close_gateway = getattr(ledger.gateway, "close", None)
        if close_gateway is not None:
            await close_gateway()
        await close_db()
        logger.info("reconciliation_worker_stopped")


if __name__ == "__main__":
    asyncio.run(start_reconciliation_worker())
