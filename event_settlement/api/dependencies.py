"""
FastAPI dependencies: request context and the application's service graph.
"""
from dataclasses import dataclass
from typing import Optional

import redis.asyncio as aioredis
from fastapi import Header, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from event_settlement.config import get_settings
from event_settlement.core.checkin import CheckInCoordinator
from event_settlement.core.exceptions import CheckInValidationError, TenantContextMissing
from event_settlement.core.ledger import PaymentLedger
from event_settlement.core.qr_tokens import QRTokenService
from event_settlement.core.registration import RegistrationCommitService
from event_settlement.core.stats_cache import StatsCache
from event_settlement.integrations.razorpay_client import PaymentGateway, RazorpayClient
from event_settlement.integrations.webhook_handler import RazorpayWebhookHandler
from event_settlement.monitoring.health import HealthCheck


@dataclass
class ServiceContainer:
    """Services shared by every request, stored on app.state.services."""

    ledger: PaymentLedger
    registrations: RegistrationCommitService
    qr_tokens: QRTokenService
    checkin: CheckInCoordinator
    webhook_handler: RazorpayWebhookHandler
    health_check: HealthCheck
    stats_cache: Optional[StatsCache] = None

    async def close(self) -> None:
        await self.webhook_handler.close()
        if self.stats_cache is not None:
            await self.stats_cache.close()
        close_gateway = getattr(self.ledger.gateway, "close", None)
        if close_gateway is not None:
            await close_gateway()


def build_services(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    gateway: Optional[PaymentGateway] = None,
    redis_client: Optional[aioredis.Redis] = None,
    use_stats_cache: bool = True,
) -> ServiceContainer:
    """
    Wire the service graph.

    Args:
        session_factory: Session factory (defaults to the shared one)
        gateway: Payment gateway adapter (defaults to RazorpayClient)
        redis_client: Redis client shared by the webhook dedup and stats cache
        use_stats_cache: Cache check-in stats in Redis
    """
    if redis_client is None and use_stats_cache:
        redis_client = aioredis.from_url(
            get_settings().redis_url,
            encoding="utf-8",
            decode_responses=True,
        )

    stats_cache = StatsCache(redis_client=redis_client) if use_stats_cache else None
    registrations = RegistrationCommitService(
        session_factory=session_factory, stats_cache=stats_cache
    )
    ledger = PaymentLedger(
        gateway=gateway or RazorpayClient(),
        registration_service=registrations,
        session_factory=session_factory,
    )
    qr_tokens = QRTokenService(session_factory=session_factory)
    checkin = CheckInCoordinator(
        qr_service=qr_tokens,
        session_factory=session_factory,
        stats_cache=stats_cache,
    )

    return ServiceContainer(
        ledger=ledger,
        registrations=registrations,
        qr_tokens=qr_tokens,
        checkin=checkin,
        webhook_handler=RazorpayWebhookHandler(ledger, redis_client=redis_client),
        health_check=HealthCheck(session_factory=session_factory, redis_client=redis_client),
        stats_cache=stats_cache,
    )


def get_services(request: Request) -> ServiceContainer:
    return request.app.state.services


async def get_tenant_id(x_tenant_id: Optional[str] = Header(default=None)) -> str:
    """
    Tenant of the calling client.

    Raises:
        TenantContextMissing: X-Tenant-ID header absent or blank
    """
    if not x_tenant_id or not x_tenant_id.strip():
        raise TenantContextMissing("X-Tenant-ID header is required")
    return x_tenant_id.strip()


async def get_staff_id(x_staff_id: Optional[str] = Header(default=None)) -> str:
    """Staff member operating a gate device, from X-Staff-ID."""
    if not x_staff_id or not x_staff_id.strip():
        raise CheckInValidationError("X-Staff-ID header is required")
    return x_staff_id.strip()
