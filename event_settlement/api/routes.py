"""
API routes for payments, registrations, check-in and gateway webhooks.

Service errors are SettlementError subclasses and are turned into JSON
responses by the application's exception handler; routes only log.
"""
import time
from typing import Any, Dict, Optional
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from event_settlement.core.exceptions import RegistrationNotConfirmed, WebhookError
from event_settlement.integrations.webhook_handler import event_id_for
from event_settlement.monitoring.metrics import metrics

from .dependencies import ServiceContainer, get_services, get_staff_id, get_tenant_id
from .schemas import (
    HealthCheckResponse,
    HistoryResponse,
    InitiatePaymentRequest,
    PaymentResponse,
    QRAnalyticsResponse,
    QRCredentialResponse,
    RegistrationResponse,
    RevokeResponse,
    ScanRequest,
    ScanResponse,
    StatsResponse,
    TimelineResponse,
    VerifyPaymentRequest,
    WebhookResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
registration_router = APIRouter(prefix="/registrations", tags=["registrations"])
checkin_router = APIRouter(tags=["check-in"])
webhook_router = APIRouter(prefix="/webhooks", tags=["webhooks"])
monitoring_router = APIRouter(tags=["monitoring"])


@payment_router.post(
    "",
    response_model=PaymentResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Initiate a payment",
    description=(
        "Price the intent, open a Razorpay order and record an INITIATED transaction. "
        "Intents that price to zero are rejected with 400 PAYMENT_VALIDATION_ERROR: "
        "free registrations are created by the event service, not through payments."
    ),
)
async def initiate_payment(
    request: InitiatePaymentRequest,
    tenant_id: str = Depends(get_tenant_id),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    """Initiate a payment."""
    start_time = time.time()
    logger.info(
        "api_initiate_payment_request",
        tenant_id=tenant_id,
        user_id=request.user_id,
        reference_type=request.reference_type,
        reference_id=request.reference_id,
    )

    txn = await services.ledger.initiate(
        tenant_id=tenant_id,
        user_id=request.user_id,
        reference_type=request.reference_type,
        reference_id=request.reference_id,
        intent=request.intent,
    )

    logger.info(
        "api_initiate_payment_success",
        transaction_id=str(txn.id),
        gateway_order_id=txn.gateway_order_id,
        duration_seconds=time.time() - start_time,
    )
    return txn


@payment_router.get(
    "/{transaction_id}",
    response_model=PaymentResponse,
    summary="Get payment status",
)
async def get_payment(
    transaction_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.ledger.get(transaction_id, tenant_id=tenant_id)


@payment_router.post(
    "/{transaction_id}/verify",
    response_model=PaymentResponse,
    summary="Verify a checkout callback",
    description=(
        "Check the Razorpay signature against the stored order and settle the payment. "
        "Safe to repeat."
    ),
)
async def verify_payment(
    transaction_id: UUID,
    request: VerifyPaymentRequest,
    tenant_id: str = Depends(get_tenant_id),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    """Verify a payment."""
    logger.info(
        "api_verify_payment_request",
        transaction_id=str(transaction_id),
        gateway_payment_id=request.gateway_payment_id,
    )
    txn = await services.ledger.verify(
        transaction_id,
        gateway_payment_id=request.gateway_payment_id,
        gateway_signature=request.gateway_signature,
        gateway_order_id=request.gateway_order_id,
        tenant_id=tenant_id,
    )
    logger.info("api_verify_payment_success", transaction_id=str(txn.id), status=txn.status)
    return txn


@payment_router.get(
    "/{transaction_id}/registration",
    response_model=RegistrationResponse,
    summary="Registration created by a payment",
)
async def get_payment_registration(
    transaction_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    txn = await services.ledger.get(transaction_id, tenant_id=tenant_id)
    registration = await services.registrations.find_by_transaction(txn.id)
    if registration is None:
        raise RegistrationNotConfirmed(txn.id, payment_status=txn.status)
    return registration


@payment_router.get(
    "/{transaction_id}/qr",
    response_model=QRCredentialResponse,
    summary="Check-in credential for a payment",
    description="Issues the credential on first call; 409 while the payment is still settling",
)
async def get_payment_qr(
    transaction_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.qr_tokens.issue_for_transaction(transaction_id, tenant_id=tenant_id)


@registration_router.post(
    "/{registration_id}/qr",
    response_model=QRCredentialResponse,
    summary="Issue a check-in credential",
)
async def issue_qr(
    registration_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.qr_tokens.issue(registration_id, tenant_id=tenant_id)


@registration_router.delete(
    "/{registration_id}/qr",
    response_model=RevokeResponse,
    summary="Revoke a check-in credential",
)
async def revoke_qr(
    registration_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    revoked = await services.qr_tokens.revoke(registration_id, tenant_id=tenant_id)
    return {"registration_id": registration_id, "revoked": revoked}


@registration_router.post(
    "/{registration_id}/cancel",
    response_model=RegistrationResponse,
    summary="Cancel a registration",
    description="Releases the seat and revokes the check-in credential. Safe to repeat.",
)
async def cancel_registration(
    registration_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    return await services.registrations.cancel(registration_id, tenant_id=tenant_id)


@checkin_router.post(
    "/check-ins/scan",
    response_model=ScanResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Check in a scanned QR code",
)
async def scan(
    request: ScanRequest,
    tenant_id: str = Depends(get_tenant_id),
    staff_id: str = Depends(get_staff_id),
    services: ServiceContainer = Depends(get_services),
) -> Any:
    """Record a check-in. 409 ALREADY_CHECKED_IN carries the original check-in."""
    return await services.checkin.scan(
        token=request.token,
        guests_checked_in=request.guests_checked_in,
        staff_id=staff_id,
        location=request.check_in_location,
        notes=request.notes,
        tenant_id=tenant_id,
    )


@checkin_router.get(
    "/events/{event_id}/check-ins/stats",
    response_model=StatsResponse,
    summary="Attendance totals",
)
async def checkin_stats(
    event_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    stats = await services.checkin.stats(event_id, tenant_id=tenant_id)
    return stats.to_dict()


@checkin_router.get(
    "/events/{event_id}/check-ins/timeline",
    response_model=TimelineResponse,
    summary="Check-ins per hour",
)
async def checkin_timeline(
    event_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    hours = await services.checkin.timeline(event_id, tenant_id=tenant_id)
    return {"event_id": str(event_id), "hours": [h.to_dict() for h in hours]}


@checkin_router.get(
    "/events/{event_id}/qr/analytics",
    response_model=QRAnalyticsResponse,
    summary="QR credential usage",
)
async def qr_analytics(
    event_id: UUID,
    tenant_id: str = Depends(get_tenant_id),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    analytics = await services.qr_tokens.analytics(event_id, tenant_id=tenant_id)
    return analytics.to_dict()


@checkin_router.get(
    "/events/{event_id}/check-ins",
    response_model=HistoryResponse,
    summary="Check-in history",
)
async def checkin_history(
    event_id: UUID,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    tenant_id: str = Depends(get_tenant_id),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    return await services.checkin.history(event_id, page=page, limit=limit, tenant_id=tenant_id)


@webhook_router.post(
    "/razorpay",
    response_model=WebhookResponse,
    summary="Razorpay webhook",
    description="Handle payment.captured, order.paid and payment.failed events",
)
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(default=None),
    x_razorpay_event_id: Optional[str] = Header(default=None),
    services: ServiceContainer = Depends(get_services),
) -> Dict[str, Any]:
    """
    Handle Razorpay webhook events.

    Non-2xx responses make Razorpay redeliver, so only failures a retry can
    fix are reported as errors.
    """
    start_time = time.time()
    body = await request.body()
    handler = services.webhook_handler

    try:
        event = handler.verify_signature(body, x_razorpay_signature)
    except WebhookError:
        metrics.record_webhook_event("unknown", "invalid_signature", time.time() - start_time)
        raise

    event_type = event["event"]
    try:
        result = await handler.process_event(event, event_id_for(body, x_razorpay_event_id))
    except WebhookError:
        metrics.record_webhook_event(event_type, "error", time.time() - start_time)
        raise

    metrics.record_webhook_event(event_type, result["status"], time.time() - start_time)
    logger.info(
        "api_webhook_processed",
        event_type=event_type,
        status=result["status"],
    )
    return result


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check overall system health",
)
async def health(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Health check endpoint for monitoring."""
    try:
        return await services.health_check.check_all()
    except Exception as e:
        logger.error("health_check_error", error=str(e))
        return {"status": "unhealthy", "checks": {"error": str(e)}}


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    return await services.health_check.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(services: ServiceContainer = Depends(get_services)) -> Dict[str, Any]:
    """Readiness probe endpoint."""
    result = await services.health_check.readiness()
    if result["status"] != "healthy":
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=result)
    return result


@monitoring_router.get(
    "/metrics",
    summary="Prometheus metrics",
    include_in_schema=False,
)
async def prometheus_metrics() -> Response:
    """Expose Prometheus metrics."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
