"""
Exception taxonomy for the settlement and check-in pipeline.

Every error carries:
- An error code (stable, for client handling)
- A user message (safe to show to members or gate staff)
- An HTTP status (for the API boundary)
- Whether a retry can help

Integrity violations raised by the database are never surfaced directly;
the services translate them into the classes below at their boundary.
"""

from typing import Any, Dict, Optional


class SettlementError(Exception):
    """
    Base exception for all pipeline errors.

    Extra keyword arguments become structured details that are returned to
    the caller alongside the code and message.
    """

    def __init__(
        self,
        message: str,
        error_code: str,
        user_message: Optional[str] = None,
        http_status: int = 500,
        retryable: bool = False,
        **details: Any,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.user_message = user_message or "An error occurred. Please try again."
        self.http_status = http_status
        self.retryable = retryable
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dict for API responses"""
        error: Dict[str, Any] = {
            "code": self.error_code,
            "message": self.user_message,
            "type": self.__class__.__name__,
            "retryable": self.retryable,
        }
        error.update({k: _jsonable(v) for k, v in self.details.items()})
        return {"error": error}


def _jsonable(value: Any) -> Any:
    if hasattr(value, "isoformat"):
        return value.isoformat()
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


# ============================================================================
# PAYMENT ERRORS
# ============================================================================

class GatewayUnavailable(SettlementError):
    """Payment gateway could not be reached; no transaction was recorded."""

    def __init__(self, message: str = "Payment gateway unavailable", **kwargs: Any):
        super().__init__(
            message=message,
            error_code="GATEWAY_UNAVAILABLE",
            user_message="Payment service is temporarily unavailable. Please try again.",
            http_status=503,
            retryable=True,
            **kwargs,
        )


class SignatureMismatch(SettlementError):
    """
    Gateway callback signature did not match the stored order.

    Terminal for the payment attempt: the transaction is FAILED and the user
    must start over.
    """

    def __init__(self, transaction_id: Any, **kwargs: Any):
        super().__init__(
            message=f"Payment signature mismatch for transaction {transaction_id}",
            error_code="SIGNATURE_MISMATCH",
            user_message="Payment failed, please retry.",
            http_status=400,
            transaction_id=transaction_id,
            **kwargs,
        )


class PaymentValidationError(SettlementError):
    """Payment request failed validation before reaching the gateway."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message=message,
            error_code="PAYMENT_VALIDATION_ERROR",
            user_message=message,
            http_status=400,
            **kwargs,
        )


class TransactionNotFound(SettlementError):
    """Payment transaction doesn't exist (or belongs to another tenant)."""

    def __init__(self, transaction_id: Any, **kwargs: Any):
        super().__init__(
            message=f"Payment transaction not found: {transaction_id}",
            error_code="TRANSACTION_NOT_FOUND",
            user_message="Payment not found.",
            http_status=404,
            transaction_id=transaction_id,
            **kwargs,
        )


class PaymentNotCompleted(SettlementError):
    """Registration commit was attempted for a transaction that is not COMPLETED."""

    def __init__(self, transaction_id: Any, status: str, **kwargs: Any):
        super().__init__(
            message=f"Transaction {transaction_id} is {status}, expected COMPLETED",
            error_code="PAYMENT_NOT_COMPLETED",
            user_message="Payment has not been completed yet.",
            http_status=409,
            retryable=status == "INITIATED",
            transaction_id=transaction_id,
            status=status,
            **kwargs,
        )


# ============================================================================
# REGISTRATION ERRORS
# ============================================================================

class EventNotFound(SettlementError):
    """Event doesn't exist in the caller's tenant."""

    def __init__(self, event_id: Any, **kwargs: Any):
        super().__init__(
            message=f"Event not found: {event_id}",
            error_code="EVENT_NOT_FOUND",
            user_message="Event not found.",
            http_status=404,
            event_id=event_id,
            **kwargs,
        )


class DuplicateRegistration(SettlementError):
    """User already holds a confirmed registration for this event."""

    def __init__(self, event_id: Any, user_id: str, **kwargs: Any):
        super().__init__(
            message=f"User {user_id} is already registered for event {event_id}",
            error_code="DUPLICATE_REGISTRATION",
            user_message="You are already registered for this event.",
            http_status=409,
            event_id=event_id,
            user_id=user_id,
            **kwargs,
        )


class EventFull(SettlementError):
    """Event reached its maximum capacity."""

    def __init__(self, event_id: Any, max_capacity: Optional[int] = None, **kwargs: Any):
        super().__init__(
            message=f"Event {event_id} is full (capacity {max_capacity})",
            error_code="EVENT_FULL",
            user_message="This event is fully booked.",
            http_status=409,
            event_id=event_id,
            max_capacity=max_capacity,
            **kwargs,
        )


class RegistrationNotFound(SettlementError):
    """Registration doesn't exist (or belongs to another tenant)."""

    def __init__(self, registration_id: Any, **kwargs: Any):
        super().__init__(
            message=f"Registration not found: {registration_id}",
            error_code="REGISTRATION_NOT_FOUND",
            user_message="Registration not found.",
            http_status=404,
            registration_id=registration_id,
            **kwargs,
        )


class RegistrationNotConfirmed(SettlementError):
    """
    Registration is not (yet) CONFIRMED.

    Usually the payment callback has not landed; callers should poll again.
    """

    def __init__(self, reference: Any, **kwargs: Any):
        super().__init__(
            message=f"Registration not confirmed: {reference}",
            error_code="REGISTRATION_NOT_CONFIRMED",
            user_message="Your registration is not confirmed yet. Please check again shortly.",
            http_status=409,
            retryable=True,
            reference=reference,
            **kwargs,
        )


# ============================================================================
# QR CREDENTIAL ERRORS
# ============================================================================

class InvalidToken(SettlementError):
    """QR token failed signature, expiry or lookup checks."""

    def __init__(self, reason: str = "invalid", **kwargs: Any):
        super().__init__(
            message=f"Invalid check-in token: {reason}",
            error_code="INVALID_TOKEN",
            user_message="This QR code is not valid.",
            http_status=401,
            reason=reason,
            **kwargs,
        )


class TokenRevoked(SettlementError):
    """QR credential was deactivated or superseded."""

    def __init__(self, registration_id: Any, **kwargs: Any):
        super().__init__(
            message=f"Check-in token revoked for registration {registration_id}",
            error_code="TOKEN_REVOKED",
            user_message="This QR code has been revoked.",
            http_status=410,
            registration_id=registration_id,
            **kwargs,
        )


# ============================================================================
# CHECK-IN ERRORS
# ============================================================================

class AlreadyCheckedIn(SettlementError):
    """
    Registration has already been checked in.

    Carries the original check-in time and staff member so the front desk
    can resolve the discrepancy.
    """

    def __init__(
        self,
        registration_id: Any,
        checked_in_at: Any,
        checked_in_by_staff_id: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(
            message=f"Registration {registration_id} already checked in at {checked_in_at}",
            error_code="ALREADY_CHECKED_IN",
            user_message="Already checked in.",
            http_status=409,
            registration_id=registration_id,
            checked_in_at=checked_in_at,
            checked_in_by_staff_id=checked_in_by_staff_id,
            **kwargs,
        )
        self.checked_in_at = checked_in_at
        self.checked_in_by_staff_id = checked_in_by_staff_id


class GuestCountExceeded(SettlementError):
    """More guests presented at the gate than the registration allows."""

    def __init__(self, requested: int, allowed: int, **kwargs: Any):
        super().__init__(
            message=f"Cannot check in {requested} guests. Maximum allowed: {allowed}",
            error_code="GUEST_COUNT_EXCEEDED",
            user_message=f"Only {allowed} guest(s) are registered.",
            http_status=422,
            requested=requested,
            allowed=allowed,
            **kwargs,
        )


class CheckInValidationError(SettlementError):
    """Scan request is malformed."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message=message,
            error_code="CHECKIN_VALIDATION_ERROR",
            user_message=message,
            http_status=422,
            **kwargs,
        )


class CheckInWindowClosed(SettlementError):
    """Scan happened outside the event's check-in window."""

    def __init__(self, event_id: Any, opens_at: Any, closes_at: Any, **kwargs: Any):
        super().__init__(
            message=f"Check-in window is closed for event {event_id}",
            error_code="CHECKIN_WINDOW_CLOSED",
            user_message="Check-in window is closed for this event.",
            http_status=409,
            event_id=event_id,
            opens_at=opens_at,
            closes_at=closes_at,
            **kwargs,
        )


# ============================================================================
# REQUEST CONTEXT ERRORS
# ============================================================================

class TenantContextMissing(SettlementError):
    """Request reached a tenant-scoped route without a tenant id."""

    def __init__(self, message: str = "Tenant context not set", **kwargs: Any):
        super().__init__(
            message=message,
            error_code="TENANT_CONTEXT_MISSING",
            user_message="Invalid request. Please try again.",
            http_status=400,
            **kwargs,
        )


class WebhookError(SettlementError):
    """Gateway webhook could not be authenticated or parsed."""

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(
            message=message,
            error_code="WEBHOOK_ERROR",
            user_message="Webhook rejected.",
            http_status=400,
            **kwargs,
        )
