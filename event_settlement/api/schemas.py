"""
Pydantic schemas for API request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from event_settlement.core.intents import RegistrationIntent


class InitiatePaymentRequest(BaseModel):
    """Request schema for starting a payment."""

    reference_type: Literal["EVENT_PAYMENT", "DONATION"] = Field(
        ..., description="What the payment is for"
    )
    reference_id: str = Field(..., min_length=1, description="Event id, or campaign id for donations")
    user_id: str = Field(..., min_length=1, max_length=64, description="Paying member")
    intent: RegistrationIntent = Field(..., description="What the member asked for")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "reference_type": "EVENT_PAYMENT",
                    "reference_id": "5f0c6f8e-8d3b-4b43-9c55-3f1d2a6b9e01",
                    "user_id": "member_1042",
                    "intent": {
                        "kind": "EVENT_PAYMENT",
                        "meal_preference": "VEG",
                        "guests": [{"name": "Asha"}, {"name": "Ravi"}],
                        "donation_amount": "50.00",
                    },
                }
            ]
        }
    }


class VerifyPaymentRequest(BaseModel):
    """Checkout callback payload relayed by the client."""

    gateway_order_id: Optional[str] = Field(default=None, description="Razorpay order id")
    gateway_payment_id: str = Field(..., min_length=1, description="Razorpay payment id")
    gateway_signature: str = Field(..., min_length=1, description="Razorpay checkout signature")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "gateway_order_id": "order_NQ2xY9kT1a",
                    "gateway_payment_id": "pay_NQ2yB7mV3c",
                    "gateway_signature": "9ef4dffbfd84f1318f6739a3ce19f9d85851857ae648f114332d8401e0949a3d",
                }
            ]
        }
    }


class PaymentResponse(BaseModel):
    """Response schema for a payment transaction."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Transaction id")
    tenant_id: str = Field(..., description="Tenant")
    reference_type: str = Field(..., description="EVENT_PAYMENT or DONATION")
    reference_id: str = Field(..., description="Referenced event or campaign")
    user_id: str = Field(..., description="Paying member")
    amount: Decimal = Field(..., description="Amount charged")
    currency: str = Field(..., description="Currency code")
    status: str = Field(..., description="INITIATED, COMPLETED, FAILED or EXPIRED")
    gateway_order_id: str = Field(..., description="Razorpay order id")
    gateway_payment_id: Optional[str] = Field(default=None, description="Razorpay payment id")
    failure_reason: Optional[str] = Field(default=None, description="Why the payment failed")
    created_at: datetime = Field(..., description="Creation timestamp")
    completed_at: Optional[datetime] = Field(default=None, description="Completion timestamp")
    expires_at: Optional[datetime] = Field(default=None, description="Expiry of an unpaid order")


class GuestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    meal_preference: Optional[str] = None


class RegistrationResponse(BaseModel):
    """Response schema for a confirmed (or cancelled) registration."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID = Field(..., description="Registration id")
    event_id: UUID = Field(..., description="Event")
    user_id: str = Field(..., description="Registrant")
    status: str = Field(..., description="CONFIRMED or CANCELLED")
    meal_preference: Optional[str] = Field(default=None, description="Registrant meal preference")
    guest_count: int = Field(..., description="Guests registered")
    total_amount: Decimal = Field(..., description="Total paid")
    donation_amount: Decimal = Field(..., description="Donation included in the total")
    source_transaction_id: UUID = Field(..., description="Payment that created the registration")
    created_at: datetime = Field(..., description="Confirmation timestamp")
    cancelled_at: Optional[datetime] = Field(default=None, description="Cancellation timestamp")
    guests: List[GuestResponse] = Field(default_factory=list, description="Registered guests")


class QRCredentialResponse(BaseModel):
    """Check-in credential for a registration."""

    model_config = ConfigDict(from_attributes=True)

    registration_id: UUID = Field(..., description="Registration")
    token: str = Field(..., description="Signed check-in token to render as a QR code")
    generated_at: datetime = Field(..., description="When the token was issued")


class RevokeResponse(BaseModel):
    registration_id: UUID
    revoked: bool = Field(..., description="False if no active credential existed")


class ScanRequest(BaseModel):
    """Gate scan payload."""

    token: str = Field(..., min_length=1, description="Scanned QR token")
    guests_checked_in: int = Field(..., ge=0, description="Guests arriving with the registrant")
    check_in_location: Optional[str] = Field(default=None, max_length=255, description="Gate name")
    notes: Optional[str] = Field(default=None, max_length=2000, description="Staff notes")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "token": "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9...",
                    "guests_checked_in": 2,
                    "check_in_location": "Main Gate",
                }
            ]
        }
    }


class ScanResponse(BaseModel):
    """Recorded check-in."""

    model_config = ConfigDict(from_attributes=True)

    registration_id: UUID = Field(..., description="Registration checked in")
    event_id: UUID = Field(..., description="Event")
    checked_in_at: datetime = Field(..., description="Check-in timestamp")
    guests_checked_in: int = Field(..., description="Guests admitted")
    total_guests_allowed: int = Field(..., description="Guests registered")
    check_in_location: Optional[str] = Field(default=None, description="Gate name")
    checked_in_by_staff_id: str = Field(..., description="Staff member who scanned")


class CheckInRecordResponse(ScanResponse):
    id: UUID
    notes: Optional[str] = None


class StatsResponse(BaseModel):
    """Attendance totals for an event."""

    event_id: str = Field(..., description="Event")
    total_confirmed: int = Field(..., description="Confirmed registrations")
    total_checked_in: int = Field(..., description="Registrations checked in")
    total_guests_checked_in: int = Field(..., description="Guests admitted")
    total_guests_registered: int = Field(default=0, description="Guests on confirmed registrations")
    remaining: int = Field(default=0, description="Confirmed registrations not yet checked in")
    check_in_rate: float = Field(default=0.0, description="Percent of confirmed registrations checked in")
    average_guests_per_check_in: float = Field(default=0.0, description="Guests admitted per check-in")


class HourlyCheckInsResponse(BaseModel):
    hour: datetime = Field(..., description="Start of the clock hour, UTC")
    count: int = Field(..., description="Check-ins in that hour")


class TimelineResponse(BaseModel):
    """Check-ins per hour, oldest first."""

    event_id: str
    hours: List[HourlyCheckInsResponse]


class QRAnalyticsResponse(BaseModel):
    """Usage of an event's active QR credentials."""

    event_id: str = Field(..., description="Event")
    credentials_generated: int = Field(..., description="Active credentials issued")
    credentials_scanned: int = Field(..., description="Credentials scanned at least once")
    total_scans: int = Field(..., description="Successful scans")
    average_scans_per_credential: float = Field(..., description="Scans per active credential")


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    pages: int


class HistoryResponse(BaseModel):
    """Page of check-ins, newest first."""

    items: List[CheckInRecordResponse]
    pagination: Pagination


class WebhookResponse(BaseModel):
    """Response schema for webhook processing."""

    status: str = Field(..., description="success, duplicate, ignored or rejected")
    event_id: str = Field(..., description="Delivery id")
    event_type: Optional[str] = Field(default=None, description="Razorpay event type")
    error_code: Optional[str] = Field(default=None, description="Why the event was rejected")
    result: Optional[Dict[str, Any]] = Field(default=None, description="Handler result")


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Optional[Dict[str, Any]] = Field(default=None, description="Individual check results")
    message: Optional[str] = Field(default=None, description="Status message")
