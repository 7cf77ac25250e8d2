"""FastAPI application and routes."""
from .main import app
from .schemas import (
    InitiatePaymentRequest,
    PaymentResponse,
    QRCredentialResponse,
    RegistrationResponse,
    ScanRequest,
    ScanResponse,
)

__all__ = [
    "app",
    "InitiatePaymentRequest",
    "PaymentResponse",
    "QRCredentialResponse",
    "RegistrationResponse",
    "ScanRequest",
    "ScanResponse",
]
