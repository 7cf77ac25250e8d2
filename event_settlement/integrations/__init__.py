"""External service integrations."""
from .notifications import NotificationDispatcher, NotificationError
from .razorpay_client import GatewayError, GatewayErrorType, PaymentGateway, RazorpayClient
from .webhook_handler import RazorpayWebhookHandler

__all__ = [
    "GatewayError",
    "GatewayErrorType",
    "NotificationDispatcher",
    "NotificationError",
    "PaymentGateway",
    "RazorpayClient",
    "RazorpayWebhookHandler",
]
