"""Database package for event settlement."""
from .connection import close_db, get_db, get_session_factory, init_db, make_session_factory
from .models import (
    Base,
    CheckInRecord,
    Donation,
    Event,
    EventRegistration,
    Guest,
    OutboxEvent,
    PaymentTransaction,
    QRCredential,
)

__all__ = [
    "Base",
    "Event",
    "PaymentTransaction",
    "EventRegistration",
    "Guest",
    "QRCredential",
    "CheckInRecord",
    "Donation",
    "OutboxEvent",
    "get_db",
    "get_session_factory",
    "make_session_factory",
    "init_db",
    "close_db",
]
