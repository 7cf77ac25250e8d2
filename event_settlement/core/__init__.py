"""Core settlement and check-in logic."""
from .checkin import CheckInCoordinator, CheckInStats
from .ledger import PaymentLedger
from .outbox import OutboxPublisher
from .qr_tokens import QRTokenService, TokenClaims
from .registration import RegistrationCommitService
from .stats_cache import StatsCache

__all__ = [
    "CheckInCoordinator",
    "CheckInStats",
    "OutboxPublisher",
    "PaymentLedger",
    "QRTokenService",
    "RegistrationCommitService",
    "StatsCache",
    "TokenClaims",
]
