"""
Prometheus metrics for the settlement and check-in pipeline.

Tracks:
- Payment transactions by status
- Gateway calls, errors and circuit breaker state
- Registration commits by outcome
- QR issuance and gate scans by outcome
- Webhook events
- Outbox queue depth
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payment_transactions_total = Counter(
    "payment_transactions_total",
    "Payment transactions by resulting status",
    ["status", "reference_type"],
)

payment_amount = Histogram(
    "payment_amount",
    "Initiated payment amounts (major currency units)",
    buckets=(50, 100, 250, 500, 1000, 2500, 5000, 10000, 50000),
)

signature_mismatches_total = Counter(
    "signature_mismatches_total",
    "Payment callbacks rejected for a bad signature",
)

payment_attempt_failures_total = Counter(
    "payment_attempt_failures_total",
    "Failed payment attempts reported by the gateway on still-open orders",
)

# Gateway metrics
gateway_requests_total = Counter(
    "gateway_requests_total",
    "Total payment gateway requests",
    ["operation", "status"],
)

gateway_errors_total = Counter(
    "gateway_errors_total",
    "Total payment gateway errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_duration_seconds = Histogram(
    "gateway_duration_seconds",
    "Payment gateway call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Registration metrics
registration_commits_total = Counter(
    "registration_commits_total",
    "Registration commit attempts by outcome",
    ["outcome"],  # created, idempotent, duplicate, event_full
)

registration_cancellations_total = Counter(
    "registration_cancellations_total",
    "Registrations cancelled",
)

# QR metrics
qr_issuance_total = Counter(
    "qr_issuance_total",
    "QR credential issue calls by outcome",
    ["outcome"],  # created, existing, rearmed, not_confirmed
)

qr_token_rejections_total = Counter(
    "qr_token_rejections_total",
    "QR tokens rejected at decode",
    ["reason"],  # invalid, expired, revoked
)

# Check-in metrics
checkin_scans_total = Counter(
    "checkin_scans_total",
    "Gate scans by outcome",
    ["outcome"],  # checked_in, already_checked_in, guest_count_exceeded, window_closed
)

checkin_scan_duration_seconds = Histogram(
    "checkin_scan_duration_seconds",
    "Gate scan processing duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

checkin_stats_cache_total = Counter(
    "checkin_stats_cache_total",
    "Check-in stats cache lookups",
    ["result"],  # hit, miss, error
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # processed, duplicate, ignored, failed
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Reconciliation metrics
expired_transactions_total = Counter(
    "expired_transactions_total",
    "Transactions expired by the reconciliation sweep",
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)

# Outbox metrics
outbox_queue_depth = Gauge(
    "outbox_queue_depth",
    "Number of unpublished events in outbox",
)

outbox_events_published_total = Counter(
    "outbox_events_published_total",
    "Total outbox events published",
    ["event_type"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_transaction(status: str, reference_type: str) -> None:
        """Record a payment transaction status change."""
        payment_transactions_total.labels(status=status, reference_type=reference_type).inc()

    @staticmethod
    def record_payment_amount(amount: float) -> None:
        payment_amount.observe(amount)

    @staticmethod
    def record_signature_mismatch() -> None:
        signature_mismatches_total.inc()

    @staticmethod
    def record_payment_attempt_failed() -> None:
        payment_attempt_failures_total.inc()

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a payment gateway call."""
        gateway_requests_total.labels(operation=operation, status=status).inc()
        gateway_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        gateway_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_registration_commit(outcome: str) -> None:
        registration_commits_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_registration_cancelled() -> None:
        registration_cancellations_total.inc()

    @staticmethod
    def record_qr_issuance(outcome: str) -> None:
        qr_issuance_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_qr_rejection(reason: str) -> None:
        qr_token_rejections_total.labels(reason=reason).inc()

    @staticmethod
    def record_checkin_scan(outcome: str, duration_seconds: float = 0) -> None:
        """Record a gate scan."""
        checkin_scans_total.labels(outcome=outcome).inc()
        if duration_seconds > 0:
            checkin_scan_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_stats_cache(result: str) -> None:
        checkin_stats_cache_total.labels(result=result).inc()

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_expired_transactions(count: int) -> None:
        """Record a reconciliation sweep."""
        if count:
            expired_transactions_total.inc(count)
        reconciliation_last_run_timestamp.set(time.time())

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str) -> None:
        outbox_events_published_total.labels(event_type=event_type).inc()


# Export singleton instance
metrics = MetricsCollector()
