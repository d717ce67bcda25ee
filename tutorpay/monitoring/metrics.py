"""
Prometheus metrics for payment system monitoring.

Tracks:
- Payment initiations by method and outcome
- Paystack API calls, errors and latency
- Webhook deliveries by event type and outcome
- Reconciliation transitions and ignored stale events
- Background write failures
- Reference lock acquisitions
"""
from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payment_requests_total = Counter(
    "payment_requests_total",
    "Total number of payment initiation requests",
    ["method", "outcome"],
)

payment_amount = Histogram(
    "payment_amount",
    "Payment amounts in display currency units",
    buckets=(50, 100, 500, 1000, 5000, 10000, 50000, 100000, 500000, 1000000),
)

# Gateway metrics
gateway_api_requests_total = Counter(
    "gateway_api_requests_total",
    "Total Paystack API requests",
    ["operation", "status"],  # operation: initialize, charge, verify
)

gateway_api_errors_total = Counter(
    "gateway_api_errors_total",
    "Total Paystack API errors",
    ["error_type"],  # unavailable, rejected, auth, not_found
)

gateway_api_duration_seconds = Histogram(
    "gateway_api_duration_seconds",
    "Paystack API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

gateway_circuit_breaker_state = Gauge(
    "gateway_circuit_breaker_state",
    "Paystack circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # applied, duplicate, ignored
)

webhook_signature_failures_total = Counter(
    "webhook_signature_failures_total",
    "Webhook deliveries rejected for a missing or invalid signature",
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Reconciliation metrics
transaction_transitions_total = Counter(
    "transaction_transitions_total",
    "Transaction status transitions applied",
    ["from_status", "to_status", "source"],  # source: webhook, verify, retry, cancel
)

stale_events_ignored_total = Counter(
    "stale_events_ignored_total",
    "Events ignored because the transition is not allowed",
    ["current_status", "target_status"],
)

booking_effects_total = Counter(
    "booking_effects_total",
    "Booking mutations caused by payment success",
    ["payment_type"],
)

# Background metrics
background_task_failures_total = Counter(
    "background_task_failures_total",
    "Background writes that failed after retries",
    ["task"],
)

# Lock metrics
reference_lock_acquisitions_total = Counter(
    "reference_lock_acquisitions_total",
    "Total reference lock acquisitions",
    ["backend", "status"],  # acquired, timeout
)

reference_lock_wait_seconds = Histogram(
    "reference_lock_wait_seconds",
    "Time spent waiting for a reference lock",
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 10.0, 30.0),
)

# Rate limit metrics
rate_limit_rejections_total = Counter(
    "rate_limit_rejections_total",
    "Requests refused by a rate limit rule",
    ["rule"],  # api, payments, webhooks
)

rate_limit_backend_errors_total = Counter(
    "rate_limit_backend_errors_total",
    "Rate limit checks skipped because the counter store failed",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_request(method: str, outcome: str, amount: float) -> None:
        """Record a payment initiation."""
        payment_requests_total.labels(method=method, outcome=outcome).inc()
        payment_amount.observe(amount)

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a Paystack API call."""
        gateway_api_requests_total.labels(operation=operation, status=status).inc()
        gateway_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_gateway_error(error_type: str) -> None:
        """Record a Paystack API error."""
        gateway_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        gateway_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_signature_failure() -> None:
        """Record a rejected webhook signature."""
        webhook_signature_failures_total.inc()

    @staticmethod
    def record_transition(from_status: str, to_status: str, source: str) -> None:
        """Record an applied status transition."""
        transaction_transitions_total.labels(
            from_status=from_status, to_status=to_status, source=source
        ).inc()

    @staticmethod
    def record_stale_event(current_status: str, target_status: str) -> None:
        """Record an event dropped by the transition table."""
        stale_events_ignored_total.labels(
            current_status=current_status, target_status=target_status
        ).inc()

    @staticmethod
    def record_booking_effect(payment_type: str) -> None:
        """Record a booking mutation."""
        booking_effects_total.labels(payment_type=payment_type).inc()

    @staticmethod
    def record_background_failure(task: str) -> None:
        """Record a background write that gave up."""
        background_task_failures_total.labels(task=task).inc()

    @staticmethod
    def record_lock(backend: str, status: str, wait_seconds: float = 0) -> None:
        """Record reference lock acquisition."""
        reference_lock_acquisitions_total.labels(backend=backend, status=status).inc()
        if wait_seconds > 0:
            reference_lock_wait_seconds.observe(wait_seconds)


    @staticmethod
    def record_rate_limited(rule: str) -> None:
        """Record a request refused by a rate limit rule."""
        rate_limit_rejections_total.labels(rule=rule).inc()

    @staticmethod
    def record_rate_limit_backend_error() -> None:
        """Record a rate limit check that could not reach its store."""
        rate_limit_backend_errors_total.inc()

# Export singleton instance
metrics = MetricsCollector()
