"""
Prometheus metrics for payment reconciliation monitoring.

Tracks:
- Side effects applied per observation source
- Superseded writes (lost compare-and-set races)
- Unrecognized gateway statuses
- Manual sync outcomes and latency
- Midtrans API calls, errors and circuit breaker state
- Webhook notifications
- Poll ticks and expiry sweeps
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Reconciliation metrics
side_effects_total = Counter(
    "payment_side_effects_total",
    "Side effects applied to orders",
    ["source", "side_effect"],
)

side_effects_superseded_total = Counter(
    "payment_side_effects_superseded_total",
    "Side effects dropped because a concurrent writer applied first",
    ["source", "side_effect"],
)

unrecognized_statuses_total = Counter(
    "payment_unrecognized_statuses_total",
    "Observations carrying a status outside the known set",
    ["source"],
)

# Sync metrics
sync_requests_total = Counter(
    "payment_sync_requests_total",
    "Manual payment sync requests",
    ["outcome"],  # synced, unchanged, unavailable, gateway_error
)

sync_duration_seconds = Histogram(
    "payment_sync_duration_seconds",
    "Manual payment sync duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Midtrans API metrics
gateway_requests_total = Counter(
    "midtrans_api_requests_total",
    "Total Midtrans API requests",
    ["operation", "status"],
)

gateway_errors_total = Counter(
    "midtrans_api_errors_total",
    "Total Midtrans API errors",
    ["error_type"],  # transient, permanent, rate_limit
)

gateway_duration_seconds = Histogram(
    "midtrans_api_duration_seconds",
    "Midtrans API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0),
)

gateway_circuit_breaker_state = Gauge(
    "midtrans_circuit_breaker_state",
    "Midtrans circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook notifications processed",
    ["transaction_status", "status"],  # success, duplicate, rejected
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Client-side metrics
poll_ticks_total = Counter(
    "payment_poll_ticks_total",
    "Poll loop ticks",
    ["outcome"],  # ok, failed, handler_failed, discarded
)

# Expiry sweep metrics
expiry_sweep_orders_total = Counter(
    "expiry_sweep_orders_total",
    "Orders handled by the expiry sweep",
    ["outcome"],  # expired, paid, payment_failed, skipped, error
)

expiry_sweep_duration_seconds = Histogram(
    "expiry_sweep_duration_seconds",
    "Expiry sweep duration in seconds",
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0),
)

expiry_sweep_last_run_timestamp = Gauge(
    "expiry_sweep_last_run_timestamp",
    "Timestamp of last expiry sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_side_effect(source: str, side_effect: str) -> None:
        """Record an applied side effect."""
        side_effects_total.labels(source=source, side_effect=side_effect).inc()

    @staticmethod
    def record_superseded(source: str, side_effect: str) -> None:
        side_effects_superseded_total.labels(source=source, side_effect=side_effect).inc()

    @staticmethod
    def record_unrecognized_status(source: str) -> None:
        unrecognized_statuses_total.labels(source=source).inc()

    @staticmethod
    def record_sync(outcome: str, duration_seconds: float) -> None:
        """Record a manual sync request."""
        sync_requests_total.labels(outcome=outcome).inc()
        sync_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_gateway_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record a Midtrans API call."""
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
    def record_webhook_event(
        transaction_status: str, status: str, duration_seconds: float
    ) -> None:
        """Record webhook notification processing."""
        webhook_events_processed_total.labels(
            transaction_status=transaction_status, status=status
        ).inc()
        webhook_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_poll_tick(outcome: str) -> None:
        poll_ticks_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_expiry_sweep_order(outcome: str) -> None:
        expiry_sweep_orders_total.labels(outcome=outcome).inc()

    @staticmethod
    def record_expiry_sweep(duration_seconds: float) -> None:
        """Record a completed expiry sweep."""
        expiry_sweep_duration_seconds.observe(duration_seconds)
        expiry_sweep_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
