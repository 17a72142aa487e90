"""
Prometheus metrics for payment reconciliation monitoring.

Tracks:
- Payment initiation outcomes
- M-Pesa API calls, durations and errors
- Access token cache hits and refreshes
- Callback deliveries by reconciliation outcome
- Notification fan-out failures
- Pending payment sweeps
"""
from prometheus_client import Counter, Histogram

# Payment initiation metrics
payment_initiations_total = Counter(
    "payment_initiations_total",
    "Total number of STK push initiations",
    ["outcome"],  # accepted, validation_error, provider_error, persistence_error
)

payment_initiation_duration_seconds = Histogram(
    "payment_initiation_duration_seconds",
    "STK push initiation duration in seconds",
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

payment_amount = Histogram(
    "payment_amount",
    "Initiated payment amounts in shillings",
    buckets=(5, 10, 20, 50, 100, 250, 500, 1000, 2500, 5000),
)

# M-Pesa API metrics
mpesa_api_requests_total = Counter(
    "mpesa_api_requests_total",
    "Total M-Pesa API requests",
    ["operation", "status"],  # operation: oauth, stk_push, stk_query
)

mpesa_api_errors_total = Counter(
    "mpesa_api_errors_total",
    "Total M-Pesa API errors",
    ["error_type"],  # transient, permanent, authentication, timeout
)

mpesa_api_duration_seconds = Histogram(
    "mpesa_api_duration_seconds",
    "M-Pesa API call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

mpesa_token_requests_total = Counter(
    "mpesa_token_requests_total",
    "Access token lookups",
    ["source"],  # cache, provider
)

# Callback metrics
callback_deliveries_total = Counter(
    "callback_deliveries_total",
    "Total provider deliveries by reconciliation outcome",
    ["source", "outcome"],  # transitioned, duplicate, synthesized, ignored, error
)

callback_processing_duration_seconds = Histogram(
    "callback_processing_duration_seconds",
    "Callback reconciliation duration in seconds",
    ["source"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

notification_failures_total = Counter(
    "notification_failures_total",
    "Payment update notifications that failed to broadcast",
)

# Pending sweep metrics
pending_sweep_payments_total = Counter(
    "pending_sweep_payments_total",
    "Pending payments examined by the sweeper",
    ["result"],  # resolved, still_pending, query_failed, reconcile_failed
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_initiation(outcome: str, duration_seconds: float, amount: int = 0) -> None:
        """Record an STK push initiation."""
        payment_initiations_total.labels(outcome=outcome).inc()
        payment_initiation_duration_seconds.observe(duration_seconds)
        if amount > 0:
            payment_amount.observe(amount)

    @staticmethod
    def record_mpesa_api_call(operation: str, status: str, duration_seconds: float) -> None:
        """Record M-Pesa API call."""
        mpesa_api_requests_total.labels(operation=operation, status=status).inc()
        mpesa_api_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def record_mpesa_api_error(error_type: str) -> None:
        """Record M-Pesa API error."""
        mpesa_api_errors_total.labels(error_type=error_type).inc()

    @staticmethod
    def record_token_request(source: str) -> None:
        mpesa_token_requests_total.labels(source=source).inc()

    @staticmethod
    def record_callback(source: str, outcome: str, duration_seconds: float) -> None:
        """Record callback processing."""
        callback_deliveries_total.labels(source=source, outcome=outcome).inc()
        callback_processing_duration_seconds.labels(source=source).observe(duration_seconds)

    @staticmethod
    def record_notification_failure() -> None:
        notification_failures_total.inc()

    @staticmethod
    def record_pending_sweep(result: str) -> None:
        pending_sweep_payments_total.labels(result=result).inc()


# Export singleton instance
metrics = MetricsCollector()
