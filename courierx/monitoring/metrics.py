"""
Prometheus metrics for the shipment lifecycle engine.

Tracks:
- Shipment transitions and version conflicts
- Ledger entries and amounts
- Booking outcomes
- Worker runs and per-item outcomes
- Access decisions and rate-limit rejections
- Outbox queue depth
- External collaborator calls
"""
import time
from decimal import Decimal

from prometheus_client import Counter, Gauge, Histogram

# Shipment state machine metrics
shipment_transitions_total = Counter(
    "shipment_transitions_total",
    "Total accepted shipment transitions",
    ["from_status", "to_status", "source"],
)

shipment_transition_rejections_total = Counter(
    "shipment_transition_rejections_total",
    "Total rejected shipment transitions",
    ["reason"],  # not_found, version_conflict, invalid_transition, forbidden, insufficient_funds
)

shipment_transition_duration_seconds = Histogram(
    "shipment_transition_duration_seconds",
    "Shipment transition duration in seconds",
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

# Ledger metrics
ledger_entries_total = Counter(
    "ledger_entries_total",
    "Total ledger entries appended",
    ["type"],
)

ledger_amount_paise = Histogram(
    "ledger_amount_paise",
    "Ledger entry amounts in paise",
    buckets=(1000, 10000, 50000, 100000, 250000, 500000, 1000000, 5000000),
)

# Booking metrics
bookings_total = Counter(
    "bookings_total",
    "Total booking attempts",
    ["shipment_type", "status"],  # created, duplicate, rejected, compensated
)

manifests_created_total = Counter(
    "manifests_created_total",
    "Total dispatch manifests created",
    ["carrier"],
)

# Worker metrics
worker_runs_total = Counter(
    "worker_runs_total",
    "Total worker runs",
    ["worker", "status"],  # completed, skipped_overlap, disabled
)

worker_items_total = Counter(
    "worker_items_total",
    "Per-shipment worker outcomes",
    ["worker", "outcome"],  # advanced, skipped, error
)

worker_duration_seconds = Histogram(
    "worker_duration_seconds",
    "Worker run duration in seconds",
    ["worker"],
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 300.0),
)

stuck_shipments_flagged_total = Counter(
    "stuck_shipments_flagged_total",
    "Total shipments flagged as stuck",
)

# Access control metrics
access_decisions_total = Counter(
    "access_decisions_total",
    "Access control decisions",
    ["operation", "decision"],
)

rate_limit_rejections_total = Counter(
    "rate_limit_rejections_total",
    "Requests rejected by the rate limiter",
    ["action"],
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

outbox_processing_duration_seconds = Histogram(
    "outbox_processing_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# External collaborator metrics
upstream_requests_total = Counter(
    "upstream_requests_total",
    "Calls to external collaborators",
    ["service", "operation", "status"],
)

upstream_duration_seconds = Histogram(
    "upstream_duration_seconds",
    "External collaborator call duration in seconds",
    ["service"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

payment_circuit_breaker_state = Gauge(
    "payment_circuit_breaker_state",
    "Payment gateway circuit breaker state (0=closed, 1=open, 2=half_open)",
)

worker_last_run_timestamp = Gauge(
    "worker_last_run_timestamp",
    "Timestamp of the last completed worker run",
    ["worker"],
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_transition(
        from_status: str, to_status: str, source: str, duration_seconds: float
    ) -> None:
        """Record an accepted transition."""
        shipment_transitions_total.labels(
            from_status=from_status, to_status=to_status, source=source
        ).inc()
        shipment_transition_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_transition_rejected(reason: str) -> None:
        shipment_transition_rejections_total.labels(reason=reason).inc()

    @staticmethod
    def record_ledger_entry(entry_type: str, amount: Decimal) -> None:
        """Record an appended ledger entry."""
        ledger_entries_total.labels(type=entry_type).inc()
        ledger_amount_paise.observe(float(amount * 100))

    @staticmethod
    def record_booking(shipment_type: str, status: str) -> None:
        bookings_total.labels(shipment_type=shipment_type, status=status).inc()

    @staticmethod
    def record_manifest(carrier: str) -> None:
        manifests_created_total.labels(carrier=carrier).inc()

    @staticmethod
    def record_worker_run(
        worker: str,
        status: str,
        duration_seconds: float = 0,
        advanced: int = 0,
        skipped: int = 0,
        errors: int = 0,
    ) -> None:
        """Record a worker run and its per-item outcomes."""
        worker_runs_total.labels(worker=worker, status=status).inc()
        if duration_seconds > 0:
            worker_duration_seconds.labels(worker=worker).observe(duration_seconds)
        for outcome, count in (("advanced", advanced), ("skipped", skipped), ("error", errors)):
            if count:
                worker_items_total.labels(worker=worker, outcome=outcome).inc(count)
        if status == "completed":
            worker_last_run_timestamp.labels(worker=worker).set(time.time())

    @staticmethod
    def record_stuck_flagged(count: int) -> None:
        if count:
            stuck_shipments_flagged_total.inc(count)

    @staticmethod
    def record_access_decision(operation: str, decision: str) -> None:
        access_decisions_total.labels(operation=operation, decision=decision).inc()

    @staticmethod
    def record_rate_limited(action: str) -> None:
        rate_limit_rejections_total.labels(action=action).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_event_published(event_type: str, duration_seconds: float) -> None:
        """Record outbox event published."""
        outbox_events_published_total.labels(event_type=event_type).inc()
        outbox_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_upstream_call(
        service: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a call to an external collaborator."""
        upstream_requests_total.labels(service=service, operation=operation, status=status).inc()
        upstream_duration_seconds.labels(service=service).observe(duration_seconds)

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        payment_circuit_breaker_state.set(state_map.get(state, 0))


# Export singleton instance
metrics = MetricsCollector()
