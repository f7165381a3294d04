import logging
import time

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

logger = logging.getLogger(__name__)


class Metrics:
    def __init__(self, enabled: bool = False) -> None:
        self._configure(enabled)

    def _configure(self, enabled: bool) -> None:
        self.enabled = enabled
        self.registry = CollectorRegistry(auto_describe=True)
        if not enabled:
            self.reservations = None
            self.reservations_active = None
            self.bookings = None
            self.slot_drift = None
            self.slots_reconciled = None
            self.orphan_repairs = None
            self.payment_events = None
            self.http_5xx = None
            self.http_latency = None
            self.job_heartbeat = None
            self.job_last_success = None
            self.job_runner_up = None
            self.job_errors = None
            return

        self.reservations = Counter(
            "reservations_total",
            "Reservation attempts by outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self.reservations_active = Gauge(
            "reservations_active",
            "Unexpired ACTIVE reservations observed by the last sweep.",
            registry=self.registry,
        )
        self.bookings = Counter(
            "bookings_total",
            "Booking lifecycle events.",
            ["action"],
            registry=self.registry,
        )
        self.slot_drift = Counter(
            "slot_drift_total",
            "Slots whose cached occupancy disagreed with their booking rows.",
            ["source"],
            registry=self.registry,
        )
        self.slots_reconciled = Counter(
            "slots_reconciled_total",
            "Slots rewritten by the capacity reconciler.",
            registry=self.registry,
        )
        self.orphan_repairs = Counter(
            "orphan_booking_repairs_total",
            "Orphaned booking repairs by result.",
            ["result"],
            registry=self.registry,
        )
        self.payment_events = Counter(
            "payment_events_total",
            "Payment gateway events by outcome.",
            ["outcome"],
            registry=self.registry,
        )
        self.http_5xx = Counter(
            "http_5xx_total",
            "HTTP responses with status >= 500.",
            ["method", "path"],
            registry=self.registry,
        )
        self.http_latency = Histogram(
            "http_request_latency_seconds",
            "HTTP request latency in seconds.",
            ["method", "path", "status_class"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10),
            registry=self.registry,
        )
        self.job_heartbeat = Gauge(
            "job_last_heartbeat_timestamp",
            "Unix timestamp for the latest job heartbeat.",
            ["job"],
            registry=self.registry,
        )
        self.job_last_success = Gauge(
            "job_last_success_timestamp",
            "Unix timestamp for the latest successful job loop.",
            ["job"],
            registry=self.registry,
        )
        self.job_runner_up = Gauge(
            "job_runner_up",
            "Job runner liveness indicator (1=recent heartbeat).",
            ["job"],
            registry=self.registry,
        )
        self.job_errors = Counter(
            "job_errors_total",
            "Job execution errors by job and reason.",
            ["job", "reason"],
            registry=self.registry,
        )

    def record_reservation(self, outcome: str) -> None:
        if not self.enabled or self.reservations is None:
            return
        self.reservations.labels(outcome=outcome or "unknown").inc()

    def set_reservations_active(self, count: int) -> None:
        if not self.enabled or self.reservations_active is None:
            return
        self.reservations_active.set(max(0, count))

    def record_booking(self, action: str, count: int = 1) -> None:
        if not self.enabled or self.bookings is None:
            return
        if count <= 0:
            return
        self.bookings.labels(action=action).inc(count)

    def record_slot_drift(self, source: str) -> None:
        if not self.enabled or self.slot_drift is None:
            return
        self.slot_drift.labels(source=source or "unknown").inc()

    def record_slot_reconciled(self, count: int = 1) -> None:
        if not self.enabled or self.slots_reconciled is None:
            return
        if count <= 0:
            return
        self.slots_reconciled.inc(count)

    def record_orphan_repair(self, result: str) -> None:
        if not self.enabled or self.orphan_repairs is None:
            return
        self.orphan_repairs.labels(result=result or "unknown").inc()

    def record_payment_event(self, outcome: str) -> None:
        if not self.enabled or self.payment_events is None:
            return
        self.payment_events.labels(outcome=outcome or "unknown").inc()

    def record_http_5xx(self, method: str, path: str) -> None:
        if not self.enabled or self.http_5xx is None:
            return
        self.http_5xx.labels(method=method, path=path).inc()

    def record_http_latency(self, method: str, path: str, status_code: int, duration_seconds: float) -> None:
        if not self.enabled or self.http_latency is None:
            return
        status_class = f"{status_code // 100}xx" if status_code else "unknown"
        duration_seconds = max(0.0, float(duration_seconds))
        self.http_latency.labels(method=method, path=path, status_class=status_class).observe(
            duration_seconds
        )

    def record_job_heartbeat(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_heartbeat is None or self.job_runner_up is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_heartbeat.labels(job=job).set(ts)
        self.job_runner_up.labels(job=job).set(1)

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_last_success is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_last_success.labels(job=job).set(ts)

    def record_job_error(self, job: str, reason: str) -> None:
        if not self.enabled or self.job_errors is None:
            return
        self.job_errors.labels(job=job, reason=reason or "unknown").inc()

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        return generate_latest(self.registry), CONTENT_TYPE_LATEST


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    """Reconfigure the shared metrics object in place so module imports stay valid."""
    if metrics.enabled != enabled:
        logger.info("metrics_configured", extra={"extra": {"enabled": enabled}})
        metrics._configure(enabled)
    return metrics
