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
            self.reconciliations = None
            self.seat_conflicts = None
            self.ledger_write_failures = None
            self.recovery_results = None
            self.payment_reliability = None
            self.payment_pending = None
            self.webhook_events = None
            self.http_5xx = None
            self.http_latency = None
            self.job_heartbeat = None
            self.job_last_success = None
            self.job_errors = None
            self.circuit_state = None
            return

        self.reconciliations = Counter(
            "payment_reconciliations_total",
            "Payment reconciliation outcomes by entry point and result code.",
            ["entry", "outcome"],
            registry=self.registry,
        )
        self.seat_conflicts = Counter(
            "seat_reservation_conflicts_total",
            "Conditional seat decrements that matched no row.",
            ["reason"],
            registry=self.registry,
        )
        self.ledger_write_failures = Counter(
            "payment_ledger_write_failures_total",
            "Payment ledger writes that failed and were swallowed.",
            ["operation"],
            registry=self.registry,
        )
        self.recovery_results = Counter(
            "payment_recovery_results_total",
            "Orphan recovery sweeper results per candidate.",
            ["result"],
            registry=self.registry,
        )
        self.payment_reliability = Gauge(
            "payment_reliability_percent",
            "Successful payment attempts over total attempts (percent).",
            registry=self.registry,
        )
        self.payment_pending = Gauge(
            "payment_attempts_pending",
            "Payment attempts currently in PENDING state.",
            registry=self.registry,
        )
        self.webhook_events = Counter(
            "razorpay_webhook_events_total",
            "Gateway webhook outcomes by result.",
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
        self.job_errors = Counter(
            "job_errors_total",
            "Job execution errors by job and reason.",
            ["job", "reason"],
            registry=self.registry,
        )
        self.circuit_state = Gauge(
            "circuit_state",
            "Circuit breaker state (0=closed, 0.5=half-open, 1=open).",
            ["circuit"],
            registry=self.registry,
        )

    def record_reconciliation(self, entry: str, outcome: str) -> None:
        if not self.enabled or self.reconciliations is None:
            return
        self.reconciliations.labels(entry=entry or "unknown", outcome=outcome or "unknown").inc()

    def record_seat_conflict(self, reason: str) -> None:
        if not self.enabled or self.seat_conflicts is None:
            return
        self.seat_conflicts.labels(reason=reason or "unknown").inc()

    def record_ledger_write_failure(self, operation: str) -> None:
        if not self.enabled or self.ledger_write_failures is None:
            return
        self.ledger_write_failures.labels(operation=operation or "unknown").inc()

    def record_recovery(self, result: str, count: int = 1) -> None:
        if not self.enabled or self.recovery_results is None:
            return
        if count <= 0:
            return
        self.recovery_results.labels(result=result).inc(count)

    def set_payment_reliability(self, reliability: float, pending: int) -> None:
        if not self.enabled or self.payment_reliability is None or self.payment_pending is None:
            return
        self.payment_reliability.set(max(0.0, float(reliability)))
        self.payment_pending.set(max(0, pending))

    def record_webhook(self, outcome: str) -> None:
        if not self.enabled or self.webhook_events is None:
            return
        self.webhook_events.labels(outcome=outcome or "unknown").inc()

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
        if not self.enabled or self.job_heartbeat is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_heartbeat.labels(job=job).set(ts)

    def record_job_success(self, job: str, timestamp: float | None = None) -> None:
        if not self.enabled or self.job_last_success is None:
            return
        ts = timestamp if timestamp is not None else time.time()
        self.job_last_success.labels(job=job).set(ts)

    def record_job_error(self, job: str, reason: str) -> None:
        if not self.enabled or self.job_errors is None:
            return
        self.job_errors.labels(job=job, reason=reason or "unknown").inc()

    def record_circuit_state(self, circuit: str, state: str) -> None:
        if not self.enabled or self.circuit_state is None:
            return
        value = {"closed": 0, "half_open": 0.5, "open": 1}.get(state, -1)
        self.circuit_state.labels(circuit=circuit).set(value)

    def render(self) -> tuple[bytes, str]:
        if not self.enabled:
            return b"metrics_disabled 1\n", "text/plain; version=0.0.4"
        try:
            return generate_latest(self.registry), CONTENT_TYPE_LATEST
        except Exception:  # noqa: BLE001
            logger.exception("metrics_render_failed")
            return b"metrics_render_failed 1\n", "text/plain; version=0.0.4"


metrics = Metrics(enabled=False)


def configure_metrics(enabled: bool) -> Metrics:
    metrics._configure(enabled)
    return metrics
