from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from airrides.domain.payments.ledger import LedgerStats, PaymentLedger
from airrides.infra.metrics import metrics

logger = logging.getLogger(__name__)

SEVERITY_CRITICAL = "CRITICAL"
SEVERITY_HIGH = "HIGH"
SEVERITY_MEDIUM = "MEDIUM"

_SUCCESS_OUTCOMES = {"SUCCESS", "ALREADY_CONFIRMED"}
_RECOVERED_OUTCOMES = {"RECOVERED", "REPAIRED"}


@dataclass(frozen=True)
class Alert:
    severity: str
    message: str

    def as_dict(self) -> dict[str, str]:
        return {"severity": self.severity, "message": self.message}


@dataclass
class MonitorSnapshot:
    stats: LedgerStats
    stale_pending: int
    checked_at: datetime
    uptime_seconds: float

    @property
    def success_rate(self) -> float:
        return self.stats.success_rate

    @property
    def reliability(self) -> float:
        # Successful over total attempts. Not a time-based availability figure.
        return self.stats.success_rate

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_attempts": self.stats.total,
            "successful": self.stats.processed,
            "failed": self.stats.failed,
            "pending": self.stats.pending,
            "stale_pending": self.stale_pending,
            "recovered": self.stats.recovered,
            "average_processing_time_ms": round(self.stats.avg_processing_ms),
            "success_rate": round(self.success_rate, 3),
            "reliability": round(self.reliability, 3),
            "uptime_hours": round(self.uptime_seconds / 3600, 2),
            "last_check": self.checked_at.isoformat(),
        }


@dataclass
class RealtimeCounters:
    outcomes: Counter = field(default_factory=Counter)

    def as_dict(self) -> dict[str, Any]:
        total = sum(self.outcomes.values())
        successful = sum(self.outcomes[key] for key in _SUCCESS_OUTCOMES)
        recovered = sum(self.outcomes[key] for key in _RECOVERED_OUTCOMES)
        return {
            "total": total,
            "successful": successful,
            "recovered": recovered,
            "failed": total - successful - recovered,
            "by_outcome": dict(self.outcomes),
        }


class ReliabilityMonitor:
    """Derives reliability figures and alerts from the payment ledger.

    One instance is built per process and handed to the API and the jobs
    runner. ``refresh`` reads the ledger and never writes to it.
    """

    def __init__(
        self,
        ledger: PaymentLedger,
        *,
        threshold: float = 99.9,
        critical_success_rate: float = 95.0,
        slow_processing_ms: float = 5000.0,
        pending_alert_threshold: int = 10,
        stale_after_minutes: int = 5,
    ) -> None:
        self.ledger = ledger
        self.threshold = threshold
        self.critical_success_rate = critical_success_rate
        self.slow_processing_ms = slow_processing_ms
        self.pending_alert_threshold = pending_alert_threshold
        self.stale_after_minutes = stale_after_minutes
        self.realtime = RealtimeCounters()
        self._started = time.monotonic()
        self._snapshot: MonitorSnapshot | None = None

    def record_outcome(self, outcome: str) -> None:
        self.realtime.outcomes[outcome] += 1

    async def refresh(self) -> MonitorSnapshot:
        stats = await self.ledger.aggregate_stats()
        stale_pending = await self.ledger.count_stale_pending(self.stale_after_minutes)
        snapshot = MonitorSnapshot(
            stats=stats,
            stale_pending=stale_pending,
            checked_at=datetime.now(tz=timezone.utc),
            uptime_seconds=time.monotonic() - self._started,
        )
        self._snapshot = snapshot
        metrics.set_payment_reliability(snapshot.reliability, stats.pending)
        logger.info(
            "payment_monitor_refreshed",
            extra={
                "extra": {
                    "total": stats.total,
                    "successful": stats.processed,
                    "failed": stats.failed,
                    "pending": stats.pending,
                    "reliability": round(snapshot.reliability, 3),
                    "meets_threshold": self.meets_threshold(snapshot),
                }
            },
        )
        return snapshot

    async def snapshot(self) -> MonitorSnapshot:
        if self._snapshot is None:
            return await self.refresh()
        return self._snapshot

    def meets_threshold(self, snapshot: MonitorSnapshot) -> bool:
        return snapshot.reliability >= self.threshold

    def alerts(self, snapshot: MonitorSnapshot) -> list[Alert]:
        alerts: list[Alert] = []
        if snapshot.reliability < self.threshold:
            alerts.append(
                Alert(
                    SEVERITY_HIGH,
                    f"Reliability below threshold: {snapshot.reliability:.3f}% (target: {self.threshold}%)",
                )
            )
        if snapshot.success_rate < self.critical_success_rate:
            alerts.append(
                Alert(SEVERITY_CRITICAL, f"Success rate critically low: {snapshot.success_rate:.3f}%")
            )
        avg_ms = round(snapshot.stats.avg_processing_ms)
        if avg_ms > self.slow_processing_ms:
            alerts.append(Alert(SEVERITY_MEDIUM, f"High processing time: {avg_ms}ms"))
        if snapshot.stale_pending > self.pending_alert_threshold:
            alerts.append(Alert(SEVERITY_MEDIUM, f"{snapshot.stale_pending} payments pending recovery"))
        return alerts

    def stats_report(self, snapshot: MonitorSnapshot) -> dict[str, Any]:
        return {
            "realtime": self.realtime.as_dict(),
            "database": snapshot.as_dict(),
            "reliability": {
                "meets_threshold": self.meets_threshold(snapshot),
                "target_rate": self.threshold,
                "current_rate": round(snapshot.reliability, 3),
            },
        }

    def health_report(self, snapshot: MonitorSnapshot) -> dict[str, Any]:
        alerts = self.alerts(snapshot)
        return {
            "status": "healthy" if not alerts else "degraded",
            "uptime_seconds": round(snapshot.uptime_seconds, 1),
            "success_rate": round(snapshot.success_rate, 3),
            "alerts": [alert.as_dict() for alert in alerts],
            "last_check": snapshot.checked_at.isoformat(),
        }
