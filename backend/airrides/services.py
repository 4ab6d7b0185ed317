from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from airrides.domain.payments.ledger import PaymentLedger
from airrides.domain.payments.monitor import ReliabilityMonitor
from airrides.domain.payments.reconciliation import ReconciliationService
from airrides.domain.payments.recovery import RecoverySweeper
from airrides.infra.metrics import Metrics, configure_metrics
from airrides.infra.razorpay_client import RazorpayClient, razorpay_client_from_settings


@dataclass
class AppServices:
    """Typed container for runtime services stored on `app.state.services`."""

    ledger: PaymentLedger
    monitor: ReliabilityMonitor
    reconciliation: ReconciliationService
    sweeper: RecoverySweeper
    razorpay_client: RazorpayClient
    metrics: Metrics


def build_app_services(
    app_settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    metrics: Metrics | None = None,
    razorpay_client: RazorpayClient | None = None,
) -> AppServices:
    metrics_client = metrics or configure_metrics(app_settings.metrics_enabled)
    ledger = PaymentLedger(session_factory)
    monitor = ReliabilityMonitor(
        ledger,
        threshold=app_settings.payment_reliability_threshold,
        critical_success_rate=app_settings.payment_critical_success_rate,
        slow_processing_ms=app_settings.payment_slow_processing_ms,
        pending_alert_threshold=app_settings.payment_pending_alert_threshold,
        stale_after_minutes=app_settings.payment_recovery_older_than_minutes,
    )
    return AppServices(
        ledger=ledger,
        monitor=monitor,
        reconciliation=ReconciliationService(
            session_factory,
            ledger,
            key_secret=app_settings.razorpay_key_secret,
            webhook_secret=app_settings.razorpay_webhook_secret,
            monitor=monitor,
        ),
        sweeper=RecoverySweeper(
            session_factory,
            ledger,
            older_than_minutes=app_settings.payment_recovery_older_than_minutes,
            max_attempts=app_settings.payment_recovery_max_attempts,
            batch_size=app_settings.payment_recovery_batch_size,
            monitor=monitor,
        ),
        razorpay_client=razorpay_client or razorpay_client_from_settings(app_settings),
        metrics=metrics_client,
    )


def resolve_services(container_like: Any) -> AppServices | None:
    if isinstance(container_like, AppServices):
        return container_like
    if container_like is None:
        return None
    state = getattr(container_like, "state", container_like)
    return getattr(state, "services", None)
