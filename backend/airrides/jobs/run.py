import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import async_sessionmaker

from airrides.infra.db import dispose_engine, get_session_factory
from airrides.infra.logging import clear_log_context, configure_logging
from airrides.infra.metrics import configure_metrics
from airrides.jobs.heartbeat import record_heartbeat, record_job_result
from airrides.services import AppServices, build_app_services
from airrides.settings import settings

logger = logging.getLogger(__name__)

JOB_PAYMENT_RECOVERY = "payment-recovery"
JOB_PAYMENT_MONITOR = "payment-monitor"
DEFAULT_JOBS = (JOB_PAYMENT_RECOVERY, JOB_PAYMENT_MONITOR)


async def run_payment_recovery(services: AppServices) -> dict[str, int]:
    report = await services.sweeper.run_once()
    return report.as_dict()


async def run_payment_monitor(services: AppServices) -> dict[str, int]:
    monitor = services.monitor
    snapshot = await monitor.refresh()
    alerts = monitor.alerts(snapshot)
    for alert in alerts:
        logger.warning(
            "payment_monitor_alert",
            extra={"extra": {"severity": alert.severity, "message": alert.message}},
        )
    return {"total": snapshot.stats.total, "pending": snapshot.stats.pending, "alerts": len(alerts)}


def _job_runner(name: str) -> Callable[[AppServices], Awaitable[dict[str, int]]]:
    if name == JOB_PAYMENT_RECOVERY:
        return run_payment_recovery
    if name == JOB_PAYMENT_MONITOR:
        return run_payment_monitor
    raise ValueError(f"unknown_job:{name}")


async def _run_job(
    name: str,
    session_factory: async_sessionmaker,
    services: AppServices,
    runner: Callable[[AppServices], Awaitable[dict[str, int]]],
) -> None:
    try:
        result = await runner(services)
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
        await record_job_result(session_factory, name, success=True)
    finally:
        clear_log_context()


async def run_jobs(
    job_names: list[str],
    session_factory: async_sessionmaker,
    services: AppServices,
) -> None:
    runners = [_job_runner(name) for name in job_names]
    for name, runner in zip(job_names, runners):
        try:
            await _run_job(name, session_factory, services, runner)
        except Exception as exc:  # noqa: BLE001
            logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
            await record_job_result(session_factory, name, success=False, error_reason=type(exc).__name__)
    await record_heartbeat(session_factory)


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run payment reconciliation jobs")
    parser.add_argument("--job", action="append", dest="jobs", choices=DEFAULT_JOBS, help="Job name to run")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between loops when not using --once")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging()
    metrics_client = configure_metrics(settings.metrics_enabled)
    session_factory = get_session_factory()
    services = build_app_services(settings, session_factory, metrics=metrics_client)
    job_names = args.jobs or list(DEFAULT_JOBS)

    try:
        while True:
            await run_jobs(job_names, session_factory, services)
            if args.once:
                break
            await asyncio.sleep(max(args.interval, 1))
    finally:
        await dispose_engine()


if __name__ == "__main__":
    asyncio.run(main())
