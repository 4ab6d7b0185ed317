import socket
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import async_sessionmaker

from airrides.domain.ops.db_models import JobHeartbeat
from airrides.infra.db import transaction
from airrides.infra.metrics import metrics

RUNNER_HEARTBEAT_NAME = "jobs-runner"


def _resolve_runner_id(runner_id: str | None = None) -> str:
    if runner_id and runner_id.strip():
        return runner_id.strip()
    return socket.gethostname()


async def record_job_result(
    session_factory: async_sessionmaker,
    name: str,
    *,
    success: bool,
    error_reason: str | None = None,
    runner_id: str | None = None,
) -> None:
    """Upsert the heartbeat row for ``name`` and mirror it into metrics."""
    now = datetime.now(tz=timezone.utc)
    async with transaction(session_factory) as session:
        record = await session.get(JobHeartbeat, name)
        if record is None:
            record = JobHeartbeat(name=name, consecutive_failures=0)
            session.add(record)
        record.last_heartbeat = now
        record.runner_id = _resolve_runner_id(runner_id)
        record.updated_at = now
        if success:
            record.last_success_at = now
            record.consecutive_failures = 0
            record.last_error = None
            record.last_error_at = None
        else:
            record.consecutive_failures = (record.consecutive_failures or 0) + 1
            record.last_error = (error_reason or "unknown")[:128]
            record.last_error_at = now
    metrics.record_job_heartbeat(name, now.timestamp())
    if success:
        metrics.record_job_success(name, now.timestamp())
    else:
        metrics.record_job_error(name, error_reason or "unknown")


async def record_heartbeat(
    session_factory: async_sessionmaker, name: str = RUNNER_HEARTBEAT_NAME, *, runner_id: str | None = None
) -> None:
    await record_job_result(session_factory, name, success=True, runner_id=runner_id)
