import socket
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.domain.ops.db_models import JobHeartbeat
from app.infra.metrics import metrics

RUNNER_HEARTBEAT_NAME = "jobs-runner"


def _resolve_runner_id(runner_id: str | None = None) -> str:
    if runner_id and runner_id.strip():
        return runner_id.strip()
    return socket.gethostname()


async def record_heartbeat(
    session_factory: async_sessionmaker,
    name: str = RUNNER_HEARTBEAT_NAME,
    *,
    runner_id: str | None = None,
    now: datetime | None = None,
) -> None:
    now = now or datetime.now(tz=timezone.utc)
    async with session_factory() as session:
        heartbeat = await session.get(JobHeartbeat, name)
        if heartbeat is None:
            heartbeat = JobHeartbeat(name=name, consecutive_failures=0)
            session.add(heartbeat)
        heartbeat.last_heartbeat = now
        heartbeat.runner_id = _resolve_runner_id(runner_id)
        await session.commit()
    metrics.record_job_heartbeat(name, now.timestamp())


async def record_job_result(
    session_factory: async_sessionmaker,
    job: str,
    *,
    success: bool,
    error_reason: str | None = None,
    now: datetime | None = None,
) -> None:
    """Persist the latest outcome of one job; failures accumulate until the next success."""
    now = now or datetime.now(tz=timezone.utc)
    async with session_factory() as session:
        record = await session.get(JobHeartbeat, job)
        if record is None:
            record = JobHeartbeat(name=job, consecutive_failures=0)
            session.add(record)
        record.last_heartbeat = now
        if success:
            record.last_success_at = now
            record.consecutive_failures = 0
            record.last_error = None
            record.last_error_at = None
        else:
            record.consecutive_failures = (record.consecutive_failures or 0) + 1
            record.last_error = error_reason or record.last_error
            record.last_error_at = now
        await session.commit()
    if success:
        metrics.record_job_success(job, now.timestamp())
    else:
        metrics.record_job_error(job, error_reason or "unknown")
