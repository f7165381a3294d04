import argparse
import asyncio
import logging
from collections.abc import Awaitable, Callable

from sqlalchemy.ext.asyncio import async_sessionmaker

from app.infra.db import get_session_factory
from app.infra.logging import clear_log_context, configure_logging, update_log_context
from app.infra.metrics import configure_metrics
from app.jobs import capacity
from app.jobs.heartbeat import RUNNER_HEARTBEAT_NAME, record_heartbeat, record_job_result
from app.settings import settings

logger = logging.getLogger(__name__)

JobRunner = Callable[[object], Awaitable[dict[str, int]]]

JOBS: dict[str, JobRunner] = {
    "reservation-sweep": capacity.run_reservation_sweep,
    "slot-expiry": capacity.run_slot_expiry,
    "capacity-reconcile": capacity.run_capacity_reconcile,
    "orphan-repair": capacity.run_orphan_repair,
}

DEFAULT_JOBS = list(JOBS)


def _job_runner(name: str) -> JobRunner:
    try:
        return JOBS[name]
    except KeyError:
        raise ValueError(f"unknown_job:{name}") from None


async def _run_job(name: str, session_factory: async_sessionmaker, runner: JobRunner) -> dict[str, int]:
    update_log_context(job=name)
    try:
        async with session_factory() as session:
            result = await runner(session)
        logger.info("job_complete", extra={"extra": {"job": name, **result}})
        await record_job_result(session_factory, name, success=True)
        return result
    finally:
        clear_log_context()


async def run_jobs_once(session_factory: async_sessionmaker, job_names: list[str]) -> dict[str, dict[str, int]]:
    """Run each job once; a failing job is recorded and does not stop the others."""
    results: dict[str, dict[str, int]] = {}
    for name in job_names:
        runner = _job_runner(name)
        try:
            results[name] = await _run_job(name, session_factory, runner)
        except Exception as exc:  # noqa: BLE001
            logger.warning("job_failed", extra={"extra": {"job": name, "reason": type(exc).__name__}})
            await record_job_result(session_factory, name, success=False, error_reason=type(exc).__name__)
    await record_heartbeat(session_factory, name=RUNNER_HEARTBEAT_NAME)
    return results


async def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Run capacity maintenance jobs")
    parser.add_argument("--job", action="append", dest="jobs", choices=sorted(JOBS), help="Job name to run")
    parser.add_argument("--interval", type=int, default=60, help="Seconds between loops when not using --once")
    parser.add_argument("--once", action="store_true", help="Run jobs once and exit")
    args = parser.parse_args(argv)

    configure_logging()
    configure_metrics(settings.metrics_enabled)
    session_factory = get_session_factory()
    job_names = args.jobs or DEFAULT_JOBS

    while True:
        await run_jobs_once(session_factory, job_names)
        if args.once:
            break
        await asyncio.sleep(max(args.interval, 1))


if __name__ == "__main__":
    asyncio.run(main())
