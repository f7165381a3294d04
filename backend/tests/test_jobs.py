from datetime import datetime, timedelta, timezone

import pytest

from app.domain.availability import reservations
from app.domain.ops.db_models import JobHeartbeat
from app.jobs import run
from app.jobs.heartbeat import RUNNER_HEARTBEAT_NAME
from conftest import PARENT_ID, make_slot


@pytest.mark.anyio
async def test_run_jobs_once_runs_jobs_and_records_heartbeats(async_session_maker):
    past = datetime.now(timezone.utc) - timedelta(minutes=30)
    async with async_session_maker() as session:
        slot = await make_slot(session, capacity=2)
        await reservations.reserve_spots(session, slot.slot_id, PARENT_ID, 1, now=past)

    results = await run.run_jobs_once(async_session_maker, ["reservation-sweep", "capacity-reconcile"])

    assert results["reservation-sweep"] == {"expired": 1}
    assert results["capacity-reconcile"] == {"scanned": 1, "drifted": 0, "reconciled": 0}
    async with async_session_maker() as session:
        runner = await session.get(JobHeartbeat, RUNNER_HEARTBEAT_NAME)
        sweep = await session.get(JobHeartbeat, "reservation-sweep")

    assert runner is not None
    assert sweep.last_success_at is not None
    assert sweep.consecutive_failures == 0


@pytest.mark.anyio
async def test_failing_job_is_recorded_without_stopping_others(async_session_maker, monkeypatch):
    async def broken(session):
        raise RuntimeError("boom")

    monkeypatch.setitem(run.JOBS, "broken", broken)

    first = await run.run_jobs_once(async_session_maker, ["broken", "orphan-repair"])
    await run.run_jobs_once(async_session_maker, ["broken"])

    assert "broken" not in first
    assert first["orphan-repair"] == {"found": 0, "repaired": 0, "failed": 0}
    async with async_session_maker() as session:
        record = await session.get(JobHeartbeat, "broken")

    assert record.consecutive_failures == 2
    assert record.last_error == "RuntimeError"
    assert record.last_success_at is None


@pytest.mark.anyio
async def test_unknown_job_is_rejected(async_session_maker):
    with pytest.raises(ValueError):
        await run.run_jobs_once(async_session_maker, ["does-not-exist"])


@pytest.mark.anyio
async def test_slot_expiry_job(async_session_maker):
    async with async_session_maker() as session:
        await make_slot(session)
        result = await run.JOBS["slot-expiry"](session)

    assert result == {"expired": 0}
