"""Scheduled capacity maintenance.

Each job takes a session and returns counters for the ``job_complete`` log line.
"""

from datetime import date, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.availability import reconciler, reservations, slot_store
from app.domain.bookings import service as booking_service


async def run_reservation_sweep(session: AsyncSession, *, now: datetime | None = None) -> dict[str, int]:
    expired = await reservations.expire_stale_reservations(session, now=now)
    return {"expired": expired}


async def run_slot_expiry(session: AsyncSession, *, today: date | None = None) -> dict[str, int]:
    expired = await slot_store.expire_past_slots(session, today=today)
    return {"expired": expired}


async def run_capacity_reconcile(session: AsyncSession) -> dict[str, int]:
    report = await reconciler.reconcile_all(session)
    return {"scanned": report.scanned, "drifted": report.drifted, "reconciled": report.reconciled}


async def run_orphan_repair(session: AsyncSession, *, limit: int | None = None) -> dict[str, int]:
    report = await booking_service.repair_all_orphaned_bookings(session, limit=limit)
    return {"found": report.found, "repaired": report.repaired, "failed": report.failed}
