from __future__ import annotations

import logging
from dataclasses import dataclass, field

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.availability import capacity
from app.domain.availability.capacity import SlotDrift
from app.domain.availability.db_models import AvailabilitySlot
from app.domain.errors import DriftDetected
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    slot_id: str
    changed: bool
    previous_occupancy: int
    current_occupancy: int
    available_spots: int
    status: str


@dataclass
class ReconciliationReport:
    scanned: int = 0
    drifted: int = 0
    reconciled: int = 0
    results: list[ReconcileResult] = field(default_factory=list)


def _drift_for(slot: AvailabilitySlot, actual: int) -> SlotDrift | None:
    expected_available = max(slot.total_capacity - actual, 0)
    if slot.current_occupancy == actual and slot.available_spots == expected_available:
        return None
    return SlotDrift(
        slot_id=slot.slot_id,
        caregiver_id=slot.caregiver_id,
        total_capacity=slot.total_capacity,
        stored_occupancy=slot.current_occupancy,
        stored_available=slot.available_spots,
        actual_occupancy=actual,
    )


async def find_drifted_slots(
    session: AsyncSession,
    *,
    caregiver_id: str | None = None,
    min_capacity: int | None = None,
) -> list[SlotDrift]:
    """Read-only scan for slots whose cached counters disagree with their booking rows.

    Single-spot slots are skipped by default; they flip straight between
    AVAILABLE and BOOKED and the booking path already keeps them exact.
    """
    floor = settings.reconcile_min_capacity if min_capacity is None else min_capacity
    stmt = sa.select(AvailabilitySlot).where(AvailabilitySlot.total_capacity >= floor)
    if caregiver_id:
        stmt = stmt.where(AvailabilitySlot.caregiver_id == caregiver_id)
    stmt = stmt.order_by(AvailabilitySlot.slot_date, AvailabilitySlot.start_time)
    slots = list((await session.execute(stmt)).scalars().all())
    occupancy = await capacity.committed_occupancy_by_slot(session, [slot.slot_id for slot in slots])

    drifted = []
    for slot in slots:
        drift = _drift_for(slot, occupancy.get(slot.slot_id, 0))
        if drift is not None:
            drifted.append(drift)
    return drifted


async def verify_slot(session: AsyncSession, slot_id: str) -> None:
    slot = await session.get(AvailabilitySlot, slot_id, populate_existing=True)
    if slot is None:
        return
    drift = _drift_for(slot, await capacity.committed_occupancy(session, slot_id))
    if drift is not None:
        raise DriftDetected(drift)


async def reconcile_slot(session: AsyncSession, slot_id: str) -> ReconcileResult:
    """Rewrite one slot's counters from its booking rows. Safe to repeat."""
    async with capacity.slot_guard(session, slot_id) as slot:
        previous = slot.current_occupancy
        previous_available = slot.available_spots
        previous_status = slot.status
        await capacity.sync_slot_counters(session, slot, source="reconcile")
        changed = (
            slot.current_occupancy != previous
            or slot.available_spots != previous_available
            or slot.status != previous_status
        )
        result = ReconcileResult(
            slot_id=slot.slot_id,
            changed=changed,
            previous_occupancy=previous,
            current_occupancy=slot.current_occupancy,
            available_spots=slot.available_spots,
            status=slot.status,
        )

    if result.changed:
        logger.info(
            "slot_reconciled",
            extra={
                "extra": {
                    "slot_id": slot_id,
                    "previous_occupancy": result.previous_occupancy,
                    "current_occupancy": result.current_occupancy,
                    "available_spots": result.available_spots,
                }
            },
        )
        metrics.record_slot_reconciled()
    return result


async def reconcile_all(
    session: AsyncSession, *, caregiver_id: str | None = None
) -> ReconciliationReport:
    stmt = sa.select(sa.func.count(AvailabilitySlot.slot_id)).where(
        AvailabilitySlot.total_capacity >= settings.reconcile_min_capacity
    )
    if caregiver_id:
        stmt = stmt.where(AvailabilitySlot.caregiver_id == caregiver_id)
    report = ReconciliationReport(scanned=int(await session.scalar(stmt) or 0))

    drifted = await find_drifted_slots(session, caregiver_id=caregiver_id)
    report.drifted = len(drifted)
    for drift in drifted:
        result = await reconcile_slot(session, drift.slot_id)
        report.results.append(result)
        if result.changed:
            report.reconciled += 1

    logger.info(
        "capacity_reconcile_finished",
        extra={
            "extra": {
                "scanned": report.scanned,
                "drifted": report.drifted,
                "reconciled": report.reconciled,
            }
        },
    )
    return report
