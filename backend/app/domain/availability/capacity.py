"""Per-slot serialization and the single path that writes slot counters.

Every writer of slot capacity (reservations, booking materialization, booking
cancellation, reconciliation, orphan repair) runs inside :func:`slot_guard` and
updates ``current_occupancy``/``available_spots``/``status`` only through
:func:`sync_slot_counters`, which re-derives occupancy from the slot's
non-cancelled booking rows.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.availability.db_models import AvailabilitySlot, BookingReservation, SlotBooking
from app.domain.availability.pricing import dynamic_rate_cents
from app.domain.availability.statuses import TERMINAL_SLOT_STATUSES, ReservationStatus, SlotStatus
from app.domain.bookings.db_models import Booking
from app.domain.bookings.statuses import BookingStatus
from app.domain.caregivers.db_models import Caregiver
from app.domain.errors import NotFound
from app.infra.db_time import acquire_sqlite_write_lock
from app.infra.metrics import metrics

logger = logging.getLogger(__name__)


class _SlotLockRegistry:
    """Process-local keyed locks; entries live only while someone holds or awaits them."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, slot_id: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(slot_id, asyncio.Lock())
        self._holders[slot_id] = self._holders.get(slot_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[slot_id] -= 1
            if self._holders[slot_id] == 0:
                del self._holders[slot_id]
                del self._locks[slot_id]


_SLOT_LOCKS = _SlotLockRegistry()


@dataclass(frozen=True)
class SlotDrift:
    slot_id: str
    caregiver_id: str
    total_capacity: int
    stored_occupancy: int
    stored_available: int
    actual_occupancy: int

    @property
    def expected_available(self) -> int:
        return max(self.total_capacity - self.actual_occupancy, 0)


async def lock_slot(session: AsyncSession, slot_id: str) -> AvailabilitySlot:
    await acquire_sqlite_write_lock(session)
    result = await session.execute(
        sa.select(AvailabilitySlot)
        .where(AvailabilitySlot.slot_id == slot_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    slot = result.scalar_one_or_none()
    if slot is None:
        raise NotFound(detail=f"Availability slot {slot_id} not found")
    return slot


@asynccontextmanager
async def slot_guard(session: AsyncSession, slot_id: str) -> AsyncIterator[AvailabilitySlot]:
    """Hold the slot exclusively, then commit (or roll back) before releasing it."""
    async with _SLOT_LOCKS.hold(slot_id):
        try:
            slot = await lock_slot(session, slot_id)
            yield slot
            await session.commit()
        except BaseException:
            await session.rollback()
            raise


async def committed_occupancy(session: AsyncSession, slot_id: str) -> int:
    stmt = (
        sa.select(sa.func.coalesce(sa.func.sum(SlotBooking.spots_used), 0))
        .join(Booking, Booking.booking_id == SlotBooking.booking_id)
        .where(SlotBooking.slot_id == slot_id)
        .where(Booking.status != BookingStatus.CANCELLED.value)
    )
    return int(await session.scalar(stmt) or 0)


async def committed_occupancy_by_slot(
    session: AsyncSession, slot_ids: list[str] | None = None
) -> dict[str, int]:
    stmt = (
        sa.select(SlotBooking.slot_id, sa.func.coalesce(sa.func.sum(SlotBooking.spots_used), 0))
        .join(Booking, Booking.booking_id == SlotBooking.booking_id)
        .where(Booking.status != BookingStatus.CANCELLED.value)
        .group_by(SlotBooking.slot_id)
    )
    if slot_ids is not None:
        if not slot_ids:
            return {}
        stmt = stmt.where(SlotBooking.slot_id.in_(slot_ids))
    rows = await session.execute(stmt)
    return {slot_id: int(total or 0) for slot_id, total in rows.all()}


def _active_hold_filter(now: datetime):
    # A lapsed hold stops counting even if no sweep has marked it EXPIRED yet.
    return sa.and_(
        BookingReservation.status == ReservationStatus.ACTIVE.value,
        BookingReservation.expires_at > now,
    )


async def held_spots(
    session: AsyncSession,
    slot_id: str,
    now: datetime,
    *,
    exclude_reservation_id: str | None = None,
) -> int:
    stmt = (
        sa.select(sa.func.coalesce(sa.func.sum(BookingReservation.reserved_spots), 0))
        .where(BookingReservation.slot_id == slot_id)
        .where(_active_hold_filter(now))
    )
    if exclude_reservation_id:
        stmt = stmt.where(BookingReservation.reservation_id != exclude_reservation_id)
    return int(await session.scalar(stmt) or 0)


async def held_spots_by_slot(
    session: AsyncSession, slot_ids: list[str], now: datetime
) -> dict[str, tuple[int, int]]:
    """Map slot id to ``(held spots, active hold count)``."""
    if not slot_ids:
        return {}
    stmt = (
        sa.select(
            BookingReservation.slot_id,
            sa.func.coalesce(sa.func.sum(BookingReservation.reserved_spots), 0),
            sa.func.count(BookingReservation.reservation_id),
        )
        .where(BookingReservation.slot_id.in_(slot_ids))
        .where(_active_hold_filter(now))
        .group_by(BookingReservation.slot_id)
    )
    rows = await session.execute(stmt)
    return {slot_id: (int(spots or 0), int(count or 0)) for slot_id, spots, count in rows.all()}


async def effective_available(
    session: AsyncSession,
    slot: AvailabilitySlot,
    now: datetime,
    *,
    exclude_reservation_id: str | None = None,
) -> int:
    """Spots a new hold or booking may still take right now.

    Uses the larger of the cached and derived occupancy so a drifted counter
    can never let the slot oversell.
    """
    occupancy = max(slot.current_occupancy, await committed_occupancy(session, slot.slot_id))
    held = await held_spots(session, slot.slot_id, now, exclude_reservation_id=exclude_reservation_id)
    return slot.total_capacity - occupancy - held


def apply_occupancy(slot: AvailabilitySlot, occupancy: int) -> None:
    """Write the cached counters and status for a known occupancy."""
    available = slot.total_capacity - occupancy
    if available < 0:
        logger.error(
            "slot_overbooked",
            extra={
                "extra": {
                    "slot_id": slot.slot_id,
                    "total_capacity": slot.total_capacity,
                    "occupancy": occupancy,
                }
            },
        )
        available = 0
    slot.current_occupancy = occupancy
    slot.available_spots = available
    if slot.status not in TERMINAL_SLOT_STATUSES:
        slot.status = SlotStatus.BOOKED.value if available <= 0 else SlotStatus.AVAILABLE.value


async def _apply_dynamic_pricing(session: AsyncSession, slot: AvailabilitySlot) -> None:
    caregiver = await session.get(Caregiver, slot.caregiver_id)
    if caregiver is None or not caregiver.dynamic_pricing_enabled:
        return
    rate = dynamic_rate_cents(slot.base_rate_cents, slot.current_occupancy, slot.total_capacity)
    if rate != slot.current_rate_cents:
        logger.info(
            "slot_rate_adjusted",
            extra={
                "extra": {
                    "slot_id": slot.slot_id,
                    "previous_rate_cents": slot.current_rate_cents,
                    "rate_cents": rate,
                }
            },
        )
        slot.current_rate_cents = rate


async def sync_slot_counters(
    session: AsyncSession,
    slot: AvailabilitySlot,
    *,
    expected_delta: int = 0,
    source: str,
) -> SlotDrift | None:
    """Re-derive the slot's counters from its booking rows.

    ``expected_delta`` is the occupancy change the caller just made; if the
    cached counter plus that delta does not match the rows, the cache had
    drifted and the drift is reported (and then overwritten).
    """
    await session.flush()
    actual = await committed_occupancy(session, slot.slot_id)
    drift = None
    expected = slot.current_occupancy + expected_delta
    if expected != actual or slot.available_spots != max(slot.total_capacity - slot.current_occupancy, 0):
        drift = SlotDrift(
            slot_id=slot.slot_id,
            caregiver_id=slot.caregiver_id,
            total_capacity=slot.total_capacity,
            stored_occupancy=slot.current_occupancy,
            stored_available=slot.available_spots,
            actual_occupancy=actual - expected_delta,
        )
        logger.warning(
            "slot_drift_detected",
            extra={
                "extra": {
                    "slot_id": slot.slot_id,
                    "source": source,
                    "stored_occupancy": slot.current_occupancy,
                    "stored_available": slot.available_spots,
                    "actual_occupancy": actual,
                    "expected_delta": expected_delta,
                }
            },
        )
        metrics.record_slot_drift(source)
    apply_occupancy(slot, actual)
    await _apply_dynamic_pricing(session, slot)
    return drift
