from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date, datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.availability import capacity, pricing
from app.domain.availability.db_models import AvailabilitySlot
from app.domain.availability.slot_store import (
    SlotFilter,
    query_slots,
    slot_ends_at,
    slot_starts_at,
)
from app.domain.availability.statuses import SlotStatus
from app.infra.db_time import now_for_db


@dataclass(frozen=True)
class RealtimeSlot:
    slot: AvailabilitySlot
    reserved_spots: int
    active_reservations: int

    @property
    def real_time_available(self) -> int:
        if self.slot.status != SlotStatus.AVAILABLE.value:
            return 0
        return max(self.slot.available_spots - self.reserved_spots, 0)


@dataclass(frozen=True)
class RealtimeAvailability:
    caregiver_id: str
    slot_date: date
    slots: list[RealtimeSlot]

    @property
    def total_slots_available(self) -> int:
        return sum(1 for item in self.slots if item.real_time_available > 0)

    @property
    def total_spots_available(self) -> int:
        return sum(item.real_time_available for item in self.slots)


@dataclass(frozen=True)
class BookingOption:
    slot: RealtimeSlot
    quote: pricing.BookingQuote


async def get_available_slots(
    session: AsyncSession,
    slot_filter: SlotFilter,
    *,
    today: date | None = None,
) -> list[AvailabilitySlot]:
    """Open slots with at least one unbooked spot.

    Without an explicit date or range only slots from ``today`` on are returned.
    """
    min_spots = max(slot_filter.min_available_spots or 1, 1)
    effective = replace(
        slot_filter,
        min_available_spots=min_spots,
        statuses=(SlotStatus.AVAILABLE.value,),
    )
    if not (slot_filter.slot_date or slot_filter.start_date or slot_filter.end_date):
        effective = replace(effective, start_date=today or datetime.now(timezone.utc).date())
    return await query_slots(session, effective).to_list()


async def _with_holds(
    session: AsyncSession, slots: list[AvailabilitySlot], now: datetime | None
) -> list[RealtimeSlot]:
    holds = await capacity.held_spots_by_slot(
        session, [slot.slot_id for slot in slots], now_for_db(session, now)
    )
    return [
        RealtimeSlot(
            slot=slot,
            reserved_spots=holds.get(slot.slot_id, (0, 0))[0],
            active_reservations=holds.get(slot.slot_id, (0, 0))[1],
        )
        for slot in slots
    ]


async def get_realtime_availability(
    session: AsyncSession,
    caregiver_id: str,
    slot_date: date,
    *,
    now: datetime | None = None,
) -> RealtimeAvailability:
    slots = await query_slots(
        session, SlotFilter(caregiver_id=caregiver_id, slot_date=slot_date)
    ).to_list()
    return RealtimeAvailability(
        caregiver_id=caregiver_id,
        slot_date=slot_date,
        slots=await _with_holds(session, slots, now),
    )


async def get_booking_options(
    session: AsyncSession,
    caregiver_id: str,
    *,
    slot_date: date | None = None,
    children_count: int = 1,
    today: date | None = None,
    now: datetime | None = None,
) -> list[BookingOption]:
    slots = await get_available_slots(
        session,
        SlotFilter(caregiver_id=caregiver_id, slot_date=slot_date),
        today=today,
    )
    options = []
    for item in await _with_holds(session, slots, now):
        if item.real_time_available < children_count:
            continue
        quote = pricing.quote_booking(
            slot_starts_at(item.slot), slot_ends_at(item.slot), item.slot.current_rate_cents
        )
        options.append(BookingOption(slot=item, quote=quote))
    return options
