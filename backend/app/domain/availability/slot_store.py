from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import date, datetime, time, timezone

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.availability import capacity
from app.domain.availability.db_models import AvailabilitySlot, BookingReservation, SlotBooking
from app.domain.availability.statuses import ReservationStatus, SlotStatus
from app.domain.caregivers import service as caregiver_service
from app.domain.errors import (
    DuplicateSlot,
    HasDependents,
    InvalidCapacity,
    InvalidRange,
    InvalidRequest,
    NotFound,
    NotOwner,
)
from app.infra.db_time import now_for_db

logger = logging.getLogger(__name__)

_UPDATABLE_FIELDS = ("notes", "special_requirements", "is_recurring")


@dataclass(frozen=True)
class SlotFilter:
    caregiver_id: str | None = None
    slot_date: date | None = None
    start_date: date | None = None
    end_date: date | None = None
    min_available_spots: int | None = None
    statuses: tuple[str, ...] = field(default_factory=tuple)


def _validate_window(start_time: time, end_time: time) -> None:
    if end_time <= start_time:
        raise InvalidRange(detail="Slot end time must be after its start time")


async def _ensure_unique_start(
    session: AsyncSession,
    caregiver_id: str,
    slot_date: date,
    start_time: time,
    *,
    exclude_slot_id: str | None = None,
) -> None:
    stmt = sa.select(AvailabilitySlot.slot_id).where(
        AvailabilitySlot.caregiver_id == caregiver_id,
        AvailabilitySlot.slot_date == slot_date,
        AvailabilitySlot.start_time == start_time,
    )
    if exclude_slot_id:
        stmt = stmt.where(AvailabilitySlot.slot_id != exclude_slot_id)
    if await session.scalar(stmt.limit(1)) is not None:
        raise DuplicateSlot(
            detail=f"A slot already starts at {start_time.isoformat()} on {slot_date.isoformat()}"
        )


async def get_slot(session: AsyncSession, slot_id: str) -> AvailabilitySlot:
    slot = await session.get(AvailabilitySlot, slot_id)
    if slot is None:
        raise NotFound(detail=f"Availability slot {slot_id} not found")
    return slot


async def create_slot(
    session: AsyncSession,
    caregiver_id: str,
    *,
    slot_date: date,
    start_time: time,
    end_time: time,
    total_capacity: int | None = None,
    base_rate_cents: int | None = None,
    is_recurring: bool = False,
    recurring_pattern: dict | None = None,
    special_requirements: list[str] | None = None,
    notes: str | None = None,
) -> AvailabilitySlot:
    _validate_window(start_time, end_time)

    caregiver = await caregiver_service.get_caregiver(session, caregiver_id)
    if total_capacity is None and caregiver is not None:
        total_capacity = caregiver.daily_capacity
    if base_rate_cents is None and caregiver is not None:
        base_rate_cents = caregiver.hourly_rate_cents
    if total_capacity is None or base_rate_cents is None:
        raise InvalidRequest(
            detail="total_capacity and base_rate_cents are required when the caregiver profile has no defaults"
        )
    if total_capacity < 0 or base_rate_cents < 0:
        raise InvalidRequest(detail="total_capacity and base_rate_cents must be non-negative")
    if caregiver is None:
        await caregiver_service.ensure_caregiver_profile(
            session,
            caregiver_id,
            reason="first_slot_created",
            hourly_rate_cents=base_rate_cents,
            daily_capacity=total_capacity,
        )

    await _ensure_unique_start(session, caregiver_id, slot_date, start_time)
    slot = AvailabilitySlot(
        caregiver_id=caregiver_id,
        slot_date=slot_date,
        start_time=start_time,
        end_time=end_time,
        total_capacity=total_capacity,
        current_occupancy=0,
        available_spots=total_capacity,
        base_rate_cents=base_rate_cents,
        current_rate_cents=base_rate_cents,
        status=SlotStatus.AVAILABLE.value,
        is_recurring=is_recurring,
        recurring_pattern=recurring_pattern,
        special_requirements=list(special_requirements or []),
        notes=notes,
    )
    capacity.apply_occupancy(slot, 0)
    session.add(slot)
    try:
        await session.commit()
    except IntegrityError as exc:
        await session.rollback()
        raise DuplicateSlot(detail="A slot already starts at that time") from exc
    await session.refresh(slot)
    logger.info(
        "slot_created",
        extra={
            "extra": {
                "slot_id": slot.slot_id,
                "caregiver_id": caregiver_id,
                "slot_date": slot_date.isoformat(),
                "total_capacity": total_capacity,
            }
        },
    )
    return slot


async def update_slot(
    session: AsyncSession,
    slot_id: str,
    caller_caregiver_id: str,
    changes: dict,
) -> AvailabilitySlot:
    """Apply caregiver edits to a slot they own.

    ``changes`` holds only the fields the caller sent. Counters are re-derived
    afterwards so a capacity change keeps occupancy and moves availability.
    """
    now = now_for_db(session)
    async with capacity.slot_guard(session, slot_id) as slot:
        if slot.caregiver_id != caller_caregiver_id:
            raise NotOwner(detail="Slot belongs to another caregiver")

        new_date = changes.get("slot_date") or slot.slot_date
        new_start = changes.get("start_time") or slot.start_time
        new_end = changes.get("end_time") or slot.end_time
        if (new_date, new_start, new_end) != (slot.slot_date, slot.start_time, slot.end_time):
            _validate_window(new_start, new_end)
            if (new_date, new_start) != (slot.slot_date, slot.start_time):
                await _ensure_unique_start(
                    session, slot.caregiver_id, new_date, new_start, exclude_slot_id=slot.slot_id
                )
            slot.slot_date, slot.start_time, slot.end_time = new_date, new_start, new_end

        new_capacity = changes.get("total_capacity")
        if new_capacity is not None and new_capacity != slot.total_capacity:
            committed = max(
                slot.current_occupancy, await capacity.committed_occupancy(session, slot.slot_id)
            )
            held = await capacity.held_spots(session, slot.slot_id, now)
            if new_capacity < committed + held:
                raise InvalidCapacity(
                    detail=(
                        f"Capacity {new_capacity} is below the {committed} booked and {held} held spots"
                    )
                )
            slot.total_capacity = new_capacity
            capacity.apply_occupancy(slot, slot.current_occupancy)

        new_rate = changes.get("base_rate_cents")
        if new_rate is not None and new_rate != slot.base_rate_cents:
            caregiver = await caregiver_service.get_caregiver(session, slot.caregiver_id)
            slot.base_rate_cents = new_rate
            if caregiver is None or not caregiver.dynamic_pricing_enabled:
                slot.current_rate_cents = new_rate

        if "recurring_pattern" in changes:
            slot.recurring_pattern = changes["recurring_pattern"]
        for field_name in _UPDATABLE_FIELDS:
            if field_name in changes and changes[field_name] is not None:
                setattr(slot, field_name, changes[field_name])

        new_status = changes.get("status")
        if new_status == SlotStatus.CANCELLED.value:
            slot.status = SlotStatus.CANCELLED.value
        elif new_status == SlotStatus.AVAILABLE.value and slot.status == SlotStatus.CANCELLED.value:
            slot.status = SlotStatus.AVAILABLE.value

        await capacity.sync_slot_counters(session, slot, source="slot_update")

    logger.info(
        "slot_updated",
        extra={"extra": {"slot_id": slot_id, "fields": sorted(changes)}},
    )
    return slot


async def delete_slot(
    session: AsyncSession, slot_id: str, caller_caregiver_id: str, *, now: datetime | None = None
) -> None:
    now = now_for_db(session, now)
    async with capacity.slot_guard(session, slot_id) as slot:
        if slot.caregiver_id != caller_caregiver_id:
            raise NotOwner(detail="Slot belongs to another caregiver")

        booking_rows = int(
            await session.scalar(
                sa.select(sa.func.count(SlotBooking.slot_booking_id)).where(SlotBooking.slot_id == slot_id)
            )
            or 0
        )
        active_holds = int(
            await session.scalar(
                sa.select(sa.func.count(BookingReservation.reservation_id))
                .where(BookingReservation.slot_id == slot_id)
                .where(BookingReservation.status == ReservationStatus.ACTIVE.value)
                .where(BookingReservation.expires_at > now)
            )
            or 0
        )
        if booking_rows or active_holds:
            errors = []
            if booking_rows:
                errors.append({"field": "slot_bookings", "message": f"{booking_rows} booking(s) use this slot"})
            if active_holds:
                errors.append({"field": "reservations", "message": f"{active_holds} active hold(s) on this slot"})
            raise HasDependents(
                detail="Slot has bookings or active reservations and cannot be deleted",
                errors=errors,
            )

        # Released and lapsed holds carry no capacity; they go with the slot.
        await session.execute(sa.delete(BookingReservation).where(BookingReservation.slot_id == slot_id))
        await session.delete(slot)

    logger.info("slot_deleted", extra={"extra": {"slot_id": slot_id, "caregiver_id": caller_caregiver_id}})


async def expire_past_slots(session: AsyncSession, *, today: date | None = None) -> int:
    """Mark AVAILABLE slots whose day has passed EXPIRED."""
    today = today or datetime.now(timezone.utc).date()
    result = await session.execute(
        sa.update(AvailabilitySlot)
        .where(AvailabilitySlot.status == SlotStatus.AVAILABLE.value)
        .where(AvailabilitySlot.slot_date < today)
        .values(status=SlotStatus.EXPIRED.value)
        .execution_options(synchronize_session=False)
    )
    await session.commit()
    expired = int(result.rowcount or 0)
    if expired:
        logger.info("slots_expired", extra={"extra": {"expired": expired, "before": today.isoformat()}})
    return expired


def _apply_filter(stmt, slot_filter: SlotFilter):
    if slot_filter.caregiver_id:
        stmt = stmt.where(AvailabilitySlot.caregiver_id == slot_filter.caregiver_id)
    if slot_filter.slot_date:
        stmt = stmt.where(AvailabilitySlot.slot_date == slot_filter.slot_date)
    if slot_filter.start_date:
        stmt = stmt.where(AvailabilitySlot.slot_date >= slot_filter.start_date)
    if slot_filter.end_date:
        stmt = stmt.where(AvailabilitySlot.slot_date <= slot_filter.end_date)
    if slot_filter.min_available_spots is not None:
        stmt = stmt.where(AvailabilitySlot.available_spots >= slot_filter.min_available_spots)
    if slot_filter.statuses:
        stmt = stmt.where(AvailabilitySlot.status.in_(slot_filter.statuses))
    return stmt


class SlotSequence:
    """Slots matching a filter, ordered by date then start time.

    Iteration pages through the table with a keyset cursor, so nothing is
    loaded up front and every ``async for`` starts again from the first slot.
    """

    def __init__(self, session: AsyncSession, slot_filter: SlotFilter, *, page_size: int = 100) -> None:
        self.session = session
        self.slot_filter = slot_filter
        self.page_size = page_size

    def __aiter__(self) -> AsyncIterator[AvailabilitySlot]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[AvailabilitySlot]:
        cursor: tuple[date, time, str] | None = None
        while True:
            stmt = _apply_filter(sa.select(AvailabilitySlot), self.slot_filter)
            if cursor is not None:
                last_date, last_start, last_id = cursor
                stmt = stmt.where(
                    sa.or_(
                        AvailabilitySlot.slot_date > last_date,
                        sa.and_(
                            AvailabilitySlot.slot_date == last_date,
                            AvailabilitySlot.start_time > last_start,
                        ),
                        sa.and_(
                            AvailabilitySlot.slot_date == last_date,
                            AvailabilitySlot.start_time == last_start,
                            AvailabilitySlot.slot_id > last_id,
                        ),
                    )
                )
            stmt = stmt.order_by(
                AvailabilitySlot.slot_date.asc(),
                AvailabilitySlot.start_time.asc(),
                AvailabilitySlot.slot_id.asc(),
            ).limit(self.page_size)
            page = list((await self.session.execute(stmt)).scalars().all())
            for slot in page:
                yield slot
            if len(page) < self.page_size:
                return
            last = page[-1]
            cursor = (last.slot_date, last.start_time, last.slot_id)

    async def to_list(self) -> list[AvailabilitySlot]:
        return [slot async for slot in self]


def query_slots(session: AsyncSession, slot_filter: SlotFilter, *, page_size: int = 100) -> SlotSequence:
    return SlotSequence(session, slot_filter, page_size=page_size)


def slot_starts_at(slot: AvailabilitySlot) -> datetime:
    return datetime.combine(slot.slot_date, slot.start_time)


def slot_ends_at(slot: AvailabilitySlot) -> datetime:
    return datetime.combine(slot.slot_date, slot.end_time)
