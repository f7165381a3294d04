from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.availability import capacity, pricing
from app.domain.availability.db_models import AvailabilitySlot, BookingReservation, SlotBooking
from app.domain.availability.slot_store import slot_ends_at, slot_starts_at
from app.domain.availability.statuses import (
    TERMINAL_SLOT_STATUSES,
    ReservationStatus,
    SlotStatus,
)
from app.domain.bookings.db_models import Booking
from app.domain.bookings.statuses import (
    OPEN_BOOKING_STATUSES,
    BookingSource,
    BookingStatus,
    assert_valid_booking_transition,
)
from app.domain.caregivers import service as caregiver_service
from app.domain.errors import (
    DomainError,
    Forbidden,
    InsufficientCapacity,
    InvalidRange,
    InvalidRequest,
    NotFound,
    ReservationNotActive,
)
from app.infra.db_time import ensure_utc, now_for_db, to_db_time
from app.infra.metrics import metrics

logger = logging.getLogger(__name__)

ROLE_PARENT = "PARENT"
ROLE_CAREGIVER = "CAREGIVER"
ROLE_ADMIN = "ADMIN"

_CLOSED_RESERVATION_STATUSES = {
    ReservationStatus.CONVERTED.value,
    ReservationStatus.CANCELLED.value,
}


@dataclass(frozen=True)
class OrphanRepairResult:
    booking_id: str
    slot_id: str
    action: str
    slot_created: bool = False
    capacity_expanded: bool = False
    previous_capacity: int | None = None
    total_capacity: int | None = None


@dataclass
class OrphanRepairReport:
    found: int = 0
    repaired: int = 0
    failed: int = 0
    results: list[OrphanRepairResult] = field(default_factory=list)
    failures: list[dict] = field(default_factory=list)


async def get_booking(session: AsyncSession, booking_id: str) -> Booking:
    booking = await session.get(Booking, booking_id)
    if booking is None:
        raise NotFound(detail=f"Booking {booking_id} not found")
    return booking


async def get_booking_by_payment_intent(session: AsyncSession, payment_intent_id: str) -> Booking | None:
    return await session.scalar(sa.select(Booking).where(Booking.payment_intent_id == payment_intent_id))


async def _slot_links(session: AsyncSession, booking_id: str) -> list[tuple[str, int]]:
    rows = await session.execute(
        sa.select(SlotBooking.slot_id, SlotBooking.spots_used)
        .where(SlotBooking.booking_id == booking_id)
        .order_by(SlotBooking.slot_id)
    )
    return [(slot_id, int(spots)) for slot_id, spots in rows.all()]


def _booking_from_quote(
    quote: pricing.BookingQuote,
    *,
    parent_id: str,
    caregiver_id: str,
    starts_at: datetime,
    ends_at: datetime,
    children_count: int,
    status: str,
    source: str,
    address: str | None,
    special_requests: str | None,
    payment_intent_id: str | None,
    now: datetime,
) -> Booking:
    return Booking(
        parent_id=parent_id,
        caregiver_id=caregiver_id,
        starts_at=starts_at,
        ends_at=ends_at,
        children_count=children_count,
        address=address,
        special_requests=special_requests,
        hourly_rate_cents=quote.hourly_rate_cents,
        total_hours=float(quote.total_hours),
        subtotal_cents=quote.subtotal_cents,
        platform_fee_cents=quote.platform_fee_cents,
        total_amount_cents=quote.total_amount_cents,
        caregiver_payout_cents=quote.caregiver_payout_cents,
        status=status,
        source=source,
        payment_intent_id=payment_intent_id,
        confirmed_at=now if status == BookingStatus.CONFIRMED.value else None,
    )


def _convert_reservation(reservation: BookingReservation, booking_id: str, now: datetime) -> None:
    reservation.status = ReservationStatus.CONVERTED.value
    reservation.booking_id = booking_id
    reservation.released_at = now


async def create_slot_booking(
    session: AsyncSession,
    slot_id: str,
    parent_id: str,
    children_count: int,
    address: str | None = None,
    *,
    reservation_id: str | None = None,
    special_requests: str | None = None,
    payment_intent_id: str | None = None,
    now: datetime | None = None,
) -> Booking:
    """Turn a checkout on a slot into a CONFIRMED booking that consumes its capacity.

    Capacity is re-checked at this point rather than trusted from the hold,
    which may have lapsed. The booking, its slot link, the converted hold and
    the slot counters are committed together.
    """
    if children_count < 1:
        raise InvalidRequest(detail="children_count must be at least 1")

    now_db = now_for_db(session, now)
    async with capacity.slot_guard(session, slot_id) as slot:
        reservation = None
        if reservation_id:
            reservation = await session.get(BookingReservation, reservation_id, populate_existing=True)
            if reservation is None:
                raise NotFound(detail=f"Reservation {reservation_id} not found")
            if reservation.slot_id != slot_id:
                raise InvalidRequest(detail="Reservation was made on a different slot")
            if reservation.parent_id != parent_id:
                raise Forbidden(detail="Reservation belongs to another parent")
            if reservation.status in _CLOSED_RESERVATION_STATUSES:
                raise ReservationNotActive(detail=f"Reservation is already {reservation.status.lower()}")

        if slot.status in TERMINAL_SLOT_STATUSES:
            metrics.record_booking("slot_closed")
            raise InsufficientCapacity(
                detail=f"Slot is {slot.status.lower()} and cannot be booked",
                requested=children_count,
                available=0,
            )
        available = await capacity.effective_available(
            session, slot, now_db, exclude_reservation_id=reservation_id
        )
        if available < children_count:
            logger.info(
                "slot_booking_rejected",
                extra={
                    "extra": {
                        "slot_id": slot_id,
                        "parent_id": parent_id,
                        "requested": children_count,
                        "available": available,
                    }
                },
            )
            metrics.record_booking("insufficient_capacity")
            raise InsufficientCapacity(
                detail=f"Only {max(available, 0)} spot(s) left on this slot",
                requested=children_count,
                available=max(available, 0),
            )

        starts_at = slot_starts_at(slot)
        ends_at = slot_ends_at(slot)
        quote = pricing.quote_booking(starts_at, ends_at, slot.current_rate_cents)
        booking = _booking_from_quote(
            quote,
            parent_id=parent_id,
            caregiver_id=slot.caregiver_id,
            starts_at=to_db_time(session, starts_at),
            ends_at=to_db_time(session, ends_at),
            children_count=children_count,
            status=BookingStatus.CONFIRMED.value,
            source=BookingSource.SLOT.value,
            address=address,
            special_requests=special_requests,
            payment_intent_id=payment_intent_id,
            now=now_db,
        )
        session.add(booking)
        await session.flush()
        session.add(
            SlotBooking(
                slot_id=slot_id,
                booking_id=booking.booking_id,
                children_count=children_count,
                spots_used=children_count,
                rate_applied_cents=slot.current_rate_cents,
            )
        )
        if reservation is not None:
            _convert_reservation(reservation, booking.booking_id, now_db)
        await capacity.sync_slot_counters(
            session, slot, expected_delta=children_count, source="slot_booking"
        )

    await session.refresh(booking)
    logger.info(
        "slot_booking_created",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "slot_id": slot_id,
                "children_count": children_count,
                "reservation_id": reservation_id,
                "total_amount_cents": booking.total_amount_cents,
            }
        },
    )
    metrics.record_booking("slot_created")
    if reservation_id:
        metrics.record_reservation("converted")
    return booking


async def _find_duplicate_direct_booking(
    session: AsyncSession,
    parent_id: str,
    caregiver_id: str,
    starts_at: datetime,
    ends_at: datetime,
) -> Booking | None:
    return await session.scalar(
        sa.select(Booking)
        .where(Booking.parent_id == parent_id)
        .where(Booking.caregiver_id == caregiver_id)
        .where(Booking.starts_at == starts_at)
        .where(Booking.ends_at == ends_at)
        .where(Booking.status != BookingStatus.CANCELLED.value)
        .order_by(Booking.created_at)
        .limit(1)
    )


async def create_direct_booking(
    session: AsyncSession,
    parent_id: str,
    caregiver_id: str,
    starts_at: datetime,
    ends_at: datetime,
    children_count: int,
    *,
    hourly_rate_cents: int | None = None,
    quote: pricing.BookingQuote | None = None,
    status: str = BookingStatus.PENDING.value,
    address: str | None = None,
    special_requests: str | None = None,
    payment_intent_id: str | None = None,
    reservation_id: str | None = None,
    now: datetime | None = None,
) -> Booking:
    """Create a booking that is not tied to a slot.

    No SlotBooking is written here, so the booking consumes no slot capacity
    until :func:`reconcile_orphaned_booking` links it.
    """
    if children_count < 1:
        raise InvalidRequest(detail="children_count must be at least 1")
    if status not in (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value):
        raise InvalidRequest(detail="Direct bookings start as PENDING or CONFIRMED")

    starts_at = ensure_utc(starts_at)
    ends_at = ensure_utc(ends_at)
    if quote is None:
        if hourly_rate_cents is None:
            caregiver = await caregiver_service.get_caregiver(session, caregiver_id)
            hourly_rate_cents = caregiver.hourly_rate_cents if caregiver is not None else None
        if hourly_rate_cents is None:
            raise InvalidRequest(detail="No hourly rate is known for this caregiver")
        quote = pricing.quote_booking(starts_at, ends_at, hourly_rate_cents)
    elif ends_at <= starts_at:
        raise InvalidRange(detail="Booking must end after it starts")

    now_db = now_for_db(session, now)
    starts_db = to_db_time(session, starts_at)
    ends_db = to_db_time(session, ends_at)
    existing = await _find_duplicate_direct_booking(session, parent_id, caregiver_id, starts_db, ends_db)
    if existing is not None:
        logger.info(
            "direct_booking_duplicate",
            extra={"extra": {"booking_id": existing.booking_id, "parent_id": parent_id}},
        )
        metrics.record_booking("duplicate")
        return existing

    booking = _booking_from_quote(
        quote,
        parent_id=parent_id,
        caregiver_id=caregiver_id,
        starts_at=starts_db,
        ends_at=ends_db,
        children_count=children_count,
        status=status,
        source=BookingSource.DIRECT.value,
        address=address,
        special_requests=special_requests,
        payment_intent_id=payment_intent_id,
        now=now_db,
    )

    if reservation_id:
        reservation = await session.get(BookingReservation, reservation_id)
        if reservation is None:
            raise NotFound(detail=f"Reservation {reservation_id} not found")
        if reservation.parent_id != parent_id:
            raise Forbidden(detail="Reservation belongs to another parent")
        async with capacity.slot_guard(session, reservation.slot_id):
            await session.refresh(reservation)
            if reservation.status in _CLOSED_RESERVATION_STATUSES:
                raise ReservationNotActive(detail=f"Reservation is already {reservation.status.lower()}")
            session.add(booking)
            await session.flush()
            _convert_reservation(reservation, booking.booking_id, now_db)
    else:
        session.add(booking)
        await session.commit()

    await session.refresh(booking)
    logger.info(
        "direct_booking_created",
        extra={
            "extra": {
                "booking_id": booking.booking_id,
                "caregiver_id": caregiver_id,
                "status": booking.status,
                "total_amount_cents": booking.total_amount_cents,
            }
        },
    )
    metrics.record_booking("direct_created")
    return booking


def _authorize_transition(booking: Booking, target: str, actor_id: str, actor_role: str) -> None:
    if actor_role == ROLE_ADMIN:
        return
    if actor_role == ROLE_CAREGIVER and booking.caregiver_id == actor_id:
        return
    if actor_role == ROLE_PARENT and booking.parent_id == actor_id and target == BookingStatus.CANCELLED.value:
        return
    raise Forbidden(detail=f"Not allowed to move this booking to {target}")


def _apply_transition(booking: Booking, target: str, now: datetime, reason: str | None) -> None:
    booking.status = target
    if target == BookingStatus.CONFIRMED.value:
        booking.confirmed_at = now
    elif target == BookingStatus.IN_PROGRESS.value:
        booking.started_at = now
    elif target == BookingStatus.COMPLETED.value:
        booking.completed_at = now
    elif target == BookingStatus.CANCELLED.value:
        booking.cancelled_at = now
        booking.cancellation_reason = reason


async def update_booking_status(
    session: AsyncSession,
    booking_id: str,
    target: str,
    *,
    actor_id: str,
    actor_role: str,
    reason: str | None = None,
    now: datetime | None = None,
) -> Booking:
    """Move a booking through its lifecycle.

    Cancelling a slot-linked booking releases its spots: each linked slot is
    re-derived under its guard, in the same transaction as the status change.
    """
    booking = await get_booking(session, booking_id)
    _authorize_transition(booking, target, actor_id, actor_role)
    previous = booking.status
    assert_valid_booking_transition(previous, target)
    if previous == target:
        return booking

    now_db = now_for_db(session, now)
    links = await _slot_links(session, booking_id) if target == BookingStatus.CANCELLED.value else []
    _apply_transition(booking, target, now_db, reason)
    if links:
        for slot_id, spots_used in links:
            async with capacity.slot_guard(session, slot_id) as slot:
                await capacity.sync_slot_counters(
                    session, slot, expected_delta=-spots_used, source="booking_cancel"
                )
    else:
        await session.commit()

    await session.refresh(booking)
    logger.info(
        "booking_status_changed",
        extra={
            "extra": {
                "booking_id": booking_id,
                "from": previous,
                "to": target,
                "actor_role": actor_role,
                "released_slots": [slot_id for slot_id, _ in links],
            }
        },
    )
    metrics.record_booking(target.lower())
    return booking


async def find_orphaned_bookings(
    session: AsyncSession,
    *,
    caregiver_id: str | None = None,
    limit: int | None = None,
) -> list[Booking]:
    """Open bookings that no SlotBooking row links to a slot."""
    linked = sa.select(SlotBooking.slot_booking_id).where(SlotBooking.booking_id == Booking.booking_id)
    stmt = (
        sa.select(Booking)
        .where(Booking.status.in_(OPEN_BOOKING_STATUSES))
        .where(~linked.exists())
        .order_by(Booking.starts_at, Booking.booking_id)
    )
    if caregiver_id:
        stmt = stmt.where(Booking.caregiver_id == caregiver_id)
    if limit:
        stmt = stmt.limit(limit)
    return list((await session.execute(stmt)).scalars().all())


def _booking_window(booking: Booking) -> tuple[datetime, time, time]:
    starts_at = ensure_utc(booking.starts_at)
    ends_at = ensure_utc(booking.ends_at)
    if ends_at.date() != starts_at.date():
        raise InvalidRange(detail="Bookings that span midnight cannot be linked to a single slot")
    return starts_at, starts_at.time().replace(tzinfo=None), ends_at.time().replace(tzinfo=None)


async def _match_slot(session: AsyncSession, booking: Booking) -> AvailabilitySlot | None:
    starts_at, start_time, end_time = _booking_window(booking)
    return await session.scalar(
        sa.select(AvailabilitySlot)
        .where(AvailabilitySlot.caregiver_id == booking.caregiver_id)
        .where(AvailabilitySlot.slot_date == starts_at.date())
        .where(AvailabilitySlot.status != SlotStatus.CANCELLED.value)
        .where(AvailabilitySlot.start_time <= start_time)
        .where(AvailabilitySlot.end_time >= end_time)
        .order_by(AvailabilitySlot.created_at, AvailabilitySlot.slot_id)
        .limit(1)
    )


async def _slot_for_orphan(session: AsyncSession, booking: Booking) -> tuple[AvailabilitySlot, bool]:
    """Find the slot an orphaned booking belongs to, creating one as a logged recovery step."""
    slot = await _match_slot(session, booking)
    if slot is not None:
        return slot, False

    starts_at, start_time, end_time = _booking_window(booking)
    same_start = await session.scalar(
        sa.select(AvailabilitySlot)
        .where(AvailabilitySlot.caregiver_id == booking.caregiver_id)
        .where(AvailabilitySlot.slot_date == starts_at.date())
        .where(AvailabilitySlot.start_time == start_time)
        .where(AvailabilitySlot.status != SlotStatus.CANCELLED.value)
    )
    if same_start is not None:
        # The slot unique key is (caregiver, date, start); stretch the existing one instead.
        logger.warning(
            "orphan_repair_window_extended",
            extra={
                "extra": {
                    "slot_id": same_start.slot_id,
                    "booking_id": booking.booking_id,
                    "previous_end_time": same_start.end_time.isoformat(),
                    "end_time": end_time.isoformat(),
                }
            },
        )
        same_start.end_time = end_time
        await session.flush()
        return same_start, False

    caregiver = await caregiver_service.ensure_caregiver_profile(
        session,
        booking.caregiver_id,
        reason="orphan_repair",
        hourly_rate_cents=booking.hourly_rate_cents,
        daily_capacity=booking.children_count,
    )
    total_capacity = max(booking.children_count, caregiver.daily_capacity or 0)
    slot = AvailabilitySlot(
        caregiver_id=booking.caregiver_id,
        slot_date=starts_at.date(),
        start_time=start_time,
        end_time=end_time,
        total_capacity=total_capacity,
        current_occupancy=0,
        available_spots=total_capacity,
        base_rate_cents=booking.hourly_rate_cents,
        current_rate_cents=booking.hourly_rate_cents,
        status=SlotStatus.AVAILABLE.value,
        special_requirements=[],
        notes="Created to link an existing booking",
    )
    session.add(slot)
    await session.flush()
    logger.warning(
        "orphan_repair_slot_created",
        extra={
            "extra": {
                "slot_id": slot.slot_id,
                "booking_id": booking.booking_id,
                "caregiver_id": booking.caregiver_id,
                "total_capacity": total_capacity,
            }
        },
    )
    return slot, True


async def reconcile_orphaned_booking(
    session: AsyncSession,
    booking_id: str,
    *,
    now: datetime | None = None,
) -> OrphanRepairResult:
    """Link a booking that has no SlotBooking to a slot covering its window.

    The slot's counters are re-derived from all of its booking rows afterwards,
    never incremented.
    """
    booking = await get_booking(session, booking_id)
    links = await _slot_links(session, booking_id)
    if links:
        return OrphanRepairResult(booking_id=booking_id, slot_id=links[0][0], action="already_linked")
    if booking.status not in OPEN_BOOKING_STATUSES:
        raise InvalidRequest(detail=f"Booking is {booking.status.lower()} and holds no capacity")

    now_db = now_for_db(session, now)
    slot, created = await _slot_for_orphan(session, booking)
    slot_id = slot.slot_id
    expanded = False
    previous_capacity = None
    async with capacity.slot_guard(session, slot_id) as slot:
        if await session.scalar(
            sa.select(SlotBooking.slot_booking_id).where(SlotBooking.booking_id == booking_id).limit(1)
        ):
            return OrphanRepairResult(booking_id=booking_id, slot_id=slot_id, action="already_linked")

        actual = await capacity.committed_occupancy(session, slot_id)
        held = await capacity.held_spots(session, slot_id, now_db)
        needed = actual + held + booking.children_count
        if slot.total_capacity < needed:
            previous_capacity = slot.total_capacity
            slot.total_capacity = needed
            expanded = True
            logger.warning(
                "orphan_repair_capacity_expanded",
                extra={
                    "extra": {
                        "slot_id": slot_id,
                        "booking_id": booking_id,
                        "previous_capacity": previous_capacity,
                        "total_capacity": needed,
                    }
                },
            )

        session.add(
            SlotBooking(
                slot_id=slot_id,
                booking_id=booking_id,
                children_count=booking.children_count,
                spots_used=booking.children_count,
                rate_applied_cents=booking.hourly_rate_cents,
            )
        )
        await capacity.sync_slot_counters(
            session, slot, expected_delta=booking.children_count, source="orphan_repair"
        )
        result = OrphanRepairResult(
            booking_id=booking_id,
            slot_id=slot_id,
            action="slot_created" if created else "linked",
            slot_created=created,
            capacity_expanded=expanded,
            previous_capacity=previous_capacity,
            total_capacity=slot.total_capacity,
        )

    logger.info(
        "orphan_booking_repaired",
        extra={
            "extra": {
                "booking_id": booking_id,
                "slot_id": slot_id,
                "action": result.action,
                "capacity_expanded": expanded,
            }
        },
    )
    metrics.record_orphan_repair(result.action)
    return result


async def repair_all_orphaned_bookings(
    session: AsyncSession,
    *,
    caregiver_id: str | None = None,
    limit: int | None = None,
) -> OrphanRepairReport:
    orphans = await find_orphaned_bookings(session, caregiver_id=caregiver_id, limit=limit)
    report = OrphanRepairReport(found=len(orphans))
    for booking_id in [booking.booking_id for booking in orphans]:
        try:
            result = await reconcile_orphaned_booking(session, booking_id)
        except DomainError as exc:
            report.failed += 1
            report.failures.append({"booking_id": booking_id, "reason": exc.detail})
            logger.warning(
                "orphan_repair_failed",
                extra={"extra": {"booking_id": booking_id, "reason": type(exc).__name__}},
            )
            metrics.record_orphan_repair("failed")
            continue
        report.results.append(result)
        if result.action != "already_linked":
            report.repaired += 1
    return report
