from datetime import time

import pytest
import sqlalchemy as sa

from app.domain.availability import reservations
from app.domain.availability.db_models import AvailabilitySlot, BookingReservation, SlotBooking
from app.domain.availability.statuses import ReservationStatus, SlotStatus
from app.domain.bookings import service as booking_service
from app.domain.bookings.statuses import BookingSource, BookingStatus
from app.domain.errors import (
    Forbidden,
    InsufficientCapacity,
    InvalidRequest,
    NotFound,
    ReservationNotActive,
)
from app.settings import settings
from conftest import OTHER_PARENT_ID, PARENT_ID, make_slot


@pytest.mark.anyio
async def test_slot_booking_consumes_capacity_and_prices_window(async_session_maker):
    settings.platform_commission_rate = 0.15
    async with async_session_maker() as session:
        slot = await make_slot(session, capacity=3, rate_cents=2000)
        booking = await booking_service.create_slot_booking(
            session, slot.slot_id, PARENT_ID, 2, "12 Main Street"
        )
        slot = await session.get(AvailabilitySlot, slot.slot_id, populate_existing=True)
        link = await session.scalar(sa.select(SlotBooking).where(SlotBooking.booking_id == booking.booking_id))

    assert booking.status == BookingStatus.CONFIRMED.value
    assert booking.source == BookingSource.SLOT.value
    assert booking.confirmed_at is not None
    assert booking.total_hours == 3.0
    assert booking.subtotal_cents == 6000
    assert booking.total_amount_cents == 6000
    assert booking.platform_fee_cents == 900
    assert booking.caregiver_payout_cents == 5100
    assert link.spots_used == 2
    assert link.rate_applied_cents == 2000
    assert slot.current_occupancy == 2
    assert slot.available_spots == 1


@pytest.mark.anyio
async def test_slot_booking_fills_slot(async_session_maker):
    async with async_session_maker() as session:
        slot = await make_slot(session, capacity=2)
        await booking_service.create_slot_booking(session, slot.slot_id, PARENT_ID, 2)
        slot = await session.get(AvailabilitySlot, slot.slot_id, populate_existing=True)
        assert slot.status == SlotStatus.BOOKED.value
        assert slot.available_spots == 0

        with pytest.raises(InsufficientCapacity) as exc_info:
            await booking_service.create_slot_booking(session, slot.slot_id, OTHER_PARENT_ID, 1)

    assert exc_info.value.available == 0


@pytest.mark.anyio
async def test_slot_booking_respects_other_parents_holds(async_session_maker):
    async with async_session_maker() as session:
        slot = await make_slot(session, capacity=2)
        await reservations.reserve_spots(session, slot.slot_id, OTHER_PARENT_ID, 2)

        with pytest.raises(InsufficientCapacity):
            await booking_service.create_slot_booking(session, slot.slot_id, PARENT_ID, 1)


@pytest.mark.anyio
async def test_slot_booking_converts_own_expired_hold_when_capacity_allows(async_session_maker):
    async with async_session_maker() as session:
        slot = await make_slot(session, capacity=2)
        hold = await reservations.reserve_spots(session, slot.slot_id, PARENT_ID, 2)
        await session.execute(
            sa.update(BookingReservation)
            .where(BookingReservation.reservation_id == hold.reservation_id)
            .values(status=ReservationStatus.EXPIRED.value)
        )
        await session.commit()

        booking = await booking_service.create_slot_booking(
            session, slot.slot_id, PARENT_ID, 2, reservation_id=hold.reservation_id
        )
        hold = await session.get(BookingReservation, hold.reservation_id, populate_existing=True)

    assert hold.status == ReservationStatus.CONVERTED.value
    assert hold.booking_id == booking.booking_id


@pytest.mark.anyio
async def test_slot_booking_rejects_reservation_of_another_parent(async_session_maker):
    async with async_session_maker() as session:
        slot = await make_slot(session, capacity=3)
        hold = await reservations.reserve_spots(session, slot.slot_id, OTHER_PARENT_ID, 1)

        with pytest.raises(Forbidden):
            await booking_service.create_slot_booking(
                session, slot.slot_id, PARENT_ID, 1, reservation_id=hold.reservation_id
            )


@pytest.mark.anyio
async def test_slot_booking_rejects_reservation_for_other_slot(async_session_maker):
    async with async_session_maker() as session:
        slot = await make_slot(session, capacity=3)
        other = await make_slot(session, start=time(13, 0), end=time(15, 0))
        hold = await reservations.reserve_spots(session, other.slot_id, PARENT_ID, 1)

        with pytest.raises(InvalidRequest):
            await booking_service.create_slot_booking(
                session, slot.slot_id, PARENT_ID, 1, reservation_id=hold.reservation_id
            )


@pytest.mark.anyio
async def test_slot_booking_rejects_converted_reservation(async_session_maker):
    async with async_session_maker() as session:
        slot = await make_slot(session, capacity=3)
        hold = await reservations.reserve_spots(session, slot.slot_id, PARENT_ID, 1)
        await booking_service.create_slot_booking(
            session, slot.slot_id, PARENT_ID, 1, reservation_id=hold.reservation_id
        )

        with pytest.raises(ReservationNotActive):
            await booking_service.create_slot_booking(
                session, slot.slot_id, PARENT_ID, 1, reservation_id=hold.reservation_id
            )


@pytest.mark.anyio
async def test_slot_booking_with_unknown_slot(async_session_maker):
    async with async_session_maker() as session:
        with pytest.raises(NotFound):
            await booking_service.create_slot_booking(session, "missing-slot", PARENT_ID, 1)


@pytest.mark.anyio
async def test_dynamic_pricing_raises_slot_rate_after_booking(async_session_maker):
    async with async_session_maker() as session:
        slot = await make_slot(session, capacity=5, rate_cents=2000, dynamic_pricing=True)
        booking = await booking_service.create_slot_booking(session, slot.slot_id, PARENT_ID, 2)
        slot = await session.get(AvailabilitySlot, slot.slot_id, populate_existing=True)

    assert booking.hourly_rate_cents == 2000
    assert slot.base_rate_cents == 2000
    assert slot.current_rate_cents == 2200
