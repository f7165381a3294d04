from datetime import date, datetime, time, timedelta, timezone

import pytest

from app.domain.availability import query_service, reservations
from app.domain.availability.slot_store import SlotFilter
from app.domain.bookings import service as booking_service
from conftest import CAREGIVER_ID, OTHER_PARENT_ID, PARENT_ID, SLOT_DATE, make_slot


@pytest.mark.anyio
async def test_available_slots_default_to_today_onwards(async_session_maker):
    async with async_session_maker() as session:
        await make_slot(session, slot_date=date(2030, 6, 1))
        upcoming = await make_slot(session, slot_date=date(2030, 6, 10))

        slots = await query_service.get_available_slots(
            session, SlotFilter(caregiver_id=CAREGIVER_ID), today=date(2030, 6, 5)
        )

    assert [slot.slot_id for slot in slots] == [upcoming.slot_id]


@pytest.mark.anyio
async def test_available_slots_hide_booked_slots(async_session_maker):
    async with async_session_maker() as session:
        full = await make_slot(session, capacity=1)
        open_slot = await make_slot(session, start=time(13, 0), end=time(15, 0), capacity=2)
        await booking_service.create_slot_booking(session, full.slot_id, PARENT_ID, 1)

        slots = await query_service.get_available_slots(
            session, SlotFilter(caregiver_id=CAREGIVER_ID, slot_date=SLOT_DATE)
        )

    assert [slot.slot_id for slot in slots] == [open_slot.slot_id]


@pytest.mark.anyio
async def test_realtime_availability_subtracts_active_holds(async_session_maker):
    past = datetime.now(timezone.utc) - timedelta(minutes=30)
    async with async_session_maker() as session:
        slot = await make_slot(session, capacity=4)
        await booking_service.create_slot_booking(session, slot.slot_id, PARENT_ID, 1)
        await reservations.reserve_spots(session, slot.slot_id, OTHER_PARENT_ID, 2)
        await reservations.reserve_spots(session, slot.slot_id, "parent-3", 1, now=past)

        view = await query_service.get_realtime_availability(session, CAREGIVER_ID, SLOT_DATE)

    item = view.slots[0]
    assert item.slot.available_spots == 3
    assert item.reserved_spots == 2
    assert item.active_reservations == 1
    assert item.real_time_available == 1
    assert view.total_slots_available == 1
    assert view.total_spots_available == 1


@pytest.mark.anyio
async def test_realtime_availability_for_empty_day(async_session_maker):
    async with async_session_maker() as session:
        view = await query_service.get_realtime_availability(session, CAREGIVER_ID, SLOT_DATE)

    assert view.slots == []
    assert view.total_spots_available == 0


@pytest.mark.anyio
async def test_booking_options_fit_children_and_carry_quotes(async_session_maker):
    async with async_session_maker() as session:
        roomy = await make_slot(session, capacity=3, rate_cents=2000)
        tight = await make_slot(session, start=time(13, 0), end=time(15, 0), capacity=3)
        await reservations.reserve_spots(session, tight.slot_id, OTHER_PARENT_ID, 2)

        options = await query_service.get_booking_options(
            session, CAREGIVER_ID, slot_date=SLOT_DATE, children_count=2
        )

    assert [option.slot.slot.slot_id for option in options] == [roomy.slot_id]
    assert options[0].quote.total_hours == 3
    assert options[0].quote.subtotal_cents == 6000
