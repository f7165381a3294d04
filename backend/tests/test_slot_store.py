from datetime import date, datetime, time, timedelta, timezone

import pytest
import sqlalchemy as sa

from app.domain.availability import reservations, slot_store
from app.domain.availability.db_models import AvailabilitySlot, BookingReservation
from app.domain.availability.slot_store import SlotFilter
from app.domain.availability.statuses import SlotStatus
from app.domain.bookings import service as booking_service
from app.domain.caregivers.db_models import Caregiver
from app.domain.errors import (
    DuplicateSlot,
    HasDependents,
    InvalidCapacity,
    InvalidRange,
    InvalidRequest,
    NotOwner,
)
from conftest import CAREGIVER_ID, PARENT_ID, SLOT_DATE, make_slot


@pytest.mark.anyio
async def test_create_slot_starts_empty(async_session_maker):
    async with async_session_maker() as session:
        slot = await make_slot(session, capacity=4)

    assert slot.total_capacity == 4
    assert slot.current_occupancy == 0
    assert slot.available_spots == 4
    assert slot.status == SlotStatus.AVAILABLE.value
    assert slot.current_rate_cents == slot.base_rate_cents == 2000


@pytest.mark.anyio
async def test_create_slot_backfills_missing_caregiver_profile(async_session_maker):
    async with async_session_maker() as session:
        slot = await slot_store.create_slot(
            session,
            "new-caregiver",
            slot_date=SLOT_DATE,
            start_time=time(13, 0),
            end_time=time(15, 0),
            total_capacity=2,
            base_rate_cents=1800,
        )
        caregiver = await session.get(Caregiver, "new-caregiver")

    assert slot.caregiver_id == "new-caregiver"
    assert caregiver is not None
    assert caregiver.backfilled is True
    assert caregiver.daily_capacity == 2
    assert caregiver.hourly_rate_cents == 1800


@pytest.mark.anyio
async def test_create_slot_uses_profile_defaults(async_session_maker):
    async with async_session_maker() as session:
        await make_slot(session, capacity=5, rate_cents=2500)
        slot = await slot_store.create_slot(
            session,
            CAREGIVER_ID,
            slot_date=SLOT_DATE,
            start_time=time(14, 0),
            end_time=time(16, 0),
        )

    assert slot.total_capacity == 5
    assert slot.base_rate_cents == 2500


@pytest.mark.anyio
async def test_create_slot_requires_defaults_without_profile(async_session_maker):
    async with async_session_maker() as session:
        with pytest.raises(InvalidRequest):
            await slot_store.create_slot(
                session,
                "unknown-caregiver",
                slot_date=SLOT_DATE,
                start_time=time(9, 0),
                end_time=time(10, 0),
            )


@pytest.mark.anyio
async def test_create_slot_rejects_inverted_window(async_session_maker):
    async with async_session_maker() as session:
        with pytest.raises(InvalidRange):
            await slot_store.create_slot(
                session,
                CAREGIVER_ID,
                slot_date=SLOT_DATE,
                start_time=time(12, 0),
                end_time=time(9, 0),
                total_capacity=2,
                base_rate_cents=2000,
            )


@pytest.mark.anyio
async def test_create_slot_rejects_duplicate_start(async_session_maker):
    async with async_session_maker() as session:
        await make_slot(session)
        with pytest.raises(DuplicateSlot):
            await slot_store.create_slot(
                session,
                CAREGIVER_ID,
                slot_date=SLOT_DATE,
                start_time=time(9, 0),
                end_time=time(11, 0),
                total_capacity=2,
                base_rate_cents=2000,
            )


@pytest.mark.anyio
async def test_update_slot_capacity_keeps_occupancy(async_session_maker):
    async with async_session_maker() as session:
        slot = await make_slot(session, capacity=3)
        await booking_service.create_slot_booking(session, slot.slot_id, PARENT_ID, 2)

        updated = await slot_store.update_slot(session, slot.slot_id, CAREGIVER_ID, {"total_capacity": 5})

    assert updated.total_capacity == 5
    assert updated.current_occupancy == 2
    assert updated.available_spots == 3
    assert updated.status == SlotStatus.AVAILABLE.value


@pytest.mark.anyio
async def test_update_slot_capacity_below_committed_and_held_is_rejected(async_session_maker):
    async with async_session_maker() as session:
        slot = await make_slot(session, capacity=4)
        slot_id = slot.slot_id
        await booking_service.create_slot_booking(session, slot_id, PARENT_ID, 2)
        await reservations.reserve_spots(session, slot_id, "parent-9", 1)

        with pytest.raises(InvalidCapacity):
            await slot_store.update_slot(session, slot_id, CAREGIVER_ID, {"total_capacity": 2})

        unchanged = await session.get(AvailabilitySlot, slot_id, populate_existing=True)
    assert unchanged.total_capacity == 4


@pytest.mark.anyio
async def test_update_slot_by_other_caregiver_is_rejected(async_session_maker):
    async with async_session_maker() as session:
        slot = await make_slot(session)
        with pytest.raises(NotOwner):
            await slot_store.update_slot(session, slot.slot_id, "someone-else", {"notes": "mine now"})


@pytest.mark.anyio
async def test_delete_slot_with_booking_is_rejected(async_session_maker):
    async with async_session_maker() as session:
        slot = await make_slot(session)
        await booking_service.create_slot_booking(session, slot.slot_id, PARENT_ID, 1)

        with pytest.raises(HasDependents) as exc_info:
            await slot_store.delete_slot(session, slot.slot_id, CAREGIVER_ID)

    assert exc_info.value.errors[0]["field"] == "slot_bookings"


@pytest.mark.anyio
async def test_delete_slot_with_active_hold_is_rejected_until_it_lapses(async_session_maker):
    held_at = datetime(2030, 6, 1, 10, 0, tzinfo=timezone.utc)
    async with async_session_maker() as session:
        slot = await make_slot(session)
        slot_id = slot.slot_id
        await reservations.reserve_spots(session, slot_id, PARENT_ID, 1, now=held_at)

        with pytest.raises(HasDependents) as exc_info:
            await slot_store.delete_slot(session, slot_id, CAREGIVER_ID, now=held_at + timedelta(minutes=5))

        await slot_store.delete_slot(session, slot_id, CAREGIVER_ID, now=held_at + timedelta(minutes=16))
        remaining_slots = await session.scalar(sa.select(sa.func.count(AvailabilitySlot.slot_id)))
        remaining_holds = await session.scalar(sa.select(sa.func.count(BookingReservation.reservation_id)))

    assert exc_info.value.errors[0]["field"] == "reservations"
    assert remaining_slots == 0
    assert remaining_holds == 0


@pytest.mark.anyio
async def test_delete_empty_slot(async_session_maker):
    async with async_session_maker() as session:
        slot = await make_slot(session)
        await slot_store.delete_slot(session, slot.slot_id, CAREGIVER_ID)
        remaining = await session.scalar(sa.select(sa.func.count(AvailabilitySlot.slot_id)))

    assert remaining == 0


@pytest.mark.anyio
async def test_query_slots_orders_by_date_and_start_across_pages(async_session_maker):
    async with async_session_maker() as session:
        await make_slot(session, slot_date=date(2030, 6, 4), start=time(8, 0), end=time(9, 0))
        await make_slot(session, slot_date=date(2030, 6, 3), start=time(15, 0), end=time(16, 0))
        await make_slot(session, slot_date=date(2030, 6, 3), start=time(7, 0), end=time(8, 0))

        slots = await slot_store.query_slots(
            session, SlotFilter(caregiver_id=CAREGIVER_ID), page_size=2
        ).to_list()

    assert [(slot.slot_date, slot.start_time) for slot in slots] == [
        (date(2030, 6, 3), time(7, 0)),
        (date(2030, 6, 3), time(15, 0)),
        (date(2030, 6, 4), time(8, 0)),
    ]


@pytest.mark.anyio
async def test_expire_past_slots_only_touches_available_slots(async_session_maker):
    async with async_session_maker() as session:
        past = await make_slot(session, slot_date=date(2030, 6, 1))
        future = await make_slot(session, slot_date=date(2030, 6, 10))

        expired = await slot_store.expire_past_slots(session, today=date(2030, 6, 5))
        past = await session.get(AvailabilitySlot, past.slot_id, populate_existing=True)
        future = await session.get(AvailabilitySlot, future.slot_id, populate_existing=True)

    assert expired == 1
    assert past.status == SlotStatus.EXPIRED.value
    assert future.status == SlotStatus.AVAILABLE.value
