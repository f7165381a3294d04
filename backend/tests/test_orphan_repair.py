from datetime import datetime, time, timezone

import pytest
import sqlalchemy as sa

from app.domain.availability.db_models import AvailabilitySlot, SlotBooking
from app.domain.availability.statuses import SlotStatus
from app.domain.bookings import service as booking_service
from app.domain.caregivers.db_models import Caregiver
from app.domain.errors import InvalidRequest
from conftest import CAREGIVER_ID, OTHER_PARENT_ID, PARENT_ID, make_slot


def _at(hour: int, day: int = 3) -> datetime:
    return datetime(2030, 6, day, hour, 0, tzinfo=timezone.utc)


async def _orphan(session, *, starts_at=None, ends_at=None, children_count=2, parent_id=PARENT_ID) -> str:
    booking = await booking_service.create_direct_booking(
        session,
        parent_id,
        CAREGIVER_ID,
        starts_at or _at(18),
        ends_at or _at(21),
        children_count,
        hourly_rate_cents=2000,
        status="CONFIRMED",
    )
    return booking.booking_id


@pytest.mark.anyio
async def test_orphan_without_matching_slot_gets_a_new_slot(async_session_maker):
    async with async_session_maker() as session:
        booking_id = await _orphan(session)
        result = await booking_service.reconcile_orphaned_booking(session, booking_id)
        slot = await session.get(AvailabilitySlot, result.slot_id, populate_existing=True)
        caregiver = await session.get(Caregiver, CAREGIVER_ID)

    assert result.action == "slot_created"
    assert result.slot_created is True
    assert slot.start_time == time(18, 0)
    assert slot.end_time == time(21, 0)
    assert slot.total_capacity == 2
    assert slot.current_occupancy == 2
    assert slot.status == SlotStatus.BOOKED.value
    assert caregiver.backfilled is True


@pytest.mark.anyio
async def test_orphan_links_to_covering_slot(async_session_maker):
    async with async_session_maker() as session:
        slot = await make_slot(session, start=time(17, 0), end=time(22, 0), capacity=3)
        slot_id = slot.slot_id
        booking_id = await _orphan(session)

        result = await booking_service.reconcile_orphaned_booking(session, booking_id)
        again = await booking_service.reconcile_orphaned_booking(session, booking_id)
        slot = await session.get(AvailabilitySlot, slot_id, populate_existing=True)
        links = await session.scalar(
            sa.select(sa.func.count(SlotBooking.slot_booking_id)).where(SlotBooking.booking_id == booking_id)
        )
        orphans = await booking_service.find_orphaned_bookings(session)

    assert result.action == "linked"
    assert result.slot_id == slot_id
    assert result.capacity_expanded is False
    assert again.action == "already_linked"
    assert links == 1
    assert slot.current_occupancy == 2
    assert slot.available_spots == 1
    assert orphans == []


@pytest.mark.anyio
async def test_orphan_expands_full_slot_instead_of_overbooking(async_session_maker):
    async with async_session_maker() as session:
        slot = await make_slot(session, start=time(17, 0), end=time(22, 0), capacity=2)
        slot_id = slot.slot_id
        await booking_service.create_slot_booking(session, slot_id, OTHER_PARENT_ID, 1)
        booking_id = await _orphan(session)

        result = await booking_service.reconcile_orphaned_booking(session, booking_id)
        slot = await session.get(AvailabilitySlot, slot_id, populate_existing=True)

    assert result.action == "linked"
    assert result.capacity_expanded is True
    assert result.previous_capacity == 2
    assert result.total_capacity == 3
    assert slot.current_occupancy == 3
    assert slot.available_spots == 0
    assert slot.status == SlotStatus.BOOKED.value


@pytest.mark.anyio
async def test_cancelled_booking_is_not_linked(async_session_maker):
    async with async_session_maker() as session:
        booking_id = await _orphan(session)
        await booking_service.update_booking_status(
            session, booking_id, "CANCELLED", actor_id="admin-1", actor_role="ADMIN"
        )

        with pytest.raises(InvalidRequest):
            await booking_service.reconcile_orphaned_booking(session, booking_id)


@pytest.mark.anyio
async def test_repair_all_reports_repairs_and_failures(async_session_maker):
    async with async_session_maker() as session:
        await make_slot(session, start=time(17, 0), end=time(22, 0), capacity=4)
        repairable = await _orphan(session)
        overnight = await _orphan(
            session, starts_at=_at(22, day=4), ends_at=_at(1, day=5), parent_id=OTHER_PARENT_ID
        )

        report = await booking_service.repair_all_orphaned_bookings(session)
        remaining = await booking_service.find_orphaned_bookings(session)

    assert report.found == 2
    assert report.repaired == 1
    assert report.failed == 1
    assert [result.booking_id for result in report.results] == [repairable]
    assert report.failures[0]["booking_id"] == overnight
    assert [booking.booking_id for booking in remaining] == [overnight]
