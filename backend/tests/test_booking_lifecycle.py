from datetime import datetime, timezone

import pytest

from app.domain.availability import reconciler, reservations
from app.domain.availability.db_models import AvailabilitySlot, BookingReservation
from app.domain.availability.statuses import ReservationStatus, SlotStatus
from app.domain.bookings import service as booking_service
from app.domain.bookings.statuses import BookingSource, BookingStatus
from app.domain.errors import Forbidden, InvalidRequest, InvalidTransition
from conftest import CAREGIVER_ID, PARENT_ID, make_slot

STARTS_AT = datetime(2030, 6, 3, 18, 0, tzinfo=timezone.utc)
ENDS_AT = datetime(2030, 6, 3, 21, 0, tzinfo=timezone.utc)


async def _direct_booking(session, **kwargs):
    return await booking_service.create_direct_booking(
        session,
        PARENT_ID,
        CAREGIVER_ID,
        STARTS_AT,
        ENDS_AT,
        kwargs.pop("children_count", 2),
        hourly_rate_cents=kwargs.pop("hourly_rate_cents", 2000),
        **kwargs,
    )


@pytest.mark.anyio
async def test_direct_booking_is_pending_and_unlinked(async_session_maker):
    async with async_session_maker() as session:
        booking = await _direct_booking(session)
        orphans = await booking_service.find_orphaned_bookings(session)

    assert booking.status == BookingStatus.PENDING.value
    assert booking.source == BookingSource.DIRECT.value
    assert booking.total_amount_cents == 6000
    assert [orphan.booking_id for orphan in orphans] == [booking.booking_id]


@pytest.mark.anyio
async def test_direct_booking_same_window_returns_existing(async_session_maker):
    async with async_session_maker() as session:
        first = await _direct_booking(session)
        second = await _direct_booking(session)

    assert second.booking_id == first.booking_id


@pytest.mark.anyio
async def test_direct_booking_requires_known_rate(async_session_maker):
    async with async_session_maker() as session:
        with pytest.raises(InvalidRequest):
            await booking_service.create_direct_booking(
                session, PARENT_ID, "unpriced-caregiver", STARTS_AT, ENDS_AT, 1
            )


@pytest.mark.anyio
async def test_direct_booking_converts_reservation(async_session_maker):
    async with async_session_maker() as session:
        slot = await make_slot(session, capacity=3)
        hold = await reservations.reserve_spots(session, slot.slot_id, PARENT_ID, 2)
        booking = await _direct_booking(session, reservation_id=hold.reservation_id)
        hold = await session.get(BookingReservation, hold.reservation_id, populate_existing=True)

    assert hold.status == ReservationStatus.CONVERTED.value
    assert hold.booking_id == booking.booking_id


@pytest.mark.anyio
async def test_caregiver_moves_booking_through_lifecycle(async_session_maker):
    async with async_session_maker() as session:
        booking = await _direct_booking(session)
        booking_id = booking.booking_id
        for target in ("CONFIRMED", "IN_PROGRESS", "COMPLETED"):
            booking = await booking_service.update_booking_status(
                session, booking_id, target, actor_id=CAREGIVER_ID, actor_role="CAREGIVER"
            )

    assert booking.status == BookingStatus.COMPLETED.value
    assert booking.confirmed_at is not None
    assert booking.started_at is not None
    assert booking.completed_at is not None


@pytest.mark.anyio
async def test_parent_may_only_cancel(async_session_maker):
    async with async_session_maker() as session:
        booking = await _direct_booking(session)
        booking_id = booking.booking_id

        with pytest.raises(Forbidden):
            await booking_service.update_booking_status(
                session, booking_id, "CONFIRMED", actor_id=PARENT_ID, actor_role="PARENT"
            )
        cancelled = await booking_service.update_booking_status(
            session, booking_id, "CANCELLED", actor_id=PARENT_ID, actor_role="PARENT", reason="plans_changed"
        )

    assert cancelled.status == BookingStatus.CANCELLED.value
    assert cancelled.cancellation_reason == "plans_changed"
    assert cancelled.cancelled_at is not None


@pytest.mark.anyio
async def test_unrelated_caregiver_cannot_touch_booking(async_session_maker):
    async with async_session_maker() as session:
        booking = await _direct_booking(session)

        with pytest.raises(Forbidden):
            await booking_service.update_booking_status(
                session, booking.booking_id, "CONFIRMED", actor_id="other-caregiver", actor_role="CAREGIVER"
            )


@pytest.mark.anyio
async def test_invalid_transition_is_rejected(async_session_maker):
    async with async_session_maker() as session:
        booking = await _direct_booking(session)
        booking_id = booking.booking_id

        with pytest.raises(InvalidTransition):
            await booking_service.update_booking_status(
                session, booking_id, "COMPLETED", actor_id="admin-1", actor_role="ADMIN"
            )


@pytest.mark.anyio
async def test_cancelling_slot_booking_releases_its_spots(async_session_maker):
    async with async_session_maker() as session:
        slot = await make_slot(session, capacity=2)
        slot_id = slot.slot_id
        booking = await booking_service.create_slot_booking(session, slot_id, PARENT_ID, 2)
        slot = await session.get(AvailabilitySlot, slot_id, populate_existing=True)
        assert slot.status == SlotStatus.BOOKED.value

        await booking_service.update_booking_status(
            session, booking.booking_id, "CANCELLED", actor_id=PARENT_ID, actor_role="PARENT"
        )
        slot = await session.get(AvailabilitySlot, slot_id, populate_existing=True)
        drifted = await reconciler.find_drifted_slots(session)

    assert slot.current_occupancy == 0
    assert slot.available_spots == 2
    assert slot.status == SlotStatus.AVAILABLE.value
    assert drifted == []
