from __future__ import annotations

import logging
from datetime import datetime, timedelta

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.availability import capacity
from app.domain.availability.db_models import BookingReservation
from app.domain.availability.statuses import TERMINAL_SLOT_STATUSES, ReservationStatus
from app.domain.errors import Forbidden, InsufficientCapacity, InvalidRequest, NotFound
from app.infra.db_time import now_for_db
from app.infra.metrics import metrics
from app.settings import settings

logger = logging.getLogger(__name__)


def is_holding(reservation: BookingReservation, now: datetime) -> bool:
    """Whether the reservation still counts against slot capacity at ``now``."""
    return reservation.status == ReservationStatus.ACTIVE.value and reservation.expires_at > now


async def reserve_spots(
    session: AsyncSession,
    slot_id: str,
    parent_id: str,
    children_count: int,
    reserved_spots: int | None = None,
    *,
    now: datetime | None = None,
    hold_minutes: int | None = None,
) -> BookingReservation:
    """Place a time-boxed hold on slot capacity for a parent's checkout.

    The capacity check and the insert happen under the slot guard, so two
    parents racing for the last spots cannot both win.
    """
    reserved_spots = children_count if reserved_spots is None else reserved_spots
    if children_count < 1 or reserved_spots < 1:
        raise InvalidRequest(detail="children_count and reserved_spots must be at least 1")

    now_db = now_for_db(session, now)
    minutes = hold_minutes if hold_minutes is not None else settings.reservation_hold_minutes
    hold = timedelta(minutes=minutes)
    async with capacity.slot_guard(session, slot_id) as slot:
        if slot.status in TERMINAL_SLOT_STATUSES:
            metrics.record_reservation("slot_closed")
            raise InsufficientCapacity(
                detail=f"Slot is {slot.status.lower()} and cannot be reserved",
                requested=reserved_spots,
                available=0,
            )
        available = await capacity.effective_available(session, slot, now_db)
        if available < reserved_spots:
            logger.info(
                "reservation_rejected",
                extra={
                    "extra": {
                        "slot_id": slot_id,
                        "parent_id": parent_id,
                        "requested": reserved_spots,
                        "available": available,
                    }
                },
            )
            metrics.record_reservation("insufficient_capacity")
            raise InsufficientCapacity(
                detail=f"Only {max(available, 0)} spot(s) left on this slot",
                requested=reserved_spots,
                available=max(available, 0),
            )

        reservation = BookingReservation(
            slot_id=slot_id,
            parent_id=parent_id,
            children_count=children_count,
            reserved_spots=reserved_spots,
            status=ReservationStatus.ACTIVE.value,
            expires_at=now_db + hold,
        )
        session.add(reservation)
        await session.flush()

    await session.refresh(reservation)
    logger.info(
        "reservation_created",
        extra={
            "extra": {
                "reservation_id": reservation.reservation_id,
                "slot_id": slot_id,
                "parent_id": parent_id,
                "reserved_spots": reserved_spots,
                "expires_at": reservation.expires_at.isoformat(),
            }
        },
    )
    metrics.record_reservation("created")
    return reservation


async def get_reservation(session: AsyncSession, reservation_id: str) -> BookingReservation:
    reservation = await session.get(BookingReservation, reservation_id)
    if reservation is None:
        raise NotFound(detail=f"Reservation {reservation_id} not found")
    return reservation


async def cancel_reservation(
    session: AsyncSession,
    reservation_id: str,
    *,
    caller_parent_id: str | None = None,
    now: datetime | None = None,
) -> BookingReservation:
    """Release a hold. Cancelling anything but an ACTIVE hold is a no-op."""
    reservation = await get_reservation(session, reservation_id)
    if caller_parent_id is not None and reservation.parent_id != caller_parent_id:
        raise Forbidden(detail="Reservation belongs to another parent")
    if reservation.status != ReservationStatus.ACTIVE.value:
        return reservation

    now_db = now_for_db(session, now)
    async with capacity.slot_guard(session, reservation.slot_id):
        await session.refresh(reservation)
        if reservation.status == ReservationStatus.ACTIVE.value:
            reservation.status = ReservationStatus.CANCELLED.value
            reservation.released_at = now_db

    logger.info(
        "reservation_cancelled",
        extra={"extra": {"reservation_id": reservation_id, "slot_id": reservation.slot_id}},
    )
    metrics.record_reservation("cancelled")
    return reservation


async def list_active_reservations(
    session: AsyncSession, slot_id: str, *, now: datetime | None = None
) -> list[BookingReservation]:
    now_db = now_for_db(session, now)
    stmt = (
        sa.select(BookingReservation)
        .where(BookingReservation.slot_id == slot_id)
        .where(BookingReservation.status == ReservationStatus.ACTIVE.value)
        .where(BookingReservation.expires_at > now_db)
        .order_by(BookingReservation.expires_at.asc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def expire_stale_reservations(
    session: AsyncSession,
    *,
    now: datetime | None = None,
    batch_size: int | None = None,
) -> int:
    """Mark lapsed ACTIVE holds EXPIRED.

    Capacity reads already ignore lapsed holds; this only brings the stored
    status in line.
    """
    now_db = now_for_db(session, now)
    limit = batch_size if batch_size is not None else settings.reservation_sweep_batch_size
    select_stmt = (
        sa.select(BookingReservation.reservation_id)
        .where(BookingReservation.status == ReservationStatus.ACTIVE.value)
        .where(BookingReservation.expires_at <= now_db)
        .order_by(BookingReservation.expires_at)
    )
    if limit:
        select_stmt = select_stmt.limit(limit)
    reservation_ids = [row[0] for row in (await session.execute(select_stmt)).all()]

    expired = 0
    if reservation_ids:
        result = await session.execute(
            sa.update(BookingReservation)
            .where(BookingReservation.reservation_id.in_(reservation_ids))
            .where(BookingReservation.status == ReservationStatus.ACTIVE.value)
            .values(status=ReservationStatus.EXPIRED.value, released_at=now_db)
            .execution_options(synchronize_session=False)
        )
        expired = int(result.rowcount or 0)
    await session.commit()

    active_count = await session.scalar(
        sa.select(sa.func.count(BookingReservation.reservation_id))
        .where(BookingReservation.status == ReservationStatus.ACTIVE.value)
        .where(BookingReservation.expires_at > now_db)
    )
    metrics.set_reservations_active(int(active_count or 0))
    if expired:
        logger.info("reservations_expired", extra={"extra": {"expired": expired}})
    return expired
