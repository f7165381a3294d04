from __future__ import annotations

import uuid
from datetime import date, datetime, time
from typing import TYPE_CHECKING

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.types import JSON

from app.domain.availability.statuses import ReservationStatus, SlotStatus
from app.infra.db import Base

if TYPE_CHECKING:  # pragma: no cover
    from app.domain.bookings.db_models import Booking


class AvailabilitySlot(Base):
    __tablename__ = "availability_slots"

    slot_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    caregiver_id: Mapped[str] = mapped_column(
        ForeignKey("caregivers.caregiver_id"), nullable=False
    )
    slot_date: Mapped[date] = mapped_column(Date, nullable=False)
    start_time: Mapped[time] = mapped_column(Time, nullable=False)
    end_time: Mapped[time] = mapped_column(Time, nullable=False)
    total_capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    current_occupancy: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, server_default="0"
    )
    available_spots: Mapped[int] = mapped_column(Integer, nullable=False)
    base_rate_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_rate_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=SlotStatus.AVAILABLE.value
    )
    is_recurring: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="0"
    )
    recurring_pattern: Mapped[dict | None] = mapped_column(JSON, nullable=True)
    special_requirements: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )

    reservations: Mapped[list["BookingReservation"]] = relationship(
        back_populates="slot", passive_deletes="all"
    )
    slot_bookings: Mapped[list["SlotBooking"]] = relationship(
        back_populates="slot", passive_deletes="all"
    )

    __table_args__ = (
        UniqueConstraint("caregiver_id", "slot_date", "start_time", name="uq_slot_caregiver_start"),
        Index("ix_availability_slots_date_start", "slot_date", "start_time"),
        Index("ix_availability_slots_caregiver_date", "caregiver_id", "slot_date"),
        Index("ix_availability_slots_status", "status"),
    )


class BookingReservation(Base):
    __tablename__ = "booking_reservations"

    reservation_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    slot_id: Mapped[str] = mapped_column(
        ForeignKey("availability_slots.slot_id", ondelete="RESTRICT"), nullable=False
    )
    parent_id: Mapped[str] = mapped_column(String(64), nullable=False)
    children_count: Mapped[int] = mapped_column(Integer, nullable=False)
    reserved_spots: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=ReservationStatus.ACTIVE.value
    )
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    booking_id: Mapped[str | None] = mapped_column(
        ForeignKey("bookings.booking_id", ondelete="SET NULL"), nullable=True
    )
    released_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    slot: Mapped[AvailabilitySlot] = relationship(back_populates="reservations")

    __table_args__ = (
        Index("ix_booking_reservations_slot_status", "slot_id", "status"),
        Index("ix_booking_reservations_expires", "expires_at"),
        Index("ix_booking_reservations_parent", "parent_id"),
    )


class SlotBooking(Base):
    __tablename__ = "slot_bookings"

    slot_booking_id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
    )
    slot_id: Mapped[str] = mapped_column(
        ForeignKey("availability_slots.slot_id", ondelete="RESTRICT"), nullable=False
    )
    booking_id: Mapped[str] = mapped_column(
        ForeignKey("bookings.booking_id", ondelete="CASCADE"), nullable=False
    )
    children_count: Mapped[int] = mapped_column(Integer, nullable=False)
    spots_used: Mapped[int] = mapped_column(Integer, nullable=False)
    rate_applied_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    slot: Mapped[AvailabilitySlot] = relationship(back_populates="slot_bookings")
    booking: Mapped["Booking"] = relationship(back_populates="slot_bookings")

    __table_args__ = (
        UniqueConstraint("slot_id", "booking_id", name="uq_slot_booking"),
        Index("ix_slot_bookings_booking", "booking_id"),
    )
