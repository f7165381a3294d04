from __future__ import annotations

from datetime import date, datetime, time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

RecurrenceFrequency = Literal["daily", "weekly", "biweekly", "monthly"]


class RecurrencePattern(BaseModel):
    frequency: RecurrenceFrequency
    interval: int = Field(default=1, ge=1)
    days_of_week: list[int] = Field(default_factory=list)
    until: date | None = None


class SlotCreate(BaseModel):
    slot_date: date
    start_time: time
    end_time: time
    total_capacity: int | None = Field(default=None, ge=0)
    base_rate_cents: int | None = Field(default=None, ge=0)
    is_recurring: bool = False
    recurring_pattern: RecurrencePattern | None = None
    special_requirements: list[str] = Field(default_factory=list)
    notes: str | None = Field(default=None, max_length=2000)


class SlotUpdate(BaseModel):
    slot_date: date | None = None
    start_time: time | None = None
    end_time: time | None = None
    total_capacity: int | None = Field(default=None, ge=0)
    base_rate_cents: int | None = Field(default=None, ge=0)
    is_recurring: bool | None = None
    recurring_pattern: RecurrencePattern | None = None
    special_requirements: list[str] | None = None
    notes: str | None = Field(default=None, max_length=2000)
    status: Literal["AVAILABLE", "CANCELLED"] | None = None


class SlotResponse(BaseModel):
    slot_id: str
    caregiver_id: str
    slot_date: date
    start_time: time
    end_time: time
    total_capacity: int
    current_occupancy: int
    available_spots: int
    base_rate_cents: int
    current_rate_cents: int
    status: str
    is_recurring: bool
    recurring_pattern: dict | None = None
    special_requirements: list[str] = Field(default_factory=list)
    notes: str | None = None

    model_config = ConfigDict(from_attributes=True)


class SlotListResponse(BaseModel):
    items: list[SlotResponse]
    total: int


class RealtimeSlotResponse(SlotResponse):
    real_time_available: int
    reserved_spots: int
    active_reservations: int


class RealtimeAvailabilityResponse(BaseModel):
    caregiver_id: str
    slot_date: date
    slots: list[RealtimeSlotResponse]
    total_slots_available: int
    total_spots_available: int


class BookingOptionResponse(BaseModel):
    slot: RealtimeSlotResponse
    hourly_rate_cents: int
    total_hours: float
    estimated_cost_cents: int


class ReservationCreate(BaseModel):
    slot_id: str
    children_count: int = Field(ge=1, le=20)
    reserved_spots: int | None = Field(default=None, ge=1, le=20)


class ReservationResponse(BaseModel):
    reservation_id: str
    slot_id: str
    parent_id: str
    children_count: int
    reserved_spots: int
    status: str
    expires_at: datetime
    booking_id: str | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CaregiverProfileUpdate(BaseModel):
    hourly_rate_cents: int | None = Field(default=None, ge=0)
    daily_capacity: int | None = Field(default=None, ge=0)
    dynamic_pricing_enabled: bool | None = None


class CaregiverProfileResponse(BaseModel):
    caregiver_id: str
    hourly_rate_cents: int | None = None
    daily_capacity: int | None = None
    dynamic_pricing_enabled: bool

    model_config = ConfigDict(from_attributes=True)


class SlotDriftResponse(BaseModel):
    slot_id: str
    caregiver_id: str
    total_capacity: int
    stored_occupancy: int
    stored_available: int
    actual_occupancy: int
    expected_available: int

    model_config = ConfigDict(from_attributes=True)


class DriftReportResponse(BaseModel):
    items: list[SlotDriftResponse]
    total: int


class SlotConsistencyResponse(BaseModel):
    slot_id: str
    consistent: bool
    drift: SlotDriftResponse | None = None


class ReconcileSlotResponse(BaseModel):
    slot_id: str
    changed: bool
    previous_occupancy: int
    current_occupancy: int
    available_spots: int
    status: str

    model_config = ConfigDict(from_attributes=True)


class ReconcileReportResponse(BaseModel):
    scanned: int
    drifted: int
    reconciled: int
    results: list[ReconcileSlotResponse]

    model_config = ConfigDict(from_attributes=True)


class ReservationSweepResponse(BaseModel):
    expired: int
