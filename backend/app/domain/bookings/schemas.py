from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator


class SlotBookingCreate(BaseModel):
    slot_id: str
    children_count: int = Field(ge=1, le=20)
    address: str | None = Field(default=None, max_length=500)
    special_requests: str | None = Field(default=None, max_length=2000)
    reservation_id: str | None = None


class DirectBookingCreate(BaseModel):
    caregiver_id: str
    starts_at: datetime
    ends_at: datetime
    children_count: int = Field(ge=1, le=20)
    hourly_rate_cents: int | None = Field(default=None, ge=0)
    address: str | None = Field(default=None, max_length=500)
    special_requests: str | None = Field(default=None, max_length=2000)
    reservation_id: str | None = None

    @model_validator(mode="after")
    def validate_window(self) -> "DirectBookingCreate":
        if self.ends_at <= self.starts_at:
            raise ValueError("ends_at must be after starts_at")
        return self


class BookingStatusUpdate(BaseModel):
    status: Literal["CONFIRMED", "IN_PROGRESS", "COMPLETED", "CANCELLED"]
    reason: str | None = Field(default=None, max_length=64)


class BookingResponse(BaseModel):
    booking_id: str
    parent_id: str
    caregiver_id: str
    starts_at: datetime
    ends_at: datetime
    children_count: int
    status: str
    source: str
    hourly_rate_cents: int
    total_hours: float
    subtotal_cents: int
    platform_fee_cents: int
    total_amount_cents: int
    caregiver_payout_cents: int
    payment_intent_id: str | None = None
    cancellation_reason: str | None = None
    confirmed_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class OrphanedBookingResponse(BaseModel):
    booking_id: str
    caregiver_id: str
    starts_at: datetime
    ends_at: datetime
    children_count: int
    status: str
    source: str

    model_config = ConfigDict(from_attributes=True)


class OrphanedBookingListResponse(BaseModel):
    items: list[OrphanedBookingResponse]
    total: int


class OrphanRepairResponse(BaseModel):
    booking_id: str
    slot_id: str
    action: str
    slot_created: bool
    capacity_expanded: bool
    previous_capacity: int | None = None
    total_capacity: int | None = None

    model_config = ConfigDict(from_attributes=True)


class OrphanRepairReportResponse(BaseModel):
    found: int
    repaired: int
    failed: int
    results: list[OrphanRepairResponse]
    failures: list[dict]

    model_config = ConfigDict(from_attributes=True)
