from datetime import date

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.identity import CurrentUser, Role, require_approved_user, require_parent
from app.api.routes_availability import realtime_slot_response
from app.dependencies import get_db_session
from app.domain.availability import query_service
from app.domain.availability import schemas as availability_schemas
from app.domain.bookings import schemas as booking_schemas
from app.domain.bookings import service as booking_service
from app.domain.errors import Forbidden

router = APIRouter(prefix="/v1/bookings", tags=["bookings"])


def _ensure_participant(user: CurrentUser, parent_id: str, caregiver_id: str) -> None:
    if user.is_admin:
        return
    if user.role == Role.PARENT and parent_id == user.id:
        return
    if user.role == Role.CAREGIVER and caregiver_id == user.id:
        return
    raise Forbidden(detail="Booking belongs to another account")


@router.get("/options", response_model=list[availability_schemas.BookingOptionResponse])
async def get_booking_options(
    caregiver_id: str,
    slot_date: date | None = Query(default=None, alias="date"),
    children_count: int = Query(default=1, ge=1, le=20),
    session: AsyncSession = Depends(get_db_session),
) -> list[availability_schemas.BookingOptionResponse]:
    options = await query_service.get_booking_options(
        session, caregiver_id, slot_date=slot_date, children_count=children_count
    )
    return [
        availability_schemas.BookingOptionResponse(
            slot=realtime_slot_response(option.slot),
            hourly_rate_cents=option.quote.hourly_rate_cents,
            total_hours=float(option.quote.total_hours),
            estimated_cost_cents=option.quote.total_amount_cents,
        )
        for option in options
    ]


@router.post("/slot", response_model=booking_schemas.BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_slot_booking(
    payload: booking_schemas.SlotBookingCreate,
    user: CurrentUser = Depends(require_parent),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingResponse:
    booking = await booking_service.create_slot_booking(
        session,
        payload.slot_id,
        user.id,
        payload.children_count,
        payload.address,
        reservation_id=payload.reservation_id,
        special_requests=payload.special_requests,
    )
    return booking_schemas.BookingResponse.model_validate(booking)


@router.post("/direct", response_model=booking_schemas.BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_direct_booking(
    payload: booking_schemas.DirectBookingCreate,
    user: CurrentUser = Depends(require_parent),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingResponse:
    booking = await booking_service.create_direct_booking(
        session,
        user.id,
        payload.caregiver_id,
        payload.starts_at,
        payload.ends_at,
        payload.children_count,
        hourly_rate_cents=payload.hourly_rate_cents,
        address=payload.address,
        special_requests=payload.special_requests,
        reservation_id=payload.reservation_id,
    )
    return booking_schemas.BookingResponse.model_validate(booking)


@router.get("/{booking_id}", response_model=booking_schemas.BookingResponse)
async def get_booking(
    booking_id: str,
    user: CurrentUser = Depends(require_approved_user),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingResponse:
    booking = await booking_service.get_booking(session, booking_id)
    _ensure_participant(user, booking.parent_id, booking.caregiver_id)
    return booking_schemas.BookingResponse.model_validate(booking)


@router.patch("/{booking_id}/status", response_model=booking_schemas.BookingResponse)
async def update_booking_status(
    booking_id: str,
    payload: booking_schemas.BookingStatusUpdate,
    user: CurrentUser = Depends(require_approved_user),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.BookingResponse:
    booking = await booking_service.update_booking_status(
        session,
        booking_id,
        payload.status,
        actor_id=user.id,
        actor_role=user.role,
        reason=payload.reason,
    )
    return booking_schemas.BookingResponse.model_validate(booking)
