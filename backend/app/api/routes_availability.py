from datetime import date

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.identity import CurrentUser, require_caregiver, require_parent, require_parent_or_admin
from app.dependencies import get_db_session
from app.domain.availability import query_service, reservations, schemas, slot_store
from app.domain.availability.query_service import RealtimeSlot
from app.domain.availability.slot_store import SlotFilter
from app.domain.errors import Forbidden

router = APIRouter(prefix="/v1/availability", tags=["availability"])


def _slot_filter(
    caregiver_id: str | None = Query(default=None),
    slot_date: date | None = Query(default=None, alias="date"),
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    min_available_spots: int | None = Query(default=None, ge=0),
) -> SlotFilter:
    return SlotFilter(
        caregiver_id=caregiver_id,
        slot_date=slot_date,
        start_date=start_date,
        end_date=end_date,
        min_available_spots=min_available_spots,
    )


def realtime_slot_response(item: RealtimeSlot) -> schemas.RealtimeSlotResponse:
    base = schemas.SlotResponse.model_validate(item.slot)
    return schemas.RealtimeSlotResponse(
        **base.model_dump(),
        real_time_available=item.real_time_available,
        reserved_spots=item.reserved_spots,
        active_reservations=item.active_reservations,
    )


@router.post("/slots", response_model=schemas.SlotResponse, status_code=status.HTTP_201_CREATED)
async def create_slot(
    payload: schemas.SlotCreate,
    user: CurrentUser = Depends(require_caregiver),
    session: AsyncSession = Depends(get_db_session),
) -> schemas.SlotResponse:
    slot = await slot_store.create_slot(
        session,
        user.id,
        slot_date=payload.slot_date,
        start_time=payload.start_time,
        end_time=payload.end_time,
        total_capacity=payload.total_capacity,
        base_rate_cents=payload.base_rate_cents,
        is_recurring=payload.is_recurring,
        recurring_pattern=payload.recurring_pattern.model_dump(mode="json") if payload.recurring_pattern else None,
        special_requirements=payload.special_requirements,
        notes=payload.notes,
    )
    return schemas.SlotResponse.model_validate(slot)


@router.patch("/slots/{slot_id}", response_model=schemas.SlotResponse)
async def update_slot(
    slot_id: str,
    payload: schemas.SlotUpdate,
    user: CurrentUser = Depends(require_caregiver),
    session: AsyncSession = Depends(get_db_session),
) -> schemas.SlotResponse:
    changes = payload.model_dump(exclude_unset=True)
    if payload.recurring_pattern is not None:
        changes["recurring_pattern"] = payload.recurring_pattern.model_dump(mode="json")
    slot = await slot_store.update_slot(session, slot_id, user.id, changes)
    return schemas.SlotResponse.model_validate(slot)


@router.delete("/slots/{slot_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_slot(
    slot_id: str,
    user: CurrentUser = Depends(require_caregiver),
    session: AsyncSession = Depends(get_db_session),
) -> Response:
    await slot_store.delete_slot(session, slot_id, user.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/slots", response_model=schemas.SlotListResponse)
async def list_available_slots(
    slot_filter: SlotFilter = Depends(_slot_filter),
    session: AsyncSession = Depends(get_db_session),
) -> schemas.SlotListResponse:
    slots = await query_service.get_available_slots(session, slot_filter)
    items = [schemas.SlotResponse.model_validate(slot) for slot in slots]
    return schemas.SlotListResponse(items=items, total=len(items))


@router.get("/caregivers/{caregiver_id}/slots", response_model=schemas.SlotListResponse)
async def list_caregiver_slots(
    caregiver_id: str,
    start_date: date | None = Query(default=None),
    end_date: date | None = Query(default=None),
    session: AsyncSession = Depends(get_db_session),
) -> schemas.SlotListResponse:
    slots = await slot_store.query_slots(
        session,
        SlotFilter(caregiver_id=caregiver_id, start_date=start_date, end_date=end_date),
    ).to_list()
    items = [schemas.SlotResponse.model_validate(slot) for slot in slots]
    return schemas.SlotListResponse(items=items, total=len(items))


@router.get("/realtime", response_model=schemas.RealtimeAvailabilityResponse)
async def get_realtime_availability(
    caregiver_id: str,
    slot_date: date = Query(alias="date"),
    session: AsyncSession = Depends(get_db_session),
) -> schemas.RealtimeAvailabilityResponse:
    view = await query_service.get_realtime_availability(session, caregiver_id, slot_date)
    return schemas.RealtimeAvailabilityResponse(
        caregiver_id=view.caregiver_id,
        slot_date=view.slot_date,
        slots=[realtime_slot_response(item) for item in view.slots],
        total_slots_available=view.total_slots_available,
        total_spots_available=view.total_spots_available,
    )


@router.post(
    "/reservations",
    response_model=schemas.ReservationResponse,
    status_code=status.HTTP_201_CREATED,
)
async def reserve_spots(
    payload: schemas.ReservationCreate,
    user: CurrentUser = Depends(require_parent),
    session: AsyncSession = Depends(get_db_session),
) -> schemas.ReservationResponse:
    reservation = await reservations.reserve_spots(
        session,
        payload.slot_id,
        user.id,
        payload.children_count,
        payload.reserved_spots,
    )
    return schemas.ReservationResponse.model_validate(reservation)


@router.get("/reservations/{reservation_id}", response_model=schemas.ReservationResponse)
async def get_reservation(
    reservation_id: str,
    user: CurrentUser = Depends(require_parent_or_admin),
    session: AsyncSession = Depends(get_db_session),
) -> schemas.ReservationResponse:
    reservation = await reservations.get_reservation(session, reservation_id)
    if not user.is_admin and reservation.parent_id != user.id:
        raise Forbidden(detail="Reservation belongs to another parent")
    return schemas.ReservationResponse.model_validate(reservation)


@router.delete("/reservations/{reservation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_reservation(
    reservation_id: str,
    user: CurrentUser = Depends(require_parent_or_admin),
    session: AsyncSession = Depends(get_db_session),
) -> Response:
    await reservations.cancel_reservation(
        session,
        reservation_id,
        caller_parent_id=None if user.is_admin else user.id,
    )
    return Response(status_code=status.HTTP_204_NO_CONTENT)
