"""Operator endpoints for capacity drift, orphaned bookings and hold sweeps."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.identity import CurrentUser, require_admin
from app.dependencies import get_db_session
from app.domain.availability import reconciler, reservations, slot_store
from app.domain.availability import schemas as availability_schemas
from app.domain.bookings import schemas as booking_schemas
from app.domain.bookings import service as booking_service
from app.domain.errors import DriftDetected

router = APIRouter(prefix="/v1/admin", tags=["admin"])


def _drift_response(drift) -> availability_schemas.SlotDriftResponse:  # noqa: ANN001
    return availability_schemas.SlotDriftResponse(
        slot_id=drift.slot_id,
        caregiver_id=drift.caregiver_id,
        total_capacity=drift.total_capacity,
        stored_occupancy=drift.stored_occupancy,
        stored_available=drift.stored_available,
        actual_occupancy=drift.actual_occupancy,
        expected_available=drift.expected_available,
    )


@router.get("/capacity/drift", response_model=availability_schemas.DriftReportResponse)
async def capacity_drift_report(
    caregiver_id: str | None = Query(default=None),
    _admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
) -> availability_schemas.DriftReportResponse:
    drifted = await reconciler.find_drifted_slots(session, caregiver_id=caregiver_id)
    items = [_drift_response(drift) for drift in drifted]
    return availability_schemas.DriftReportResponse(items=items, total=len(items))


@router.post("/capacity/reconcile", response_model=availability_schemas.ReconcileReportResponse)
async def reconcile_capacity(
    caregiver_id: str | None = Query(default=None),
    _admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
) -> availability_schemas.ReconcileReportResponse:
    report = await reconciler.reconcile_all(session, caregiver_id=caregiver_id)
    return availability_schemas.ReconcileReportResponse.model_validate(report)


@router.post(
    "/capacity/slots/{slot_id}/reconcile",
    response_model=availability_schemas.ReconcileSlotResponse,
)
async def reconcile_slot(
    slot_id: str,
    _admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
) -> availability_schemas.ReconcileSlotResponse:
    result = await reconciler.reconcile_slot(session, slot_id)
    return availability_schemas.ReconcileSlotResponse.model_validate(result)


@router.get(
    "/capacity/slots/{slot_id}/verify",
    response_model=availability_schemas.SlotConsistencyResponse,
)
async def verify_slot(
    slot_id: str,
    _admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
) -> availability_schemas.SlotConsistencyResponse:
    await slot_store.get_slot(session, slot_id)
    try:
        await reconciler.verify_slot(session, slot_id)
    except DriftDetected as exc:
        return availability_schemas.SlotConsistencyResponse(
            slot_id=slot_id, consistent=False, drift=_drift_response(exc.drift)
        )
    return availability_schemas.SlotConsistencyResponse(slot_id=slot_id, consistent=True)


@router.get("/bookings/orphaned", response_model=booking_schemas.OrphanedBookingListResponse)
async def list_orphaned_bookings(
    caregiver_id: str | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    _admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.OrphanedBookingListResponse:
    orphans = await booking_service.find_orphaned_bookings(session, caregiver_id=caregiver_id, limit=limit)
    items = [booking_schemas.OrphanedBookingResponse.model_validate(booking) for booking in orphans]
    return booking_schemas.OrphanedBookingListResponse(items=items, total=len(items))


@router.post("/bookings/orphaned/repair", response_model=booking_schemas.OrphanRepairReportResponse)
async def repair_orphaned_bookings(
    caregiver_id: str | None = Query(default=None),
    limit: int = Query(default=200, ge=1, le=1000),
    _admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.OrphanRepairReportResponse:
    report = await booking_service.repair_all_orphaned_bookings(
        session, caregiver_id=caregiver_id, limit=limit
    )
    return booking_schemas.OrphanRepairReportResponse.model_validate(report)


@router.post("/bookings/{booking_id}/link-slot", response_model=booking_schemas.OrphanRepairResponse)
async def link_orphaned_booking(
    booking_id: str,
    _admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
) -> booking_schemas.OrphanRepairResponse:
    result = await booking_service.reconcile_orphaned_booking(session, booking_id)
    return booking_schemas.OrphanRepairResponse.model_validate(result)


@router.post("/reservations/sweep", response_model=availability_schemas.ReservationSweepResponse)
async def sweep_reservations(
    _admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
) -> availability_schemas.ReservationSweepResponse:
    expired = await reservations.expire_stale_reservations(session)
    return availability_schemas.ReservationSweepResponse(expired=expired)
