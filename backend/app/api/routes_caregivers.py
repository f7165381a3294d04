from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.identity import CurrentUser, require_caregiver
from app.domain.availability import schemas
from app.domain.caregivers import service as caregiver_service
from app.infra.db import get_db_session

router = APIRouter(prefix="/v1/caregivers", tags=["caregivers"])


@router.put("/me/profile", response_model=schemas.CaregiverProfileResponse)
async def upsert_my_profile(
    payload: schemas.CaregiverProfileUpdate,
    user: CurrentUser = Depends(require_caregiver),
    session: AsyncSession = Depends(get_db_session),
) -> schemas.CaregiverProfileResponse:
    caregiver = await caregiver_service.upsert_caregiver_profile(
        session,
        user.id,
        hourly_rate_cents=payload.hourly_rate_cents,
        daily_capacity=payload.daily_capacity,
        dynamic_pricing_enabled=payload.dynamic_pricing_enabled,
    )
    return schemas.CaregiverProfileResponse.model_validate(caregiver)
