from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.domain.caregivers.db_models import Caregiver
from app.domain.errors import InvalidRequest

logger = logging.getLogger(__name__)


async def get_caregiver(session: AsyncSession, caregiver_id: str) -> Caregiver | None:
    return await session.get(Caregiver, caregiver_id)


async def upsert_caregiver_profile(
    session: AsyncSession,
    caregiver_id: str,
    *,
    hourly_rate_cents: int | None = None,
    daily_capacity: int | None = None,
    dynamic_pricing_enabled: bool | None = None,
) -> Caregiver:
    if hourly_rate_cents is not None and hourly_rate_cents < 0:
        raise InvalidRequest(detail="hourly_rate_cents must be non-negative")
    if daily_capacity is not None and daily_capacity < 0:
        raise InvalidRequest(detail="daily_capacity must be non-negative")

    caregiver = await session.get(Caregiver, caregiver_id)
    if caregiver is None:
        caregiver = Caregiver(caregiver_id=caregiver_id, dynamic_pricing_enabled=False)
        session.add(caregiver)
    if hourly_rate_cents is not None:
        caregiver.hourly_rate_cents = hourly_rate_cents
    if daily_capacity is not None:
        caregiver.daily_capacity = daily_capacity
    if dynamic_pricing_enabled is not None:
        caregiver.dynamic_pricing_enabled = dynamic_pricing_enabled
    caregiver.backfilled = False
    await session.commit()
    await session.refresh(caregiver)
    return caregiver


async def ensure_caregiver_profile(
    session: AsyncSession,
    caregiver_id: str,
    *,
    reason: str,
    hourly_rate_cents: int | None = None,
    daily_capacity: int | None = None,
) -> Caregiver:
    """Backfill a missing capacity profile as an explicit, logged recovery step.

    Does not commit; the caller's transaction owns the new row.
    """
    caregiver = await session.get(Caregiver, caregiver_id)
    if caregiver is not None:
        return caregiver
    caregiver = Caregiver(
        caregiver_id=caregiver_id,
        hourly_rate_cents=hourly_rate_cents,
        daily_capacity=daily_capacity,
        dynamic_pricing_enabled=False,
        backfilled=True,
    )
    session.add(caregiver)
    await session.flush()
    logger.warning(
        "caregiver_profile_backfilled",
        extra={
            "extra": {
                "caregiver_id": caregiver_id,
                "reason": reason,
                "hourly_rate_cents": hourly_rate_cents,
                "daily_capacity": daily_capacity,
            }
        },
    )
    return caregiver
