from __future__ import annotations

from datetime import datetime

from sqlalchemy import Boolean, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from app.infra.db import Base


class Caregiver(Base):
    """Capacity profile of a caregiver; the id is the Identity Service user id."""

    __tablename__ = "caregivers"

    caregiver_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    hourly_rate_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    daily_capacity: Mapped[int | None] = mapped_column(Integer, nullable=True)
    dynamic_pricing_enabled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="0"
    )
    backfilled: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default="0"
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False
    )
