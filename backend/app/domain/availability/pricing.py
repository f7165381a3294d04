from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from app.domain.errors import InvalidRange
from app.settings import settings

_SECONDS_PER_HOUR = Decimal(3600)


def round_cents(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class BookingQuote:
    """Price breakdown for a booking.

    The parent pays ``total_amount_cents`` (equal to the subtotal); the platform
    fee is taken out of it and the caregiver receives the rest.
    """

    hourly_rate_cents: int
    total_hours: Decimal
    subtotal_cents: int
    platform_fee_cents: int
    total_amount_cents: int
    caregiver_payout_cents: int


def total_hours_between(starts_at: datetime, ends_at: datetime) -> Decimal:
    seconds = Decimal(str((ends_at - starts_at).total_seconds()))
    if seconds <= 0:
        raise InvalidRange(detail="Booking must end after it starts")
    return seconds / _SECONDS_PER_HOUR


def _resolve_rate(commission_rate: float | None) -> Decimal:
    rate = settings.platform_commission_rate if commission_rate is None else commission_rate
    return Decimal(str(rate))


def quote_booking(
    starts_at: datetime,
    ends_at: datetime,
    hourly_rate_cents: int,
    *,
    commission_rate: float | None = None,
) -> BookingQuote:
    hours = total_hours_between(starts_at, ends_at)
    subtotal = round_cents(hours * Decimal(hourly_rate_cents))
    fee = round_cents(Decimal(subtotal) * _resolve_rate(commission_rate))
    return BookingQuote(
        hourly_rate_cents=hourly_rate_cents,
        total_hours=hours.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
        subtotal_cents=subtotal,
        platform_fee_cents=fee,
        total_amount_cents=subtotal,
        caregiver_payout_cents=subtotal - fee,
    )


def quote_from_charge(
    starts_at: datetime,
    ends_at: datetime,
    amount_cents: int,
    *,
    platform_fee_cents: int | None = None,
    commission_rate: float | None = None,
) -> BookingQuote:
    """Break down an amount the gateway already charged."""
    hours = total_hours_between(starts_at, ends_at)
    if platform_fee_cents is None:
        platform_fee_cents = round_cents(Decimal(amount_cents) * _resolve_rate(commission_rate))
    if platform_fee_cents < 0 or platform_fee_cents > amount_cents:
        raise ValueError("platform fee must be between zero and the charged amount")
    return BookingQuote(
        hourly_rate_cents=round_cents(Decimal(amount_cents) / hours),
        total_hours=hours.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
        subtotal_cents=amount_cents,
        platform_fee_cents=platform_fee_cents,
        total_amount_cents=amount_cents,
        caregiver_payout_cents=amount_cents - platform_fee_cents,
    )


def dynamic_rate_cents(
    base_rate_cents: int,
    occupancy: int,
    total_capacity: int,
    tiers: list[tuple[float, float]] | None = None,
) -> int:
    if total_capacity <= 0:
        return base_rate_cents
    utilization = Decimal(occupancy) / Decimal(total_capacity)
    for threshold, multiplier in tiers if tiers is not None else settings.dynamic_pricing_tiers:
        if utilization >= Decimal(str(threshold)):
            return round_cents(Decimal(base_rate_cents) * Decimal(str(multiplier)))
    return base_rate_cents
