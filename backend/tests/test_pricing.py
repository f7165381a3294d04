from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from app.domain.availability import pricing
from app.domain.errors import InvalidRange

START = datetime(2030, 6, 3, 9, 0, tzinfo=timezone.utc)


def test_quote_takes_fee_out_of_subtotal():
    quote = pricing.quote_booking(START, START + timedelta(hours=3), 2000, commission_rate=0.15)

    assert quote.total_hours == Decimal("3.00")
    assert quote.subtotal_cents == 6000
    assert quote.total_amount_cents == 6000
    assert quote.platform_fee_cents == 900
    assert quote.caregiver_payout_cents == 5100


def test_quote_rounds_half_up():
    quote = pricing.quote_booking(START, START + timedelta(minutes=90), 1001, commission_rate=0.15)

    # 1.5h * 1001 = 1501.5 -> 1502; 1502 * 0.15 = 225.3 -> 225
    assert quote.subtotal_cents == 1502
    assert quote.platform_fee_cents == 225
    assert quote.caregiver_payout_cents == 1277


def test_quote_rejects_empty_window():
    with pytest.raises(InvalidRange):
        pricing.quote_booking(START, START, 2000)


def test_quote_from_charge_uses_gateway_fee():
    quote = pricing.quote_from_charge(START, START + timedelta(hours=2), 5000, platform_fee_cents=700)

    assert quote.total_amount_cents == 5000
    assert quote.platform_fee_cents == 700
    assert quote.caregiver_payout_cents == 4300
    assert quote.hourly_rate_cents == 2500


def test_quote_from_charge_derives_fee_when_missing():
    quote = pricing.quote_from_charge(START, START + timedelta(hours=2), 5000, commission_rate=0.1)

    assert quote.platform_fee_cents == 500
    assert quote.caregiver_payout_cents == 4500


def test_quote_from_charge_rejects_fee_above_amount():
    with pytest.raises(ValueError):
        pricing.quote_from_charge(START, START + timedelta(hours=1), 1000, platform_fee_cents=1001)


@pytest.mark.parametrize(
    ("occupancy", "expected"),
    [(0, 2000), (1, 2000), (2, 2200), (3, 2400), (4, 2600), (5, 2600)],
)
def test_dynamic_rate_follows_utilization_tiers(occupancy, expected):
    tiers = [(0.8, 1.3), (0.6, 1.2), (0.4, 1.1)]
    assert pricing.dynamic_rate_cents(2000, occupancy, 5, tiers) == expected


def test_dynamic_rate_ignores_zero_capacity():
    assert pricing.dynamic_rate_cents(2000, 0, 0) == 2000
