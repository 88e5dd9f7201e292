"""Tests for mid-cycle proration."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from billing_engine.domain.exceptions import InvalidPeriodError
from billing_engine.services.proration import prorate

START = datetime(2024, 1, 1, tzinfo=timezone.utc)
END = datetime(2024, 1, 31, tzinfo=timezone.utc)
MIDPOINT = datetime(2024, 1, 16, tzinfo=timezone.utc)


class TestProrate:
    def test_upgrade_halfway_charges_half_the_difference(self):
        result = prorate(Decimal("10.00"), Decimal("30.00"), MIDPOINT, START, END)

        assert result.amount == Decimal("10.00")
        assert result.is_upgrade is True
        assert result.unused_credit == Decimal("5.00")
        assert result.new_charge == Decimal("15.00")
        assert result.remaining_ratio == Decimal("0.5")
        assert result.days_remaining == Decimal(15)
        assert result.total_days == Decimal(30)

    def test_downgrade_produces_credit(self):
        result = prorate(Decimal("30.00"), Decimal("10.00"), MIDPOINT, START, END)

        assert result.amount == Decimal("-10.00")
        assert result.is_upgrade is False

    def test_same_price_is_zero(self):
        result = prorate(Decimal("10.00"), Decimal("10.00"), MIDPOINT, START, END)

        assert result.amount == Decimal("0.00")
        assert result.is_zero
        assert result.is_upgrade is False

    @pytest.mark.parametrize(
        "current_date",
        [END, datetime(2024, 2, 10, tzinfo=timezone.utc)],
    )
    def test_no_time_remaining_is_zero(self, current_date):
        result = prorate(Decimal("10.00"), Decimal("30.00"), current_date, START, END)

        assert result.amount == Decimal("0.00")
        assert result.remaining_ratio == 0
        assert result.is_upgrade is True

    def test_change_before_period_start_uses_full_period(self):
        before = datetime(2023, 12, 20, tzinfo=timezone.utc)

        result = prorate(Decimal("10.00"), Decimal("30.00"), before, START, END)

        assert result.amount == Decimal("20.00")
        assert result.remaining_ratio == 1

    @pytest.mark.parametrize("period_end", [START, datetime(2023, 12, 1, tzinfo=timezone.utc)])
    def test_empty_or_inverted_period_is_rejected(self, period_end):
        with pytest.raises(InvalidPeriodError):
            prorate(Decimal("10.00"), Decimal("30.00"), MIDPOINT, START, period_end)

    def test_amount_rounds_half_up_to_cents(self):
        # 0.01 * 0.5 = 0.005, which half-even would round to 0.00
        result = prorate(Decimal("0"), Decimal("0.01"), MIDPOINT, START, END)

        assert result.amount == Decimal("0.01")

    def test_thirds_round_to_nearest_cent(self):
        start = datetime(2024, 3, 1, tzinfo=timezone.utc)
        end = datetime(2024, 3, 4, tzinfo=timezone.utc)
        current = datetime(2024, 3, 3, tzinfo=timezone.utc)

        result = prorate(Decimal("10.00"), Decimal("20.00"), current, start, end)

        assert result.amount == Decimal("3.33")

    def test_float_prices_are_taken_at_face_value(self):
        result = prorate(9.99, 19.99, MIDPOINT, START, END)

        assert result.amount == Decimal("5.00")

    def test_is_deterministic(self):
        first = prorate(Decimal("12.34"), Decimal("56.78"), MIDPOINT, START, END, "annual")
        second = prorate(Decimal("12.34"), Decimal("56.78"), MIDPOINT, START, END, "annual")

        assert first == second
