"""
Test suite for the late-fee calculator
"""

import pytest
from decimal import Decimal
from datetime import date

from fleet_billing.exceptions import ValidationError
from fleet_billing.late_fees import days_late, late_fee, overdue_days_late


class TestDaysLate:

    def test_days_after_due_date(self):
        assert days_late(date(2026, 2, 1), date(2026, 2, 3)) == 2

    def test_on_or_before_due_date_is_zero(self):
        assert days_late(date(2026, 2, 1), date(2026, 2, 1)) == 0
        assert days_late(date(2026, 2, 1), date(2026, 1, 20)) == 0

    def test_overdue_quota_is_at_least_one_day_late(self):
        assert overdue_days_late(date(2026, 2, 1), date(2026, 2, 1)) == 1
        assert overdue_days_late(date(2026, 2, 1), date(2026, 2, 5)) == 4


class TestLateFee:
    """Test the linear daily penalty"""

    def test_two_days_at_ten_percent(self):
        assert late_fee(Decimal("225"), 2, Decimal("10")) == Decimal("45.00")

    def test_zero_days_is_free(self):
        assert late_fee(Decimal("225"), 0, Decimal("10")) == Decimal("0")

    def test_nothing_pending_is_free(self):
        assert late_fee(Decimal("0"), 5, Decimal("10")) == Decimal("0")

    def test_zero_percentage_is_free(self):
        assert late_fee(Decimal("225"), 5, Decimal("0")) == Decimal("0")

    def test_rounds_half_up_to_cents(self):
        # 211.54 * 0.10 * 2 = 42.308
        assert late_fee(Decimal("211.54"), 2, Decimal("10")) == Decimal("42.31")

    def test_fee_is_linear_in_days(self):
        one_day = late_fee(Decimal("200"), 1, Decimal("5"))
        assert late_fee(Decimal("200"), 7, Decimal("5")) == one_day * 7

    def test_negative_percentage_rejected(self):
        with pytest.raises(ValidationError):
            late_fee(Decimal("225"), 2, Decimal("-1"))
