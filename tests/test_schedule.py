"""
Test suite for the schedule calculator

Quota counts per frequency, quota amounts with half-up rounding, and
fixed-interval due dates.
"""

import pytest
from decimal import Decimal
from datetime import date, timedelta

from fleet_billing.exceptions import ValidationError
from fleet_billing.schedule import (
    PaymentFrequency, days_interval, financing_summary, next_due_date,
    quota_amount, quota_face_amount, total_quotas
)


class TestTotalQuotas:
    """Test quota counts for a financing term"""

    def test_54_months_per_frequency(self):
        assert total_quotas(54, PaymentFrequency.WEEKLY) == 234
        assert total_quotas(54, PaymentFrequency.BIWEEKLY) == 108
        assert total_quotas(54, PaymentFrequency.MONTHLY) == 54

    def test_weekly_rounds_half_up(self):
        # 12 * 4.33 = 51.96
        assert total_quotas(12, "weekly") == 52
        # 1 * 4.33 = 4.33
        assert total_quotas(1, "weekly") == 4

    def test_frequency_accepts_string_values(self):
        assert total_quotas(10, "biweekly") == 20

    def test_unknown_frequency_rejected(self):
        with pytest.raises(ValidationError):
            total_quotas(54, "daily")

    @pytest.mark.parametrize("months", [0, -3])
    def test_non_positive_months_rejected(self, months):
        with pytest.raises(ValidationError):
            total_quotas(months, PaymentFrequency.MONTHLY)

    def test_non_integer_months_rejected(self):
        with pytest.raises(ValidationError):
            total_quotas(True, PaymentFrequency.MONTHLY)
        with pytest.raises(ValidationError):
            total_quotas("54", PaymentFrequency.MONTHLY)


class TestQuotaAmount:
    """Test per-quota face amount"""

    def test_weekly_54_month_amount(self):
        assert quota_amount(Decimal("49500"), 234) == Decimal("211.54")

    def test_zero_quotas_yields_zero(self):
        assert quota_amount(Decimal("49500"), 0) == Decimal("0.00")
        assert quota_amount("0", 0) == Decimal("0.00")

    def test_exact_division(self):
        assert quota_amount("1000", 4) == Decimal("250.00")

    def test_negative_total_rejected(self):
        with pytest.raises(ValidationError):
            quota_amount(Decimal("-1"), 10)

    def test_float_amount_refused(self):
        with pytest.raises(ValueError):
            quota_amount(49500.0, 234)

    def test_last_quota_absorbs_rounding(self):
        faces = [quota_face_amount(Decimal("1000"), 3, n) for n in (1, 2, 3)]
        assert faces == [Decimal("333.33"), Decimal("333.33"), Decimal("333.34")]
        assert sum(faces) == Decimal("1000")

    def test_last_quota_can_be_smaller(self):
        faces = [quota_face_amount(Decimal("2"), 3, n) for n in (1, 2, 3)]
        assert faces == [Decimal("0.67"), Decimal("0.67"), Decimal("0.66")]

    def test_weekly_54_month_faces_sum_to_total(self):
        regular = quota_face_amount(Decimal("49500"), 234, 1)
        last = quota_face_amount(Decimal("49500"), 234, 234)
        assert regular == Decimal("211.54")
        assert regular * 233 + last == Decimal("49500")


class TestDueDates:
    """Test fixed-interval due dates"""

    def setup_method(self):
        self.start = date(2026, 1, 25)

    def test_intervals(self):
        assert days_interval(PaymentFrequency.WEEKLY) == 7
        assert days_interval(PaymentFrequency.BIWEEKLY) == 15
        assert days_interval(PaymentFrequency.MONTHLY) == 30

    def test_first_weekly_quota(self):
        assert next_due_date(self.start, PaymentFrequency.WEEKLY, 1) == date(2026, 2, 1)

    def test_first_biweekly_quota(self):
        assert next_due_date(self.start, PaymentFrequency.BIWEEKLY, 1) == date(2026, 2, 9)

    def test_second_monthly_quota(self):
        # Thirty-day months, not calendar months
        assert next_due_date(self.start, PaymentFrequency.MONTHLY, 2) == date(2026, 3, 26)

    def test_index_zero_is_start(self):
        assert next_due_date(self.start, "weekly", 0) == self.start

    def test_negative_index_rejected(self):
        with pytest.raises(ValidationError):
            next_due_date(self.start, "weekly", -1)


class TestFinancingSummary:
    """Test the schedule preview"""

    def test_summary_for_weekly_term(self):
        start = date(2026, 1, 25)
        summary = financing_summary(Decimal("49500"), 54, "weekly", start)

        assert summary.total_quotas == 234
        assert summary.quota_amount == Decimal("211.54")
        assert summary.days_interval == 7
        assert summary.end_date == start + timedelta(days=234 * 7)

    def test_summary_rejects_bad_terms(self):
        with pytest.raises(ValidationError):
            financing_summary(Decimal("1000"), 0, "monthly", date(2026, 1, 1))
