"""
Test suite for the payment allocator
"""

import pytest
from decimal import Decimal

from fleet_billing.allocation import allocate
from fleet_billing.exceptions import ValidationError


class TestAllocate:
    """Test splitting a payment into covered quotas and credit"""

    def test_exact_single_quota(self):
        result = allocate(Decimal("225"), Decimal("225"), Decimal("0"))
        assert result.quotas_covered == 1
        assert result.new_credit == Decimal("0")
        assert not result.is_partial
        assert not result.is_advance

    def test_payment_below_quota_becomes_credit(self):
        result = allocate(Decimal("100"), Decimal("225"), Decimal("0"))
        assert result.quotas_covered == 0
        assert result.new_credit == Decimal("100")
        assert result.is_partial

    def test_carried_credit_joins_the_pool(self):
        result = allocate(Decimal("900"), Decimal("225"), Decimal("125"))
        assert result.quotas_covered == 4
        assert result.new_credit == Decimal("125")
        assert result.total_applied == Decimal("900")
        assert result.is_advance

    def test_conservation(self):
        cases = [
            ("0", "211.54", "0"),
            ("211.54", "211.54", "0.01"),
            ("1000", "211.54", "37.12"),
            ("99.99", "33.33", "0"),
        ]
        for payment, quota, credit in cases:
            result = allocate(Decimal(payment), Decimal(quota), Decimal(credit))
            assert (result.quotas_covered * Decimal(quota) + result.new_credit
                    == Decimal(payment) + Decimal(credit))
            assert Decimal("0") <= result.new_credit < Decimal(quota)

    def test_zero_quota_keeps_everything_as_credit(self):
        result = allocate(Decimal("50"), Decimal("0"), Decimal("10"))
        assert result.quotas_covered == 0
        assert result.new_credit == Decimal("60")

    def test_negative_payment_rejected(self):
        with pytest.raises(ValidationError):
            allocate(Decimal("-1"), Decimal("225"))

    def test_negative_credit_rejected(self):
        with pytest.raises(ValidationError):
            allocate(Decimal("10"), Decimal("225"), Decimal("-5"))
