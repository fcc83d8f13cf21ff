"""
Test suite for currency module

All monetary calculations must use Decimal precision.
"""

import pytest
from decimal import Decimal

from fleet_billing.currency import (
    Currency, decimal_from_string, format_money, round_money, to_decimal
)


class TestToDecimal:

    def test_accepts_strings_ints_and_decimals(self):
        assert to_decimal("211.54") == Decimal("211.54")
        assert to_decimal(250) == Decimal("250")
        assert to_decimal(Decimal("0.01")) == Decimal("0.01")

    def test_refuses_floats(self):
        with pytest.raises(ValueError):
            to_decimal(0.1)

    def test_garbage_rejected(self):
        with pytest.raises(ValueError):
            to_decimal("twelve")


class TestRounding:

    def test_half_up_to_cents(self):
        assert round_money(Decimal("42.305")) == Decimal("42.31")
        assert round_money(Decimal("42.304")) == Decimal("42.30")
        assert str(round_money(Decimal("250"))) == "250.00"

    def test_currency_precision(self):
        assert Currency.MXN.code == "MXN"
        assert Currency.USD.quantum == Decimal("0.01")


class TestParsing:

    def test_decimal_from_string(self):
        assert decimal_from_string("$1,234.50") == Decimal("1234.50")
        assert decimal_from_string("1234,5") == Decimal("1234.5")
        assert decimal_from_string("1,234") == Decimal("1234")

    def test_decimal_from_string_invalid(self):
        with pytest.raises(ValueError):
            decimal_from_string("")
        with pytest.raises(ValueError):
            decimal_from_string("abc")

    def test_format_money(self):
        assert format_money(Decimal("49288.46")) == "USD 49,288.46"
        assert format_money(Decimal("5"), Currency.MXN) == "MXN 5.00"
