"""
Money Precision Module

Single-currency Decimal helpers for the billing ledger. Amounts are carried as
Decimal and rounded half-up to the currency's minor unit. NEVER uses float for
monetary values.
"""

from decimal import Decimal, ROUND_HALF_UP, InvalidOperation, getcontext
from enum import Enum
from typing import Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28

ZERO = Decimal('0')

AmountLike = Union[Decimal, int, str]


class Currency(Enum):
    """ISO 4217 codes accepted for financing contracts, with precision"""
    USD = ("USD", 2)
    EUR = ("EUR", 2)
    MXN = ("MXN", 2)
    COP = ("COP", 2)

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def quantum(self) -> Decimal:
        return Decimal('0.1') ** self.precision


def to_decimal(value: AmountLike) -> Decimal:
    """
    Convert an int/str/Decimal to Decimal without going through float.

    Raises:
        ValueError: If the value is a float or cannot be parsed
    """
    if isinstance(value, Decimal):
        return value
    if isinstance(value, float):
        # Floats lose cents; callers must pass strings or Decimals
        raise ValueError(f"Refusing float amount {value!r}; pass a string or Decimal")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Cannot convert {value!r} to Decimal")


def round_money(value: AmountLike, currency: Currency = Currency.USD) -> Decimal:
    """Round to the currency's minor unit (half-up)"""
    return to_decimal(value).quantize(currency.quantum, rounding=ROUND_HALF_UP)


def decimal_from_string(value: str) -> Decimal:
    """
    Parse user-entered amounts such as "$1,234.50" or "1234,5".

    Raises:
        ValueError: If string cannot be converted to valid Decimal
    """
    if not value or not isinstance(value, str):
        raise ValueError("Value must be a non-empty string")

    clean_value = re.sub(r'[^\d.,\-+]', '', value.strip())

    if ',' in clean_value and '.' in clean_value:
        # Both present: comma is the thousands separator
        clean_value = clean_value.replace(',', '')
    elif clean_value.count(',') == 1:
        whole, fraction = clean_value.split(',')
        if len(fraction) <= 2:
            clean_value = f"{whole}.{fraction}"
        else:
            clean_value = whole + fraction

    try:
        return Decimal(clean_value)
    except InvalidOperation:
        raise ValueError(f"Cannot convert '{value}' to Decimal")


def format_money(value: AmountLike, currency: Currency = Currency.USD) -> str:
    """Format for display, e.g. 'USD 1,234.50'"""
    amount = round_money(value, currency)
    return f"{currency.code} {amount:,.{currency.precision}f}"
