"""
Schedule Calculator Module

Pure functions turning financing terms into a quota count, a quota amount and
due dates. Months are approximated with fixed day intervals (a 30-day month),
not calendar arithmetic.
"""

from decimal import Decimal, ROUND_HALF_UP
from datetime import date, timedelta
from dataclasses import dataclass
from enum import Enum
from typing import Union

from .currency import ZERO, AmountLike, Currency, round_money, to_decimal
from .exceptions import ValidationError


WEEKS_PER_MONTH = Decimal('4.33')


class PaymentFrequency(Enum):
    """How often a quota falls due"""
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"

    @classmethod
    def parse(cls, value: Union['PaymentFrequency', str]) -> 'PaymentFrequency':
        """Accept a member or its value; anything else is a validation error"""
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise ValidationError(f"Unknown payment frequency: {value!r}")


_DAYS_INTERVAL = {
    PaymentFrequency.WEEKLY: 7,
    PaymentFrequency.BIWEEKLY: 15,
    PaymentFrequency.MONTHLY: 30,
}


@dataclass(frozen=True)
class ScheduleSummary:
    """Preview of a financing schedule before the contract is signed"""
    total_quotas: int
    quota_amount: Decimal
    days_interval: int
    end_date: date


def total_quotas(months: int, frequency: Union[PaymentFrequency, str]) -> int:
    """
    Number of quotas for a term.

    Weekly terms use 4.33 weeks per month, rounded half-up, so 54 months is
    234 weekly quotas.

    Raises:
        ValidationError: If months is not positive or the frequency is unknown
    """
    frequency = PaymentFrequency.parse(frequency)
    if isinstance(months, bool) or not isinstance(months, int) or months <= 0:
        raise ValidationError(f"Financing term must be a positive number of months, got {months!r}")

    if frequency == PaymentFrequency.WEEKLY:
        weeks = Decimal(months) * WEEKS_PER_MONTH
        return int(weeks.quantize(Decimal('1'), rounding=ROUND_HALF_UP))
    elif frequency == PaymentFrequency.BIWEEKLY:
        return months * 2
    return months


def quota_amount(total_amount: AmountLike, quota_count: int,
                 currency: Currency = Currency.USD) -> Decimal:
    """
    Face amount of each quota. Zero quotas is a degenerate schedule and
    yields zero rather than an error.

    Raises:
        ValidationError: If the total amount is negative
    """
    total = to_decimal(total_amount)
    if total < ZERO:
        raise ValidationError(f"Total amount cannot be negative: {total}")
    if quota_count <= 0:
        return round_money(ZERO, currency)
    return round_money(total / Decimal(quota_count), currency)


def quota_face_amount(total_amount: AmountLike, quota_count: int, quota_index: int,
                      currency: Currency = Currency.USD) -> Decimal:
    """
    Face amount of the 1-based ``quota_index``. The last quota absorbs the
    rounding remainder so the faces always sum to the total.

    Example: 1000.00 over 3 quotas -> 333.33, 333.33, 333.34
    """
    regular = quota_amount(total_amount, quota_count, currency)
    if quota_count <= 0 or quota_index != quota_count:
        return regular
    return round_money(to_decimal(total_amount) - regular * (quota_count - 1), currency)


def days_interval(frequency: Union[PaymentFrequency, str]) -> int:
    """Days between consecutive due dates"""
    return _DAYS_INTERVAL[PaymentFrequency.parse(frequency)]


def next_due_date(start_date: date, frequency: Union[PaymentFrequency, str],
                  quota_index: int = 1) -> date:
    """Due date of the 1-based quota_index (quota 1 is one interval after start)"""
    if quota_index < 0:
        raise ValidationError(f"Quota index cannot be negative: {quota_index}")
    return start_date + timedelta(days=days_interval(frequency) * quota_index)


def financing_summary(total_amount: AmountLike, months: int,
                      frequency: Union[PaymentFrequency, str],
                      start_date: date,
                      currency: Currency = Currency.USD) -> ScheduleSummary:
    """Derive the full schedule preview for a prospective financing"""
    count = total_quotas(months, frequency)
    interval = days_interval(frequency)
    return ScheduleSummary(
        total_quotas=count,
        quota_amount=quota_amount(total_amount, count, currency),
        days_interval=interval,
        end_date=start_date + timedelta(days=count * interval)
    )
