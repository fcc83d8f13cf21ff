"""
Late-Fee Calculator Module

Linear daily penalty on the unpaid portion of an overdue quota. The fee is a
fixed percentage of the pending amount per day late; it never compounds.
"""

from decimal import Decimal
from datetime import date

from .currency import ZERO, AmountLike, Currency, round_money, to_decimal
from .exceptions import ValidationError


def days_late(due_date: date, reference_date: date) -> int:
    """Whole days elapsed after the due date; 0 on or before it"""
    return max(0, (reference_date - due_date).days)


def overdue_days_late(due_date: date, reference_date: date) -> int:
    """
    Days late for a quota already confirmed overdue. Never below 1, so an
    overdue quota never sits at a zero fee.
    """
    return max(1, days_late(due_date, reference_date))


def late_fee(pending_amount: AmountLike, late_days: int, percentage_per_day: AmountLike,
             currency: Currency = Currency.USD) -> Decimal:
    """
    Penalty for ``late_days`` on ``pending_amount``.

    Example: 225.00 pending, 2 days, 10% per day -> 45.00

    Raises:
        ValidationError: If the percentage is negative
    """
    pending = to_decimal(pending_amount)
    percentage = to_decimal(percentage_per_day)
    if percentage < ZERO:
        raise ValidationError(f"Late fee percentage cannot be negative: {percentage}")

    if pending <= ZERO or late_days <= 0 or percentage == ZERO:
        return round_money(ZERO, currency)

    return round_money(pending * (percentage / Decimal('100')) * Decimal(late_days), currency)
