"""
Payment Allocator Module

Splits a payment (plus previously carried credit) into whole quotas covered
and a new carried credit. A payment smaller than a quota is not an error: it
becomes credit held against future quotas.
"""

from decimal import Decimal, ROUND_FLOOR
from dataclasses import dataclass

from .currency import ZERO, AmountLike, to_decimal
from .exceptions import ValidationError


@dataclass(frozen=True)
class PaymentAllocation:
    """Result of allocating a payment pool across quotas"""
    quotas_covered: int
    new_credit: Decimal
    total_applied: Decimal  # The payment itself; the pool may also hold old credit

    @property
    def is_partial(self) -> bool:
        return self.quotas_covered == 0

    @property
    def is_advance(self) -> bool:
        return self.quotas_covered > 1


def allocate(payment_amount: AmountLike, quota_amount: AmountLike,
             carried_credit: AmountLike = ZERO) -> PaymentAllocation:
    """
    Allocate ``payment_amount + carried_credit`` over quotas of ``quota_amount``.

    Conservation: quotas_covered * quota_amount + new_credit equals
    payment_amount + carried_credit exactly.

    Raises:
        ValidationError: If the payment or the carried credit is negative
    """
    payment = to_decimal(payment_amount)
    quota = to_decimal(quota_amount)
    credit = to_decimal(carried_credit)

    if payment < ZERO:
        raise ValidationError(f"Payment amount cannot be negative: {payment}")
    if credit < ZERO:
        raise ValidationError(f"Carried credit cannot be negative: {credit}")

    pool = payment + credit
    if quota <= ZERO:
        return PaymentAllocation(quotas_covered=0, new_credit=pool, total_applied=payment)

    covered = int((pool / quota).to_integral_value(rounding=ROUND_FLOOR))
    return PaymentAllocation(
        quotas_covered=covered,
        new_credit=pool - quota * covered,
        total_applied=payment
    )
