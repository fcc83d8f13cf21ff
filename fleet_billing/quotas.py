"""
Quota Ledger Module

The quota (billing record) and its status state machine: the transition table,
entry into overdue, coverage analysis over advance payments, and the
reconciliation step run when the schedule materializes a new quota number.
Everything here is pure; the orchestrator persists the results.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Set, Tuple
from enum import Enum

from .currency import ZERO, AmountLike, to_decimal
from .exceptions import InvalidQuotaTransition
from .late_fees import days_late, late_fee, overdue_days_late
from .storage import StorageRecord


class QuotaStatus(Enum):
    """Quota lifecycle states"""
    PENDING = "pending"
    OVERDUE = "overdue"
    PARTIALLY_PAID = "partially_paid"
    ADVANCE_PAID = "advance_paid"
    PAID = "paid"


ALLOWED_TRANSITIONS: Dict[QuotaStatus, FrozenSet[QuotaStatus]] = {
    QuotaStatus.PENDING: frozenset({
        QuotaStatus.PAID, QuotaStatus.PARTIALLY_PAID,
        QuotaStatus.ADVANCE_PAID, QuotaStatus.OVERDUE,
    }),
    # overdue -> overdue is the fee refresh on every overdue pass
    QuotaStatus.OVERDUE: frozenset({
        QuotaStatus.OVERDUE, QuotaStatus.PAID,
        QuotaStatus.PARTIALLY_PAID, QuotaStatus.ADVANCE_PAID,
    }),
    QuotaStatus.PARTIALLY_PAID: frozenset({
        QuotaStatus.PARTIALLY_PAID, QuotaStatus.PAID, QuotaStatus.ADVANCE_PAID,
    }),
    QuotaStatus.ADVANCE_PAID: frozenset({
        QuotaStatus.PARTIALLY_PAID, QuotaStatus.PAID,
    }),
    QuotaStatus.PAID: frozenset(),
}

OPEN_STATUSES = (QuotaStatus.PENDING, QuotaStatus.OVERDUE)

_MONEY_FIELDS = ('amount', 'late_fee_amount', 'fees_capitalized', 'remaining_balance',
                 'carried_credit', 'amount_paid')
_DATE_FIELDS = ('due_date', 'payment_date')


@dataclass
class QuotaRecord(StorageRecord):
    """One installment period of a financing"""
    financing_id: str
    quota_number: int
    amount: Decimal
    due_date: date
    status: QuotaStatus = QuotaStatus.PENDING

    # Late fee state
    late_fee_amount: Decimal = ZERO    # Total fee accrued on this quota
    fees_capitalized: Decimal = ZERO   # Part of late_fee_amount already folded into remaining_balance
    days_late: int = 0

    # Partial / advance state
    quotas_covered: int = 1
    remaining_balance: Optional[Decimal] = None
    carried_credit: Decimal = ZERO     # Unapplied credit this record still holds
    counted_quotas: int = 0            # How many quotas this record added to the financing's paid count

    # Payment state
    amount_paid: Decimal = ZERO
    payment_date: Optional[date] = None
    receipt_number: Optional[str] = None
    is_simulated: bool = False

    # Bank verification
    confirmation_number: Optional[str] = None
    verified_in_bank: bool = False
    verified_by: Optional[str] = None
    verified_at: Optional[datetime] = None
    comments: Optional[str] = None

    def __post_init__(self):
        if self.remaining_balance is None:
            self.remaining_balance = self.amount
        if self.quotas_covered < 1:
            raise ValueError("A quota record covers at least one quota")

    @property
    def last_covered_number(self) -> int:
        return self.quota_number + self.quotas_covered - 1

    @property
    def outstanding_fee(self) -> Decimal:
        return self.late_fee_amount - self.fees_capitalized

    @property
    def amount_due(self) -> Decimal:
        """Face remaining plus any fee not yet folded into it"""
        return self.remaining_balance + self.outstanding_fee

    @property
    def is_fully_allocated(self) -> bool:
        return self.status not in OPEN_STATUSES and self.remaining_balance <= ZERO

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['status'] = self.status.value
        for name in _MONEY_FIELDS:
            result[name] = str(getattr(self, name))
        for name in _DATE_FIELDS:
            value = getattr(self, name)
            result[name] = value.isoformat() if value else None
        result['verified_at'] = self.verified_at.isoformat() if self.verified_at else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'QuotaRecord':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['status'] = QuotaStatus(data['status'])
        for name in _MONEY_FIELDS:
            if data.get(name) is not None:
                data[name] = Decimal(data[name])
        for name in _DATE_FIELDS:
            if data.get(name):
                data[name] = date.fromisoformat(data[name])
        if data.get('verified_at'):
            data['verified_at'] = datetime.fromisoformat(data['verified_at'])
        return cls(**data)


def can_transition(current: QuotaStatus, target: QuotaStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(current: QuotaStatus, target: QuotaStatus) -> QuotaStatus:
    """Return target if the move is allowed, else raise InvalidQuotaTransition"""
    if not can_transition(current, target):
        raise InvalidQuotaTransition(current, target)
    return target


def transition(record: QuotaRecord, target: QuotaStatus, **changes) -> QuotaRecord:
    """Copy of ``record`` moved to ``target`` with extra field changes"""
    check_transition(record.status, target)
    return replace(record, status=target, **changes)


def mark_overdue(record: QuotaRecord, reference_date: date,
                 percentage_per_day: AmountLike) -> QuotaRecord:
    """
    Entry to (or refresh of) the overdue state.

    Days late and the fee are recomputed from the static due date, so running
    this twice for the same reference date gives the same record and later
    dates give strictly larger fees.
    """
    if record.due_date > reference_date:
        raise ValueError(
            f"Quota {record.quota_number} is not due until {record.due_date.isoformat()}"
        )
    late_days = overdue_days_late(record.due_date, reference_date)
    fee = late_fee(record.remaining_balance, late_days, percentage_per_day)
    return transition(record, QuotaStatus.OVERDUE, days_late=late_days, late_fee_amount=fee)


def fee_due_on(record: QuotaRecord, payment_date: date,
               percentage_per_day: AmountLike) -> Tuple[Decimal, int]:
    """
    Fee not yet capitalized on ``record`` if paid on ``payment_date``, and
    the days late to record.

    Lateness counts from the due date, or from the last partial payment once
    earlier fees have been folded into the remaining balance.
    """
    if payment_date <= record.due_date:
        return ZERO, 0

    total_days = overdue_days_late(record.due_date, payment_date)
    if record.payment_date and record.payment_date > record.due_date:
        accrual_days = days_late(record.payment_date, payment_date)
    else:
        accrual_days = total_days
    # Fees already folded into the balance never accrue further fees
    base = min(record.remaining_balance, record.amount)
    return late_fee(base, accrual_days, percentage_per_day), total_days


def covered_quota_numbers(records: Iterable[QuotaRecord]) -> Set[int]:
    """Quota numbers already settled by a paid record or an advance range"""
    covered: Set[int] = set()
    for record in records:
        if record.status in OPEN_STATUSES:
            continue
        if record.status == QuotaStatus.PARTIALLY_PAID and record.remaining_balance > ZERO:
            continue
        covered.update(range(record.quota_number, record.last_covered_number + 1))
    return covered


def is_quota_covered(records: Iterable[QuotaRecord], quota_number: int) -> bool:
    return quota_number in covered_quota_numbers(records)


def next_quota_number(records: Iterable[QuotaRecord]) -> int:
    """First quota number not yet settled by a payment or an advance range"""
    covered = covered_quota_numbers(records)
    number = 1
    while number in covered:
        number += 1
    return number


@dataclass(frozen=True)
class QuotaMaterialized:
    """Event: the schedule reached ``quota_number`` for a financing"""
    financing_id: str
    quota_number: int
    quota_amount: Decimal


@dataclass
class Reconciliation:
    """What the ledger must change when a quota number materializes"""
    covered: bool
    remaining_balance: Decimal
    status: QuotaStatus = QuotaStatus.PENDING
    credit_applied: Decimal = ZERO
    covering_record_id: Optional[str] = None
    record_updates: List[Tuple[str, Dict[str, Any]]] = field(default_factory=list)

    @property
    def settled(self) -> bool:
        return not self.covered and self.status == QuotaStatus.PAID


def _resolve_range(record: QuotaRecord) -> QuotaStatus:
    # A fully materialized advance range is paid unless credit is still pending
    return QuotaStatus.PAID if record.carried_credit <= ZERO else QuotaStatus.PARTIALLY_PAID


def reconcile(event: QuotaMaterialized, records: Iterable[QuotaRecord],
              available_credit: AmountLike = ZERO) -> Reconciliation:
    """
    Reconcile advance payments against a newly materialized quota number.

    1. Range coverage: if an advance record's range already includes the
       number, no quota needs creating; once the range's last number is
       reached the advance record is relabeled (paid, or partially_paid while
       it still holds credit).
    2. Credit: otherwise carried credit from earlier advance records reduces
       the new quota's remaining balance, drawn down oldest record first and
       never beyond ``available_credit`` (the financing's credit pool).

    Args:
        event: The materialized quota number
        records: Existing quota records of the financing (not the new quota)
        available_credit: The financing's carried credit

    Returns:
        Reconciliation describing the new quota and updates to existing records
    """
    records = [r for r in records if r.quota_number != event.quota_number]
    amount = to_decimal(event.quota_amount)
    result = Reconciliation(covered=False, remaining_balance=amount)

    for record in records:
        if record.quotas_covered < 2 or record.remaining_balance > ZERO:
            continue
        if record.quota_number < event.quota_number <= record.last_covered_number:
            result.covered = True
            result.covering_record_id = record.id
            result.remaining_balance = ZERO
        if (record.status == QuotaStatus.ADVANCE_PAID
                and record.last_covered_number <= event.quota_number):
            target = check_transition(record.status, _resolve_range(record))
            result.record_updates.append((record.id, {'status': target}))

    if result.covered:
        return result

    pool = to_decimal(available_credit)
    sources = sorted(
        (r for r in records
         if r.carried_credit > ZERO and r.remaining_balance <= ZERO
         and r.last_covered_number < event.quota_number),
        key=lambda r: r.quota_number
    )
    pending_updates = dict(result.record_updates)
    remaining = amount
    for source in sources:
        if remaining <= ZERO or pool <= ZERO:
            break
        applied = min(source.carried_credit, remaining, pool)
        remaining -= applied
        pool -= applied
        result.credit_applied += applied
        left = source.carried_credit - applied
        target = QuotaStatus.PAID if left <= ZERO else QuotaStatus.PARTIALLY_PAID
        pending_updates[source.id] = {
            'status': check_transition(source.status, target),
            'carried_credit': left,
        }

    result.record_updates = list(pending_updates.items())
    result.remaining_balance = remaining
    if result.credit_applied > ZERO:
        result.status = QuotaStatus.PAID if remaining <= ZERO else QuotaStatus.PARTIALLY_PAID
    return result
