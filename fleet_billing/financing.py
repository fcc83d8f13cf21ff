"""
Financing Module

The financing contract record: terms, the schedule derived from them at
signing, and the progress aggregates the billing orchestrator maintains.
"""

from decimal import Decimal
from datetime import datetime, date
from dataclasses import dataclass
from typing import Any, Dict, Optional
from enum import Enum

from .currency import ZERO, Currency, round_money
from .schedule import PaymentFrequency, quota_face_amount
from .storage import StorageRecord


class FinancingStatus(Enum):
    """Financing lifecycle states"""
    ACTIVE = "active"            # Schedule running, quotas generated weekly
    INACTIVE = "inactive"        # Closed by an admin, no generation
    DELINQUENT = "delinquent"    # Too many overdue quotas
    COMPLETED = "completed"      # Balance settled


# Fields that hold Decimal / date / enum values in storage documents
_MONEY_FIELDS = ('total_amount', 'quota_amount', 'late_fee_percentage', 'current_balance',
                 'total_paid', 'total_late_fees', 'carried_credit')
_DATE_FIELDS = ('start_date', 'next_due_date')


@dataclass
class Financing(StorageRecord):
    """Installment financing contract for one vehicle and client"""
    financing_number: str
    total_amount: Decimal
    financing_months: int
    payment_frequency: PaymentFrequency
    start_date: date
    total_quotas: int
    quota_amount: Decimal
    late_fee_percentage: Decimal
    max_late_quotas_allowed: int = 3
    currency: Currency = Currency.USD

    # Progress aggregates
    paid_quotas: int = 0
    current_balance: Optional[Decimal] = None
    total_paid: Decimal = ZERO
    total_late_fees: Decimal = ZERO
    carried_credit: Decimal = ZERO
    status: FinancingStatus = FinancingStatus.ACTIVE

    # Scheduling cursor
    next_due_date: Optional[date] = None
    last_quota_number: int = 0

    # Optimistic concurrency token, bumped on every financing write
    version: int = 0

    # Opaque references to external collaborators
    vehicle_id: Optional[str] = None
    client_id: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self):
        if self.current_balance is None:
            self.current_balance = self.total_amount

    @property
    def is_active(self) -> bool:
        return self.status == FinancingStatus.ACTIVE

    @property
    def is_completed(self) -> bool:
        return self.status == FinancingStatus.COMPLETED

    def quota_face(self, quota_number: int) -> Decimal:
        """Face amount of one quota; the last one carries the rounding remainder"""
        return quota_face_amount(self.total_amount, self.total_quotas, quota_number, self.currency)

    @property
    def pending_quotas(self) -> int:
        return max(0, self.total_quotas - self.paid_quotas)

    @property
    def progress_percentage(self) -> int:
        if self.total_quotas <= 0:
            return 0
        return round(self.paid_quotas * 100 / self.total_quotas)

    def outstanding_balance(self, total_paid: Optional[Decimal] = None,
                            total_late_fees: Optional[Decimal] = None) -> Decimal:
        """Amount still owed: principal plus accrued fees minus payments, floor 0"""
        paid = self.total_paid if total_paid is None else total_paid
        fees = self.total_late_fees if total_late_fees is None else total_late_fees
        return max(ZERO, round_money(self.total_amount + fees - paid, self.currency))

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['payment_frequency'] = self.payment_frequency.value
        result['status'] = self.status.value
        result['currency'] = self.currency.code
        for name in _MONEY_FIELDS:
            result[name] = str(getattr(self, name))
        for name in _DATE_FIELDS:
            value = getattr(self, name)
            result[name] = value.isoformat() if value else None
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Financing':
        data = dict(data)
        data['created_at'] = datetime.fromisoformat(data['created_at'])
        data['updated_at'] = datetime.fromisoformat(data['updated_at'])
        data['payment_frequency'] = PaymentFrequency(data['payment_frequency'])
        data['status'] = FinancingStatus(data['status'])
        data['currency'] = Currency[data.get('currency', 'USD')]
        for name in _MONEY_FIELDS:
            if data.get(name) is not None:
                data[name] = Decimal(data[name])
        for name in _DATE_FIELDS:
            if data.get(name):
                data[name] = date.fromisoformat(data[name])
        return cls(**data)
