"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal
from datetime import date
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field

from ..billing import GenerationReport, OverdueReport, PaymentResult
from ..financing import Financing
from ..quotas import QuotaRecord


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


# Financing schemas
class CreateFinancingRequest(BaseModel):
    total_amount: str = Field(..., description="Decimal amount as string")
    payment_frequency: str = Field(..., description="weekly, biweekly or monthly")
    start_date: date
    financing_months: Optional[int] = None
    total_quotas: Optional[int] = Field(None, description="Overrides the derived quota count")
    late_fee_percentage: Optional[str] = None  # Decimal as string, percent per day
    max_late_quotas_allowed: Optional[int] = None
    currency: Optional[str] = None
    vehicle_id: Optional[str] = None
    client_id: Optional[str] = None
    notes: Optional[str] = None


class UpdateStatusRequest(BaseModel):
    status: str = Field(..., description="active, inactive, delinquent or completed")


class PaymentRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    payment_date: date


class VerifyPaymentRequest(BaseModel):
    verified_by: Optional[str] = None
    confirmation_number: Optional[str] = Field(None, description="Bank confirmation or transfer reference")
    comments: Optional[str] = None


# Batch schemas
class GenerationRequest(BaseModel):
    simulation_date: date
    period: Optional[int] = Field(None, description="Quota number; derived from the date when omitted")


class OverdueRequest(BaseModel):
    reference_date: date
    mode: str = "normal"


class FinancingResponse(BaseModel):
    id: str
    financing_number: str
    status: str
    total_amount: str
    currency: str
    financing_months: int
    payment_frequency: str
    start_date: str
    total_quotas: int
    quota_amount: str
    late_fee_percentage: str
    max_late_quotas_allowed: int
    paid_quotas: int
    pending_quotas: int
    progress_percentage: int
    current_balance: str
    total_paid: str
    total_late_fees: str
    carried_credit: str
    next_due_date: Optional[str] = None
    last_quota_number: int
    version: int
    vehicle_id: Optional[str] = None
    client_id: Optional[str] = None
    notes: Optional[str] = None

    @classmethod
    def from_financing(cls, financing: Financing) -> 'FinancingResponse':
        return cls(
            id=financing.id,
            financing_number=financing.financing_number,
            status=financing.status.value,
            total_amount=str(financing.total_amount),
            currency=financing.currency.code,
            financing_months=financing.financing_months,
            payment_frequency=financing.payment_frequency.value,
            start_date=financing.start_date.isoformat(),
            total_quotas=financing.total_quotas,
            quota_amount=str(financing.quota_amount),
            late_fee_percentage=str(financing.late_fee_percentage),
            max_late_quotas_allowed=financing.max_late_quotas_allowed,
            paid_quotas=financing.paid_quotas,
            pending_quotas=financing.pending_quotas,
            progress_percentage=financing.progress_percentage,
            current_balance=str(financing.current_balance),
            total_paid=str(financing.total_paid),
            total_late_fees=str(financing.total_late_fees),
            carried_credit=str(financing.carried_credit),
            next_due_date=_iso(financing.next_due_date),
            last_quota_number=financing.last_quota_number,
            version=financing.version,
            vehicle_id=financing.vehicle_id,
            client_id=financing.client_id,
            notes=financing.notes
        )


class QuotaResponse(BaseModel):
    id: str
    financing_id: str
    quota_number: int
    status: str
    amount: str
    due_date: str
    remaining_balance: str
    late_fee_amount: str
    days_late: int
    quotas_covered: int
    carried_credit: str
    amount_paid: str
    payment_date: Optional[str] = None
    receipt_number: Optional[str] = None
    is_simulated: bool
    confirmation_number: Optional[str] = None
    verified_in_bank: bool = False
    verified_by: Optional[str] = None
    verified_at: Optional[str] = None
    comments: Optional[str] = None

    @classmethod
    def from_record(cls, record: QuotaRecord) -> 'QuotaResponse':
        return cls(
            id=record.id,
            financing_id=record.financing_id,
            quota_number=record.quota_number,
            status=record.status.value,
            amount=str(record.amount),
            due_date=record.due_date.isoformat(),
            remaining_balance=str(record.remaining_balance),
            late_fee_amount=str(record.late_fee_amount),
            days_late=record.days_late,
            quotas_covered=record.quotas_covered,
            carried_credit=str(record.carried_credit),
            amount_paid=str(record.amount_paid),
            payment_date=_iso(record.payment_date),
            receipt_number=record.receipt_number,
            is_simulated=record.is_simulated,
            confirmation_number=record.confirmation_number,
            verified_in_bank=record.verified_in_bank,
            verified_by=record.verified_by,
            verified_at=_iso(record.verified_at),
            comments=record.comments
        )


def payment_result_to_dict(result: PaymentResult) -> Dict[str, Any]:
    return {
        "financing_id": result.financing_id,
        "quota_number": result.quota_number,
        "receipt_number": result.receipt_number,
        "amount": str(result.amount),
        "late_fee": str(result.late_fee),
        "days_late": result.days_late,
        "quotas_covered": result.quotas_covered,
        "new_credit": str(result.new_credit),
        "quota_status": result.quota_status.value,
        "financing_status": result.financing_status.value,
        "paid_quotas": result.paid_quotas,
        "current_balance": str(result.current_balance),
    }


def generation_report_to_dict(report: GenerationReport) -> Dict[str, Any]:
    return {
        "simulation_date": report.simulation_date.isoformat(),
        "processed": report.processed,
        "created": report.created,
        "covered": report.covered,
        "skipped": report.skipped,
        "failed": report.failed,
        "items": [
            {
                "financing_id": item.financing_id,
                "outcome": item.outcome,
                "quota_number": item.quota_number,
                "quota_id": item.quota_id,
                "credit_applied": str(item.credit_applied),
                "error": item.error,
            }
            for item in report.items
        ],
    }


def overdue_report_to_dict(report: OverdueReport) -> Dict[str, Any]:
    items: List[Dict[str, Any]] = [
        {
            "financing_id": item.financing_id,
            "quota_id": item.quota_id,
            "quota_number": item.quota_number,
            "days_late": item.days_late,
            "late_fee": str(item.late_fee),
        }
        for item in report.items
    ]
    return {
        "reference_date": report.reference_date.isoformat(),
        "mode": report.mode,
        "dry_run": report.dry_run,
        "processed": report.processed,
        "skipped": report.skipped,
        "failed": report.failed,
        "total_penalty": str(report.total_penalty),
        "items": items,
    }


def money_dict(values: Dict[str, Any]) -> Dict[str, Any]:
    """Render Decimal values of a flat or nested mapping as strings"""
    result = {}
    for key, value in values.items():
        if isinstance(value, Decimal):
            result[key] = str(value)
        elif isinstance(value, dict):
            result[key] = money_dict(value)
        else:
            result[key] = value
    return result
