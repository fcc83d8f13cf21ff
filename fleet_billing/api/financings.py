"""
Financing and quota endpoints
"""

from fastapi import APIRouter, HTTPException, Depends, status

from .deps import BillingSystem, get_billing_system
from .errors import to_http_error
from .schemas import (
    CreateFinancingRequest, FinancingResponse, PaymentRequest, QuotaResponse,
    UpdateStatusRequest, VerifyPaymentRequest, payment_result_to_dict
)
from ..currency import Currency, to_decimal
from ..exceptions import BillingError


router = APIRouter()
quotas_router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_financing(
    request: CreateFinancingRequest,
    system: BillingSystem = Depends(get_billing_system)
):
    """Sign a financing contract and derive its schedule"""
    try:
        financing = system.orchestrator.create_financing(
            total_amount=to_decimal(request.total_amount),
            payment_frequency=request.payment_frequency,
            start_date=request.start_date,
            financing_months=request.financing_months,
            total_quotas=request.total_quotas,
            late_fee_percentage=(to_decimal(request.late_fee_percentage)
                                 if request.late_fee_percentage is not None else None),
            max_late_quotas_allowed=request.max_late_quotas_allowed,
            currency=Currency[request.currency] if request.currency else None,
            vehicle_id=request.vehicle_id,
            client_id=request.client_id,
            notes=request.notes
        )
        return FinancingResponse.from_financing(financing).model_dump()

    except KeyError:
        raise HTTPException(status_code=400, detail=f"Unknown currency: {request.currency}")
    except (BillingError, ValueError) as e:
        raise to_http_error(e)


@router.get("/{financing_id}")
async def get_financing(
    financing_id: str,
    system: BillingSystem = Depends(get_billing_system)
):
    """Get financing details"""
    try:
        financing = system.orchestrator.get_financing(financing_id)
    except BillingError as e:
        raise to_http_error(e)
    return FinancingResponse.from_financing(financing).model_dump()


@router.get("/{financing_id}/quotas")
async def list_quotas(
    financing_id: str,
    system: BillingSystem = Depends(get_billing_system)
):
    """List a financing's quota ledger"""
    try:
        records = system.orchestrator.list_quotas(financing_id)
    except BillingError as e:
        raise to_http_error(e)
    return {
        "financing_id": financing_id,
        "quotas": [QuotaResponse.from_record(r).model_dump() for r in records]
    }


@router.patch("/{financing_id}/status")
async def update_status(
    financing_id: str,
    request: UpdateStatusRequest,
    system: BillingSystem = Depends(get_billing_system)
):
    """Close or reopen a financing"""
    try:
        financing = system.orchestrator.set_financing_status(financing_id, request.status)
    except BillingError as e:
        raise to_http_error(e)
    return FinancingResponse.from_financing(financing).model_dump()


@router.post("/{financing_id}/quotas/{quota_number}/pay")
async def pay_quota(
    financing_id: str,
    quota_number: int,
    request: PaymentRequest,
    system: BillingSystem = Depends(get_billing_system)
):
    """Apply a payment to a quota"""
    try:
        result = system.orchestrator.apply_payment(
            financing_id=financing_id,
            quota_number=quota_number,
            amount=to_decimal(request.amount),
            payment_date=request.payment_date
        )
    except (BillingError, ValueError) as e:
        raise to_http_error(e)
    return payment_result_to_dict(result)


@quotas_router.delete("/{quota_id}")
async def delete_quota(
    quota_id: str,
    system: BillingSystem = Depends(get_billing_system)
):
    """Delete a quota record and reverse its effect on the financing"""
    try:
        financing = system.orchestrator.delete_quota(quota_id)
    except BillingError as e:
        raise to_http_error(e)
    return {
        "deleted": quota_id,
        "financing": FinancingResponse.from_financing(financing).model_dump()
    }


@quotas_router.post("/{quota_id}/verify")
async def verify_payment(
    quota_id: str,
    request: VerifyPaymentRequest,
    system: BillingSystem = Depends(get_billing_system)
):
    """Mark a paid quota as confirmed in the bank statement"""
    try:
        record = system.orchestrator.verify_payment(
            quota_id,
            verified_by=request.verified_by,
            confirmation_number=request.confirmation_number,
            comments=request.comments
        )
    except BillingError as e:
        raise to_http_error(e)
    return QuotaResponse.from_record(record).model_dump()
