"""
Billing cycle endpoints: simulated passes and portfolio summary
"""

from datetime import date
from fastapi import APIRouter, Depends

from .deps import BillingSystem, get_billing_system
from .errors import to_http_error
from .schemas import (
    GenerationRequest, OverdueRequest, generation_report_to_dict, money_dict,
    overdue_report_to_dict
)
from ..exceptions import BillingError


router = APIRouter()


@router.post("/simulate-generation")
async def simulate_generation(
    request: GenerationRequest,
    system: BillingSystem = Depends(get_billing_system)
):
    """Run the generation pass for a simulated date"""
    try:
        report = system.orchestrator.run_generation_pass(request.simulation_date, request.period)
    except BillingError as e:
        raise to_http_error(e)
    return generation_report_to_dict(report)


@router.post("/simulate-overdue")
async def simulate_overdue(
    request: OverdueRequest,
    system: BillingSystem = Depends(get_billing_system)
):
    """Run the overdue pass for a simulated date"""
    try:
        report = system.orchestrator.run_overdue_pass(request.reference_date, mode=request.mode)
    except BillingError as e:
        raise to_http_error(e)
    return overdue_report_to_dict(report)


@router.get("/simulate-overdue")
async def preview_overdue(
    reference_date: date,
    mode: str = "normal",
    system: BillingSystem = Depends(get_billing_system)
):
    """Preview the overdue pass without writing"""
    try:
        report = system.orchestrator.run_overdue_pass(reference_date, mode=mode, dry_run=True)
    except BillingError as e:
        raise to_http_error(e)
    return overdue_report_to_dict(report)


@router.get("/summary")
async def get_summary(system: BillingSystem = Depends(get_billing_system)):
    """Portfolio totals"""
    return money_dict(system.orchestrator.summary())
