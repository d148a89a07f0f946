"""
Loan calculator endpoints
"""

from dataclasses import asdict
from decimal import Decimal
from fastapi import APIRouter

from .schemas import LoanEstimateRequest
from ..amortization import calculate_loan_estimate, calculate_prepayment_amount
from ..storage import to_storage_value


router = APIRouter()


@router.post("/estimate")
async def estimate_loan(request: LoanEstimateRequest):
    """Quote EMI, totals and schedule without creating a loan"""
    estimate = calculate_loan_estimate(
        principal=request.principal,
        monthly_interest_rate=request.monthly_interest_rate,
        loan_duration_months=request.loan_duration_months,
        interest_type=request.interest_type,
        start_date=request.start_date,
        manual_emi=request.manual_emi
    )
    return {"success": True, "data": to_storage_value(asdict(estimate))}


@router.get("/prepayment")
async def prepayment_quote(balance: Decimal, monthly_interest_rate: Decimal, days: int = 30):
    """Amount needed to close a balance today"""
    amount = calculate_prepayment_amount(balance, monthly_interest_rate, days)
    return {"success": True, "data": {"prepayment_amount": str(amount), "days": days}}
