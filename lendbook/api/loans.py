"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import get_lending_system
from .schemas import (
    CreateLoanRequest, UpdateLoanRequest, LoanStatusRequest, CancelLoanRequest,
    ForecloseLoanRequest
)
from ..storage import to_storage_value
from ..system import LendingSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Originate a new loan in pending approval"""
    loan = system.loan_manager.create_loan(
        customer_id=request.customer_id,
        principal=request.principal,
        monthly_interest_rate=request.monthly_interest_rate,
        loan_duration_months=request.loan_duration_months,
        interest_type=request.interest_type,
        start_date=request.start_date,
        manual_emi=request.manual_emi,
        notes=request.notes
    )
    return {"success": True, "data": loan.to_dict(), "message": "Loan created successfully"}


@router.get("")
async def list_loans(
    status: Optional[str] = None,
    customer_id: Optional[str] = None,
    search: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    loans = system.loan_manager.list_loans(status=status, customer_id=customer_id, search=search)
    return {"success": True, "count": len(loans), "data": [loan.to_dict() for loan in loans]}


@router.get("/summary")
async def portfolio_summary(system: LendingSystem = Depends(get_lending_system)):
    """Book-level totals"""
    return {"success": True, "data": to_storage_value(system.loan_manager.get_portfolio_summary())}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    loan = system.loan_manager.require_loan(loan_id)
    return {"success": True, "data": loan.to_dict()}


@router.put("/{loan_id}")
async def update_loan(
    loan_id: str,
    request: UpdateLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Change terms of a pending loan"""
    changes = request.model_dump(exclude_unset=True)
    loan = system.loan_manager.update_loan(loan_id, **changes)
    return {"success": True, "data": loan.to_dict(), "message": "Loan updated successfully"}


@router.post("/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    loan = system.loan_manager.approve_loan(loan_id)
    return {"success": True, "data": loan.to_dict(), "message": "Loan approved successfully"}


@router.post("/{loan_id}/cancel")
async def cancel_loan(
    loan_id: str,
    request: Optional[CancelLoanRequest] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    loan = system.loan_manager.cancel_loan(loan_id, reason=request.reason if request else None)
    return {"success": True, "data": loan.to_dict(), "message": "Loan cancelled successfully"}


@router.patch("/{loan_id}/status")
async def update_loan_status(
    loan_id: str,
    request: LoanStatusRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    loan = system.loan_manager.update_loan_status(loan_id, request.status)
    return {"success": True, "data": loan.to_dict(), "message": f"Loan status changed to {loan.status.value}"}


@router.post("/{loan_id}/foreclose")
async def foreclose_loan(
    loan_id: str,
    request: ForecloseLoanRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Close an active loan against a one-off settlement"""
    loan = system.loan_manager.foreclose_loan(
        loan_id,
        discount=request.discount,
        settlement_amount=request.settlement_amount,
        payment_method=request.payment_method,
        notes=request.notes,
        bank_details=request.bank_details.to_bank_details() if request.bank_details else None,
        settlement_date=request.settlement_date
    )
    return {"success": True, "data": loan.to_dict(), "message": "Loan foreclosed and settled successfully"}


@router.get("/{loan_id}/schedule")
async def get_loan_schedule(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Get loan amortization schedule"""
    schedule = system.loan_manager.get_amortization_schedule(loan_id)
    return {"success": True, "data": [entry.to_dict() for entry in schedule]}


@router.get("/{loan_id}/balance")
async def get_current_balance(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    balance = system.loan_manager.get_current_balance(loan_id)
    return {"success": True, "data": to_storage_value(balance)}


@router.post("/{loan_id}/reconcile")
async def reconcile_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Rebuild the cached balance and payment count from payment history"""
    result = system.payment_ledger.reconcile_loan(loan_id)
    return {"success": True, "data": to_storage_value(result)}


@router.delete("/{loan_id}")
async def delete_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    system.loan_manager.delete_loan(loan_id)
    return {"success": True, "message": "Loan deleted successfully"}


# Documents

@router.get("/{loan_id}/agreement")
async def loan_agreement(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    document = system.document_service.loan_agreement(loan_id)
    return {"success": True, "data": document.to_dict()}


@router.get("/{loan_id}/statement")
async def loan_statement(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    document = system.document_service.loan_statement(loan_id)
    return {"success": True, "data": document.to_dict()}


@router.get("/{loan_id}/noc")
async def no_objection_certificate(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    document = system.document_service.no_objection_certificate(loan_id)
    return {"success": True, "data": document.to_dict()}


@router.get("/{loan_id}/settlement-certificate")
async def settlement_certificate(loan_id: str, system: LendingSystem = Depends(get_lending_system)):
    document = system.document_service.settlement_certificate(loan_id)
    return {"success": True, "data": document.to_dict()}
