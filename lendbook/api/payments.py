"""
Payment endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import get_lending_system
from .schemas import RecordPaymentRequest, UpdatePaymentRequest
from ..storage import to_storage_value
from ..system import LendingSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def record_payment(
    request: RecordPaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Apply a payment to the next unpaid instalment of a loan"""
    payment = system.payment_ledger.record_payment(
        loan_id=request.loan_id,
        amount_paid=request.amount_paid,
        payment_method=request.payment_method,
        payment_date=request.payment_date,
        reference_id=request.reference_id,
        notes=request.notes,
        bank_details=request.bank_details.to_bank_details() if request.bank_details else None
    )
    loan = system.loan_manager.require_loan(payment.loan_id)
    return {
        "success": True,
        "data": payment.to_dict(),
        "loan": {
            "remaining_balance": str(loan.remaining_balance),
            "payments_received": loan.payments_received,
            "status": loan.status.value
        },
        "message": "Payment recorded successfully"
    }


@router.get("")
async def list_payments(
    loan_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    payments = system.payment_ledger.list_payments(
        loan_id=loan_id, customer_id=customer_id, date_from=date_from, date_to=date_to
    )
    return {"success": True, "count": len(payments), "data": [p.to_dict() for p in payments]}


@router.get("/loan/{loan_id}/summary")
async def loan_payment_summary(
    loan_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    summary = system.payment_ledger.get_loan_payment_summary(loan_id)
    summary["payments"] = [p.to_dict() for p in summary["payments"]]
    return {"success": True, "data": to_storage_value(summary)}


@router.get("/{payment_id}")
async def get_payment(
    payment_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    payment = system.payment_ledger.require_payment(payment_id)
    return {"success": True, "data": payment.to_dict()}


@router.put("/{payment_id}")
async def update_payment(
    payment_id: str,
    request: UpdatePaymentRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Edit descriptive fields of a recent payment"""
    changes = request.model_dump(exclude_unset=True, exclude={"bank_details"})
    if request.bank_details:
        changes["bank_details"] = request.bank_details.to_bank_details()
    payment = system.payment_ledger.update_payment(payment_id, **changes)
    return {"success": True, "data": payment.to_dict(), "message": "Payment updated successfully"}


@router.delete("/{payment_id}")
async def reverse_payment(
    payment_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    """Reverse a recent payment and restore the loan balance"""
    payment = system.payment_ledger.reverse_payment(payment_id)
    return {"success": True, "data": {"id": payment.id}, "message": "Payment deleted successfully"}


@router.get("/{payment_id}/receipt")
async def payment_receipt(
    payment_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    document = system.document_service.payment_receipt(payment_id)
    return {"success": True, "data": document.to_dict()}
