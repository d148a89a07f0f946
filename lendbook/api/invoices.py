"""
Invoice endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .dependencies import get_lending_system
from .schemas import InvoiceRunRequest
from ..system import LendingSystem


router = APIRouter()


@router.get("")
async def list_invoices(
    loan_id: Optional[str] = None,
    customer_id: Optional[str] = None,
    status: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    invoices = system.invoice_manager.list_invoices(loan_id=loan_id, customer_id=customer_id, status=status)
    return {"success": True, "count": len(invoices), "data": [i.to_dict() for i in invoices]}


@router.post("/run")
async def run_invoice_generation(
    request: Optional[InvoiceRunRequest] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    """Run the invoice cycle now"""
    result = system.invoice_manager.run_invoice_generation(as_of=request.as_of if request else None)
    return {"success": True, "data": result.to_dict()}


@router.get("/{invoice_id}")
async def get_invoice(
    invoice_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    invoice = system.invoice_manager.require_invoice(invoice_id)
    return {"success": True, "data": invoice.to_dict()}


@router.post("/{invoice_id}/cancel")
async def cancel_invoice(
    invoice_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    invoice = system.invoice_manager.cancel_invoice(invoice_id)
    return {"success": True, "data": invoice.to_dict(), "message": "Invoice cancelled successfully"}


@router.delete("/{invoice_id}")
async def delete_invoice(
    invoice_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    system.invoice_manager.delete_invoice(invoice_id)
    return {"success": True, "message": "Invoice deleted successfully"}


@router.get("/{invoice_id}/document")
async def invoice_document(
    invoice_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    document = system.document_service.invoice_document(invoice_id)
    return {"success": True, "data": document.to_dict()}
