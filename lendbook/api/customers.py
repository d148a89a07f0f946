"""
Customer endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, status

from .dependencies import get_lending_system
from .schemas import CreateCustomerRequest, UpdateCustomerRequest
from ..customers import CustomerStatus
from ..exceptions import InvalidInputError
from ..system import LendingSystem


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_customer(
    request: CreateCustomerRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Create a new customer"""
    customer = system.customer_manager.create_customer(
        first_name=request.first_name,
        last_name=request.last_name,
        email=request.email,
        phone=request.phone,
        address=request.address.to_address() if request.address else None,
        pan_number=request.pan_number,
        bank_details=request.bank_details.to_bank_account() if request.bank_details else None,
        notes=request.notes
    )
    return {"success": True, "data": customer.to_dict(), "message": "Customer created successfully"}


@router.get("")
async def list_customers(
    status: Optional[str] = None,
    search: Optional[str] = None,
    system: LendingSystem = Depends(get_lending_system)
):
    customer_status = None
    if status:
        try:
            customer_status = CustomerStatus(status)
        except ValueError:
            raise InvalidInputError(f"Invalid customer status: {status}")
    customers = system.customer_manager.list_customers(status=customer_status, search=search)
    return {"success": True, "count": len(customers), "data": [c.to_dict() for c in customers]}


@router.get("/{customer_id}")
async def get_customer(
    customer_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    customer = system.customer_manager.require_customer(customer_id)
    loans = system.loan_manager.list_loans(customer_id=customer_id)
    data = customer.to_dict()
    data["loans"] = [
        {"id": loan.id, "loan_number": loan.loan_number, "status": loan.status.value}
        for loan in loans
    ]
    return {"success": True, "data": data}


@router.put("/{customer_id}")
async def update_customer(
    customer_id: str,
    request: UpdateCustomerRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Update customer information"""
    changes = request.model_dump(exclude_unset=True, exclude={"address", "bank_details"})
    if request.address:
        changes["address"] = request.address.to_address()
    if request.bank_details:
        changes["bank_details"] = request.bank_details.to_bank_account()

    customer = system.customer_manager.update_customer(customer_id, **changes)
    return {"success": True, "data": customer.to_dict(), "message": "Customer updated successfully"}


@router.delete("/{customer_id}")
async def delete_customer(
    customer_id: str,
    system: LendingSystem = Depends(get_lending_system)
):
    system.customer_manager.delete_customer(customer_id)
    return {"success": True, "message": "Customer deleted successfully"}
