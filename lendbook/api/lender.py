"""
Lender profile endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import get_lending_system
from .schemas import UpdateLenderRequest
from ..system import LendingSystem


router = APIRouter()


@router.get("")
async def get_lender(system: LendingSystem = Depends(get_lending_system)):
    lender = system.lender_profile.get_lender()
    return {"success": True, "data": lender.to_dict()}


@router.put("")
async def update_lender(
    request: UpdateLenderRequest,
    system: LendingSystem = Depends(get_lending_system)
):
    """Update the lender profile; address and bank details merge into existing values"""
    changes = request.model_dump(exclude_unset=True, exclude_none=True)
    lender = system.lender_profile.update_lender(**changes)
    return {"success": True, "data": lender.to_dict(), "message": "Lender profile updated successfully"}
