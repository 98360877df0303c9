from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from typing import List
from src.api.dependencies import get_caller, http_error, require_admin
from src.core.database import get_db
from src.models.schemas import Staff, StaffCreate, StaffUpdate
from src.services.account_service import AccountService, Caller
from src.services.exceptions import InventoryError

router = APIRouter()

@router.get("/me")
async def get_my_role(caller: Caller = Depends(get_caller)):
    """Role of the calling identity, derived from the staff table"""
    return {"user_id": caller.user_id, "role": caller.role}

@router.post("/", response_model=Staff)
async def create_staff(staff_data: StaffCreate, db: Session = Depends(get_db), caller: Caller = Depends(require_admin)):
    try:
        return AccountService(db).create_staff(staff_data)
    except InventoryError as e:
        raise http_error(e)

@router.get("/", response_model=List[Staff])
async def get_staff(db: Session = Depends(get_db), caller: Caller = Depends(require_admin)):
    return AccountService(db).list_staff()

@router.put("/{staff_id}", response_model=Staff)
async def update_staff(
    staff_id: int,
    staff_data: StaffUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_admin),
):
    try:
        return AccountService(db).update_staff(staff_id, staff_data)
    except InventoryError as e:
        raise http_error(e)

@router.delete("/{staff_id}", status_code=204)
async def delete_staff(staff_id: int, db: Session = Depends(get_db), caller: Caller = Depends(require_admin)):
    try:
        AccountService(db).delete_staff(staff_id)
    except InventoryError as e:
        raise http_error(e)
