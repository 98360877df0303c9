from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List
from src.api.dependencies import get_caller, http_error, require_staff
from src.core.database import get_db
from src.models.schemas import Customer, CustomerCreate, CustomerUpdate
from src.services.account_service import AccountService, Caller
from src.services.exceptions import InventoryError, PermissionDenied

router = APIRouter()

def _check_owner(customer, caller: Caller):
    if not caller.is_staff and customer.user_id != caller.user_id:
        raise http_error(PermissionDenied("Not your customer record"))

@router.post("/", response_model=Customer)
async def create_customer(
    customer_data: CustomerCreate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    """Register a customer; the record waits for approval"""
    if not caller.is_staff:
        # Customers can only register themselves
        customer_data = customer_data.model_copy(update={"user_id": caller.user_id})
    try:
        return AccountService(db).create_customer(customer_data)
    except InventoryError as e:
        raise http_error(e)

@router.get("/", response_model=List[Customer])
async def get_customers(db: Session = Depends(get_db), caller: Caller = Depends(require_staff)):
    return AccountService(db).list_customers()

@router.get("/pending", response_model=List[Customer])
async def get_pending_approvals(db: Session = Depends(get_db), caller: Caller = Depends(require_staff)):
    """Customers waiting for an approval decision"""
    return AccountService(db).list_pending_approvals()

@router.get("/me", response_model=Customer)
async def get_my_customer_record(db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    customer = AccountService(db).get_customer_by_user_id(caller.user_id)
    if not customer:
        raise HTTPException(status_code=404, detail="No customer record for this user")
    return customer

@router.get("/search", response_model=Customer)
async def search_customer(email: str, db: Session = Depends(get_db), caller: Caller = Depends(require_staff)):
    customer = AccountService(db).search_customer_by_email(email)
    if not customer:
        raise HTTPException(status_code=404, detail="Customer not found")
    return customer

@router.get("/{customer_id}", response_model=Customer)
async def get_customer(customer_id: int, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    try:
        customer = AccountService(db).get_customer(customer_id)
    except InventoryError as e:
        raise http_error(e)
    _check_owner(customer, caller)
    return customer

@router.put("/{customer_id}", response_model=Customer)
async def update_customer(
    customer_id: int,
    customer_data: CustomerUpdate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
):
    service = AccountService(db)
    try:
        _check_owner(service.get_customer(customer_id), caller)
        return service.update_customer(customer_id, customer_data)
    except InventoryError as e:
        raise http_error(e)

@router.delete("/{customer_id}", status_code=204)
async def delete_customer(customer_id: int, db: Session = Depends(get_db), caller: Caller = Depends(require_staff)):
    try:
        AccountService(db).delete_customer(customer_id)
    except InventoryError as e:
        raise http_error(e)

@router.post("/{customer_id}/approve", response_model=Customer)
async def approve_customer(customer_id: int, db: Session = Depends(get_db), caller: Caller = Depends(require_staff)):
    try:
        return AccountService(db).approve_customer(customer_id, caller.user_id)
    except InventoryError as e:
        raise http_error(e)

@router.post("/{customer_id}/reject", response_model=Customer)
async def reject_customer(customer_id: int, db: Session = Depends(get_db), caller: Caller = Depends(require_staff)):
    try:
        return AccountService(db).reject_customer(customer_id, caller.user_id)
    except InventoryError as e:
        raise http_error(e)

@router.post("/{customer_id}/request-approval", response_model=Customer)
async def request_approval(customer_id: int, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    """A customer asks to be (re)considered for approval"""
    service = AccountService(db)
    try:
        customer = service.get_customer(customer_id)
        if customer.user_id != caller.user_id:
            raise PermissionDenied("Only the customer can request approval")
        return service.request_approval(customer_id)
    except InventoryError as e:
        raise http_error(e)
