from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from src.api.dependencies import get_caller, get_cash_in_simulator, http_error
from src.core.database import get_db
from src.models.schemas import Balance, CashIn
from src.services.account_service import AccountService, Caller
from src.services.exceptions import InventoryError
from src.services.payment_service import PaymentSimulator

router = APIRouter()

@router.get("/balance", response_model=Balance)
async def get_balance(db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    return Balance(user_id=caller.user_id, balance=AccountService(db).get_balance(caller.user_id))

@router.post("/cash-in", response_model=Balance)
async def cash_in(
    cash_in_data: CashIn,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    payments: PaymentSimulator = Depends(get_cash_in_simulator),
):
    """Top up the caller's balance through a simulated external payment"""
    try:
        balance = await AccountService(db, payments).cash_in(
            caller.user_id,
            cash_in_data.amount,
            cash_in_data.payment_method,
            cash_in_data.payment_details,
        )
    except InventoryError as e:
        raise http_error(e)
    return Balance(user_id=caller.user_id, balance=balance)
