import logging
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session
from typing import List
from src.api.dependencies import get_caller, get_payment_simulator, get_redis_client, http_error, require_staff
from src.core.database import get_db
from src.models.schemas import OrderCreate, Order, OrderResult
from src.services.account_service import AccountService, Caller
from src.services.exceptions import InventoryError, OrderNotFound, PermissionDenied, StockAdjustmentFailed
from src.services.order_service import OrderOutcome, OrderWorkflowService, OrderWorkflowServiceWithRedis
from src.services.payment_service import PaymentSimulator

logger = logging.getLogger(__name__)

router = APIRouter()

def _result(outcome: OrderOutcome) -> OrderResult:
    return OrderResult(
        order=Order.model_validate(outcome.order),
        product_stock=outcome.product_stock,
        product_status=outcome.product_status,
        balance=outcome.balance,
    )

@router.post("/", response_model=OrderResult)
async def create_order(
    order_data: OrderCreate,
    db: Session = Depends(get_db),
    caller: Caller = Depends(get_caller),
    payments: PaymentSimulator = Depends(get_payment_simulator),
    redis_client=Depends(get_redis_client),
):
    """Place an order; stock, balance and the order row change together or not at all"""
    try:
        if not caller.is_staff:
            customer = AccountService(db).get_customer(order_data.customer_id)
            if customer.user_id != caller.user_id:
                raise PermissionDenied("Customers can only order for themselves")
        service = OrderWorkflowServiceWithRedis(db, redis_client, payments)
        outcome = await service.place_order(order_data)
        return _result(outcome)
    except StockAdjustmentFailed as e:
        logger.error(f"Order {e.order_id} requires manual reconciliation")
        raise http_error(e)
    except InventoryError as e:
        raise http_error(e)
    except HTTPException:
        raise
    except Exception as e:
        logger.exception("Unexpected error while placing order")
        raise HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")

@router.get("/", response_model=List[Order])
async def get_orders(db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    """All orders for staff; a customer only sees their own"""
    service = OrderWorkflowService(db)
    if caller.is_staff:
        return service.get_orders()
    customer = AccountService(db).get_customer_by_user_id(caller.user_id)
    if not customer:
        return []
    return service.get_customer_orders(customer.id)

@router.get("/flagged", response_model=List[Order])
async def get_flagged_orders(db: Session = Depends(get_db), caller: Caller = Depends(require_staff)):
    """Orders waiting for stock reconciliation"""
    return OrderWorkflowService(db).list_flagged_orders()

@router.get("/{order_id}", response_model=Order)
async def get_order(order_id: int, db: Session = Depends(get_db), caller: Caller = Depends(get_caller)):
    """Get a specific order"""
    try:
        order = OrderWorkflowService(db).get_order(order_id)
    except InventoryError as e:
        raise http_error(e)
    if not caller.is_staff and order.customer.user_id != caller.user_id:
        raise http_error(OrderNotFound("Order not found"))
    return order

@router.post("/{order_id}/reconcile", response_model=OrderResult)
async def reconcile_order(order_id: int, db: Session = Depends(get_db), caller: Caller = Depends(require_staff)):
    """Retry the stock decrement of a flagged order"""
    try:
        outcome = await OrderWorkflowService(db).reconcile_order(order_id)
    except InventoryError as e:
        raise http_error(e)
    return _result(outcome)

@router.delete("/{order_id}", status_code=204)
async def delete_order(order_id: int, db: Session = Depends(get_db), caller: Caller = Depends(require_staff)):
    try:
        OrderWorkflowService(db).delete_order(order_id)
    except InventoryError as e:
        raise http_error(e)
