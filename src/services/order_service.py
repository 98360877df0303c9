import asyncio
import uuid
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from src.core.config import ORDER_MAX_RETRIES
from src.models.database import (
    Customer, Order, Product, UserBalance, utcnow,
    CUSTOMER_APPROVED, ORDER_CONFIRMED, ORDER_STOCK_ADJUSTMENT_FAILED,
)
from src.models.schemas import OrderCreate, PaymentMethod
from src.services.catalog_service import stock_status_case
from src.services.exceptions import (
    ConcurrencyConflict, CustomerNotApproved, CustomerNotFound, InsufficientBalance,
    InsufficientStock, InvalidQuantity, InvalidStatusTransition, OrderNotFound,
    ProductNotFound, StockAdjustmentFailed,
)
from src.services.payment_service import PaymentSimulator

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass
class OrderOutcome:
    order: Order
    product_stock: int
    product_status: str
    balance: Optional[Decimal] = None


class OrderWorkflowService:
    """
    Places single-product orders against stock and, optionally, the
    customer's wallet balance.

    Balance debit, stock decrement and order insert run in one database
    transaction. Both decrements are guarded in SQL
    (``... WHERE stock >= :quantity``) so concurrent orders can never drive
    stock or balance negative; a guard that matches no row aborts the whole
    transaction.
    """

    def __init__(self, db: Session, payment_simulator: Optional[PaymentSimulator] = None):
        self.db = db
        self.payments = payment_simulator or PaymentSimulator()

    async def place_order(self, order_data: OrderCreate) -> OrderOutcome:
        method = PaymentMethod(order_data.payment_method)
        logger.info(
            f"Processing order for customer {order_data.customer_id}: "
            f"{order_data.quantity} x product {order_data.product_id} via {method.value}"
        )

        # Validation; every failure here is reported as-is
        quantity = order_data.quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise InvalidQuantity(f"Quantity must be a positive whole number, got {quantity}")

        self.payments.validate(method, order_data.payment_details)

        customer = self.db.get(Customer, order_data.customer_id)
        if not customer:
            raise CustomerNotFound(f"Customer {order_data.customer_id} not found")
        if customer.status != CUSTOMER_APPROVED:
            raise CustomerNotApproved(
                f"Customer {customer.customer_code} is {customer.status}; only approved customers can order"
            )

        product = self.db.get(Product, order_data.product_id)
        if not product:
            raise ProductNotFound(f"Product {order_data.product_id} not found")
        if product.stock < quantity:
            raise InsufficientStock(
                f"Insufficient stock for {product.name}. "
                f"Available: {product.stock}, Requested: {quantity}"
            )

        unit_price = Decimal(product.price)
        total_amount = (unit_price * quantity).quantize(CENTS)

        if method == PaymentMethod.BALANCE:
            balance = self._current_balance(customer.user_id)
            if balance < total_amount:
                raise InsufficientBalance(
                    f"Insufficient balance. You have {balance:.2f}, but need {total_amount:.2f}"
                )

        charge_reference = None
        if method != PaymentMethod.BALANCE:
            charge_reference = await self.payments.charge(method, order_data.payment_details, total_amount)

        draft = {
            "customer_id": customer.id,
            "product_id": product.id,
            "product_name": product.name,
            "quantity": quantity,
            "unit_price": unit_price,
            "total_amount": total_amount,
            "payment_method": method.value,
        }
        user_id = customer.user_id

        debit_user_id = user_id if method == PaymentMethod.BALANCE else None
        try:
            order_id = await self._apply_with_retry(draft, debit_user_id)
        except (InsufficientStock, InsufficientBalance):
            if charge_reference:
                self.payments.void(charge_reference, total_amount)
            raise
        except Exception as e:
            if charge_reference is None:
                # Nothing left outside the rolled back transaction
                raise
            order_id = self._flag_order(draft)
            raise StockAdjustmentFailed(
                f"Payment {charge_reference} was taken but the stock update failed; "
                f"order {order_id} needs reconciliation",
                order_id=order_id,
            ) from e

        # Committed; the read-back runs once, outside retry and flagging
        return self._outcome(order_id, debit_user_id)

    async def _apply_with_retry(self, draft: dict, debit_user_id: Optional[str]) -> int:
        """Run the atomic mutation, retrying transient database errors; returns the order id"""
        for attempt in range(ORDER_MAX_RETRIES):
            try:
                return self._apply(draft, debit_user_id)
            except OperationalError as e:
                if attempt == ORDER_MAX_RETRIES - 1:
                    raise
                logger.warning(f"Transient database error on attempt {attempt + 1}, retrying: {e}")
                await asyncio.sleep(0.01 * (attempt + 1))

    def _apply(self, draft: dict, debit_user_id: Optional[str]) -> int:
        """Debit, decrement and insert as one transaction; ends at the commit"""
        try:
            if debit_user_id is not None:
                self._debit_balance(debit_user_id, draft["total_amount"])
            self._decrement_stock(draft["product_id"], draft["quantity"], draft["product_name"])
            order = self._insert_order(draft, ORDER_CONFIRMED)
            order_id = order.id
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Order for product {draft['product_id']} rolled back: {e}")
            raise
        return order_id

    def _outcome(self, order_id: int, debit_user_id: Optional[str]) -> OrderOutcome:
        """Read back a committed order"""
        order = self.db.get(Order, order_id, populate_existing=True)
        product = self.db.get(Product, order.product_id, populate_existing=True)
        balance = self._current_balance(debit_user_id) if debit_user_id is not None else None

        logger.info(
            f"Order {order.order_number} processed successfully; "
            f"{product.name} stock = {product.stock}"
        )
        return OrderOutcome(
            order=order,
            product_stock=product.stock,
            product_status=product.status,
            balance=balance,
        )

    def _debit_balance(self, user_id: Optional[str], amount: Decimal) -> None:
        if amount == 0:
            # Free items need no wallet row
            return
        update_count = self.db.execute(
            update(UserBalance)
            .where(UserBalance.user_id == user_id, UserBalance.balance >= amount)
            .values(balance=UserBalance.balance - amount, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        ).rowcount
        if update_count == 0:
            raise InsufficientBalance(f"Insufficient balance to pay {amount:.2f}")

    def _decrement_stock(self, product_id: int, quantity: int, product_name: str) -> None:
        new_stock = Product.stock - quantity
        update_count = self.db.execute(
            update(Product)
            .where(Product.id == product_id, Product.stock >= quantity)
            .values(
                stock=new_stock,
                status=stock_status_case(new_stock),
                version=Product.version + 1,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        ).rowcount
        if update_count == 0:
            # Another order took the remaining units after validation
            raise InsufficientStock(f"Insufficient stock for {product_name}. Requested: {quantity}")

    def _insert_order(self, draft: dict, status: str) -> Order:
        order = Order(
            order_number=f"ORD-{uuid.uuid4().hex[:8].upper()}",
            status=status,
            order_date=utcnow(),
            **draft,
        )
        self.db.add(order)
        self.db.flush()
        return order

    def _flag_order(self, draft: dict) -> Optional[int]:
        """Record a paid order whose stock was not adjusted"""
        try:
            order = self._insert_order(draft, ORDER_STOCK_ADJUSTMENT_FAILED)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.critical(f"Could not record paid order for product {draft['product_id']}: {e}")
            return None
        logger.error(
            f"Order {order.order_number} flagged {ORDER_STOCK_ADJUSTMENT_FAILED}; "
            f"stock for product {draft['product_id']} was not decremented"
        )
        return order.id

    def _current_balance(self, user_id: Optional[str]) -> Decimal:
        if user_id is None:
            return Decimal("0.00")
        row = self.db.get(UserBalance, user_id, populate_existing=True)
        return Decimal(row.balance) if row else Decimal("0.00")

    async def reconcile_order(self, order_id: int) -> OrderOutcome:
        """Retry the stock decrement of an order flagged for reconciliation"""
        order = self.get_order(order_id)
        if order.status != ORDER_STOCK_ADJUSTMENT_FAILED:
            raise InvalidStatusTransition(f"Order {order.order_number} does not need reconciliation")
        if order.product_id is None:
            raise ProductNotFound(f"Product for order {order.order_number} no longer exists")

        try:
            self._decrement_stock(order.product_id, order.quantity, order.product_name)
            order.status = ORDER_CONFIRMED
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        product = self.db.get(Product, order.product_id)
        self.db.refresh(product)
        self.db.refresh(order)
        logger.info(f"Order {order.order_number} reconciled; {product.name} stock = {product.stock}")
        return OrderOutcome(order=order, product_stock=product.stock, product_status=product.status)

    def get_orders(self) -> List[Order]:
        return self.db.query(Order).order_by(Order.order_date.desc(), Order.id.desc()).all()

    def get_customer_orders(self, customer_id: int) -> List[Order]:
        return (
            self.db.query(Order)
            .filter(Order.customer_id == customer_id)
            .order_by(Order.order_date.desc(), Order.id.desc())
            .all()
        )

    def list_flagged_orders(self) -> List[Order]:
        return (
            self.db.query(Order)
            .filter(Order.status == ORDER_STOCK_ADJUSTMENT_FAILED)
            .order_by(Order.order_date.asc())
            .all()
        )

    def get_order(self, order_id: int) -> Order:
        order = self.db.get(Order, order_id)
        if not order:
            raise OrderNotFound("Order not found")
        return order

    def delete_order(self, order_id: int) -> None:
        """Delete an order record; stock is not restored"""
        order = self.get_order(order_id)
        self.db.delete(order)
        self.db.commit()


class OrderWorkflowServiceWithRedis:
    """
    Adds a Redis lock per product around order placement, for deployments
    running several app instances against one database.
    """

    LOCK_TTL_SECONDS = 30

    def __init__(self, db: Session, redis_client=None, payment_simulator: Optional[PaymentSimulator] = None):
        self.db = db
        self.redis_client = redis_client
        self.service = OrderWorkflowService(db, payment_simulator)

    async def place_order(self, order_data: OrderCreate) -> OrderOutcome:
        if not self.redis_client:
            # Fallback to database-only guards
            return await self.service.place_order(order_data)

        lock_key = f"product_lock:{order_data.product_id}"
        if not self.redis_client.set(lock_key, "locked", nx=True, ex=self.LOCK_TTL_SECONDS):
            raise ConcurrencyConflict(
                "Another order is currently processing this product. Please try again."
            )
        try:
            return await self.service.place_order(order_data)
        finally:
            self.redis_client.delete(lock_key)
