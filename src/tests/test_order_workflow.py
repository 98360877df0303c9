import pytest
import importlib
from decimal import Decimal
from sqlalchemy.exc import OperationalError
from src.core import config
from src.models.database import Order, Product, UserBalance
from src.models.schemas import OrderCreate, PaymentDetails, PaymentMethod
from src.services.exceptions import (
    ConcurrencyConflict, CustomerNotApproved, CustomerNotFound, InsufficientBalance,
    InsufficientStock, InvalidPaymentDetails, InvalidQuantity, InvalidStatusTransition,
    ProductNotFound, StockAdjustmentFailed,
)
from src.services.order_service import OrderWorkflowService, OrderWorkflowServiceWithRedis

CARD = PaymentDetails(
    card_number="4111 1111 1111 1111",
    card_name="Jane Buyer",
    card_expiry="12/29",
    card_cvv="123",
)


def order_request(customer, product, quantity=1, method=PaymentMethod.BALANCE, details=None):
    return OrderCreate(
        customer_id=customer.id,
        product_id=product.id,
        quantity=quantity,
        payment_method=method,
        payment_details=details or PaymentDetails(),
    )


def assert_unchanged(db, product, stock, user_id=None, balance=None):
    db.expire_all()
    assert db.get(Product, product.id).stock == stock
    if user_id is not None:
        assert db.get(UserBalance, user_id).balance == Decimal(balance)
    assert db.query(Order).count() == 0


class TestPlaceOrder:
    """Successful order placement"""

    @pytest.mark.asyncio
    async def test_balance_order_success(self, test_db, payments, make_product, make_customer, set_balance):
        product = make_product(stock=5, price="10.00")
        customer = make_customer()
        set_balance("user-1", "100.00")

        service = OrderWorkflowService(test_db, payments)
        outcome = await service.place_order(order_request(customer, product, quantity=2))

        assert outcome.order.order_number.startswith("ORD-")
        assert outcome.order.status == "confirmed"
        assert outcome.order.product_name == "Acoustic Guitar"
        assert outcome.order.quantity == 2
        assert outcome.order.total_amount == Decimal("20.00")
        assert outcome.product_stock == 3
        assert outcome.product_status == "Active"
        assert outcome.balance == Decimal("80.00")

        test_db.refresh(product)
        assert product.stock == 3
        assert product.version == 2

    @pytest.mark.asyncio
    async def test_status_follows_stock(self, test_db, payments, make_product, make_customer, set_balance):
        product = make_product(stock=3)
        customer = make_customer()
        set_balance("user-1", "100.00")
        service = OrderWorkflowService(test_db, payments)

        outcome = await service.place_order(order_request(customer, product, quantity=1))
        assert (outcome.product_stock, outcome.product_status) == (2, "Low stock")

        outcome = await service.place_order(order_request(customer, product, quantity=2))
        assert (outcome.product_stock, outcome.product_status) == (0, "Sold")

    @pytest.mark.asyncio
    async def test_external_card_order_leaves_balance_alone(self, test_db, payments, make_product, make_customer, set_balance):
        product = make_product(stock=4, price="250.00")
        customer = make_customer()
        set_balance("user-1", "5.00")

        service = OrderWorkflowService(test_db, payments)
        outcome = await service.place_order(
            order_request(customer, product, quantity=1, method=PaymentMethod.EXTERNAL_CARD, details=CARD)
        )

        assert outcome.order.payment_method == "external_card"
        assert outcome.balance is None
        assert outcome.product_stock == 3
        test_db.expire_all()
        assert test_db.get(UserBalance, "user-1").balance == Decimal("5.00")

    @pytest.mark.asyncio
    async def test_free_product_without_wallet(self, test_db, payments, make_product, make_customer):
        product = make_product(stock=3, price="0.00")
        customer = make_customer()

        outcome = await OrderWorkflowService(test_db, payments).place_order(order_request(customer, product))

        assert outcome.order.total_amount == Decimal("0.00")
        assert outcome.balance == Decimal("0.00")
        assert outcome.product_stock == 2
        assert test_db.get(UserBalance, "user-1") is None

    @pytest.mark.asyncio
    async def test_gcash_order(self, test_db, payments, make_product, make_customer):
        product = make_product(stock=4)
        customer = make_customer()
        details = PaymentDetails(gcash_number="0917-123-4567")

        outcome = await OrderWorkflowService(test_db, payments).place_order(
            order_request(customer, product, method=PaymentMethod.EXTERNAL_GCASH, details=details)
        )
        assert outcome.order.status == "confirmed"
        assert outcome.product_stock == 3


class TestValidation:
    """Each rejected order reports one rule and changes nothing"""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("quantity", [0, -1])
    async def test_invalid_quantity(self, test_db, payments, make_product, make_customer, set_balance, quantity):
        product = make_product(stock=3)
        customer = make_customer()
        set_balance("user-1", "100.00")

        with pytest.raises(InvalidQuantity):
            await OrderWorkflowService(test_db, payments).place_order(
                order_request(customer, product, quantity=quantity)
            )
        assert_unchanged(test_db, product, 3, "user-1", "100.00")

    @pytest.mark.asyncio
    async def test_invalid_payment_details(self, test_db, payments, make_product, make_customer):
        product = make_product(stock=3)
        customer = make_customer()
        service = OrderWorkflowService(test_db, payments)

        with pytest.raises(InvalidPaymentDetails, match="GCash"):
            await service.place_order(order_request(
                customer, product, method=PaymentMethod.EXTERNAL_GCASH,
                details=PaymentDetails(gcash_number="12345"),
            ))
        with pytest.raises(InvalidPaymentDetails, match="CVV"):
            await service.place_order(order_request(
                customer, product, method=PaymentMethod.EXTERNAL_CARD,
                details=CARD.model_copy(update={"card_cvv": None}),
            ))
        assert_unchanged(test_db, product, 3)

    @pytest.mark.asyncio
    async def test_customer_not_found(self, test_db, payments, make_product):
        product = make_product(stock=3)
        request = OrderCreate(customer_id=999, product_id=product.id, quantity=1)

        with pytest.raises(CustomerNotFound):
            await OrderWorkflowService(test_db, payments).place_order(request)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["pending", "rejected"])
    async def test_only_approved_customers_order(self, test_db, payments, make_product, make_customer, set_balance, status):
        product = make_product(stock=3)
        customer = make_customer(status=status)
        set_balance("user-1", "100.00")

        with pytest.raises(CustomerNotApproved):
            await OrderWorkflowService(test_db, payments).place_order(order_request(customer, product))
        assert_unchanged(test_db, product, 3, "user-1", "100.00")

    @pytest.mark.asyncio
    async def test_product_not_found(self, test_db, payments, make_customer):
        customer = make_customer()
        request = OrderCreate(customer_id=customer.id, product_id=999, quantity=1)

        with pytest.raises(ProductNotFound):
            await OrderWorkflowService(test_db, payments).place_order(request)

    @pytest.mark.asyncio
    async def test_insufficient_stock(self, test_db, payments, make_product, make_customer, set_balance):
        product = make_product(stock=5)
        customer = make_customer()
        set_balance("user-1", "1000.00")

        with pytest.raises(InsufficientStock, match="Insufficient stock"):
            await OrderWorkflowService(test_db, payments).place_order(
                order_request(customer, product, quantity=10)
            )
        assert_unchanged(test_db, product, 5, "user-1", "1000.00")

    @pytest.mark.asyncio
    async def test_insufficient_balance(self, test_db, payments, make_product, make_customer, set_balance):
        """Stock 1 at 10.00 with a balance of 5.00 is refused without side effects"""
        product = make_product(stock=1, price="10.00")
        customer = make_customer()
        set_balance("user-1", "5.00")

        with pytest.raises(InsufficientBalance):
            await OrderWorkflowService(test_db, payments).place_order(order_request(customer, product))
        assert_unchanged(test_db, product, 1, "user-1", "5.00")

    @pytest.mark.asyncio
    async def test_missing_balance_row_counts_as_zero(self, test_db, payments, make_product, make_customer):
        product = make_product(stock=1, price="10.00")
        customer = make_customer()

        with pytest.raises(InsufficientBalance):
            await OrderWorkflowService(test_db, payments).place_order(order_request(customer, product))


class TestFailureHandling:
    """Failures inside the mutation never leave a partial order"""

    @pytest.mark.asyncio
    async def test_failure_after_debit_rolls_everything_back(
        self, test_db, payments, make_product, make_customer, set_balance, monkeypatch
    ):
        product = make_product(stock=3, price="10.00")
        customer = make_customer()
        set_balance("user-1", "100.00")
        service = OrderWorkflowService(test_db, payments)

        def broken_decrement(*args, **kwargs):
            raise RuntimeError("connection lost")

        monkeypatch.setattr(service, "_decrement_stock", broken_decrement)

        with pytest.raises(RuntimeError):
            await service.place_order(order_request(customer, product, quantity=1))

        # Fully reverted: the debit made before the failure is gone too
        assert_unchanged(test_db, product, 3, "user-1", "100.00")

    @pytest.mark.asyncio
    async def test_failure_after_external_charge_flags_order(
        self, test_db, payments, make_product, make_customer, monkeypatch
    ):
        product = make_product(stock=3)
        customer = make_customer()
        service = OrderWorkflowService(test_db, payments)
        original_decrement = service._decrement_stock

        def broken_decrement(*args, **kwargs):
            raise RuntimeError("timeout")

        monkeypatch.setattr(service, "_decrement_stock", broken_decrement)

        with pytest.raises(StockAdjustmentFailed) as exc_info:
            await service.place_order(
                order_request(customer, product, method=PaymentMethod.EXTERNAL_CARD, details=CARD)
            )

        flagged = service.list_flagged_orders()
        assert len(flagged) == 1
        assert flagged[0].id == exc_info.value.order_id
        assert flagged[0].status == "stock_adjustment_failed"
        test_db.refresh(product)
        assert product.stock == 3

        # Operator reconciles once the store is healthy again
        monkeypatch.setattr(service, "_decrement_stock", original_decrement)
        outcome = await service.reconcile_order(exc_info.value.order_id)
        assert outcome.order.status == "confirmed"
        assert outcome.product_stock == 2
        assert service.list_flagged_orders() == []

    @pytest.mark.asyncio
    async def test_reconcile_without_stock_keeps_flag(self, test_db, payments, make_product, make_customer):
        product = make_product(stock=0)
        customer = make_customer()
        order = Order(
            order_number="ORD-FLAGGED1",
            customer_id=customer.id,
            product_id=product.id,
            product_name=product.name,
            quantity=1,
            unit_price=Decimal("10.00"),
            total_amount=Decimal("10.00"),
            payment_method="external_card",
            status="stock_adjustment_failed",
        )
        test_db.add(order)
        test_db.commit()

        service = OrderWorkflowService(test_db, payments)
        with pytest.raises(InsufficientStock):
            await service.reconcile_order(order.id)

        test_db.refresh(order)
        assert order.status == "stock_adjustment_failed"

    @pytest.mark.asyncio
    async def test_reconcile_confirmed_order_rejected(self, test_db, payments, make_product, make_customer, set_balance):
        product = make_product(stock=3)
        customer = make_customer()
        set_balance("user-1", "100.00")
        service = OrderWorkflowService(test_db, payments)
        outcome = await service.place_order(order_request(customer, product))

        with pytest.raises(InvalidStatusTransition):
            await service.reconcile_order(outcome.order.id)

    @pytest.mark.asyncio
    async def test_transient_database_error_is_retried(
        self, test_db, payments, make_product, make_customer, set_balance, monkeypatch
    ):
        product = make_product(stock=3)
        customer = make_customer()
        set_balance("user-1", "100.00")
        service = OrderWorkflowService(test_db, payments)
        original_decrement = service._decrement_stock
        calls = []

        def flaky_decrement(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise OperationalError("UPDATE products", {}, Exception("database is locked"))
            return original_decrement(*args, **kwargs)

        monkeypatch.setattr(service, "_decrement_stock", flaky_decrement)

        outcome = await service.place_order(order_request(customer, product))

        assert len(calls) == 2
        assert outcome.product_stock == 2
        assert outcome.balance == Decimal("90.00")
        assert test_db.query(Order).count() == 1

    @pytest.mark.asyncio
    async def test_read_back_error_does_not_replay_order(
        self, test_db, payments, make_product, make_customer, set_balance, monkeypatch
    ):
        product = make_product(stock=5, price="10.00")
        customer = make_customer()
        set_balance("user-1", "100.00")
        service = OrderWorkflowService(test_db, payments)

        def failing_read_back(*args, **kwargs):
            raise OperationalError("SELECT orders", {}, Exception("database is locked"))

        monkeypatch.setattr(service, "_outcome", failing_read_back)

        with pytest.raises(OperationalError):
            await service.place_order(order_request(customer, product))

        test_db.expire_all()
        assert test_db.get(Product, product.id).stock == 4
        assert test_db.get(UserBalance, "user-1").balance == Decimal("90.00")
        assert test_db.query(Order).count() == 1

    @pytest.mark.asyncio
    async def test_read_back_error_after_charge_is_not_flagged(
        self, test_db, payments, make_product, make_customer, monkeypatch
    ):
        product = make_product(stock=5)
        customer = make_customer()
        service = OrderWorkflowService(test_db, payments)

        def failing_read_back(*args, **kwargs):
            raise RuntimeError("connection reset")

        monkeypatch.setattr(service, "_outcome", failing_read_back)

        with pytest.raises(RuntimeError):
            await service.place_order(
                order_request(customer, product, method=PaymentMethod.EXTERNAL_CARD, details=CARD)
            )

        test_db.expire_all()
        assert service.list_flagged_orders() == []
        assert test_db.query(Order).count() == 1
        assert test_db.get(Product, product.id).stock == 4

    def test_retry_count_has_a_floor(self, monkeypatch):
        monkeypatch.setenv("ORDER_MAX_RETRIES", "0")
        try:
            assert importlib.reload(config).ORDER_MAX_RETRIES == 1
        finally:
            monkeypatch.undo()
            importlib.reload(config)


class FakeRedis:
    def __init__(self):
        self.keys = {}

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.keys:
            return None
        self.keys[key] = value
        return True

    def delete(self, key):
        self.keys.pop(key, None)


class TestRedisLock:

    @pytest.mark.asyncio
    async def test_lock_released_after_order(self, test_db, payments, make_product, make_customer, set_balance):
        product = make_product(stock=3)
        customer = make_customer()
        set_balance("user-1", "100.00")
        redis_client = FakeRedis()

        service = OrderWorkflowServiceWithRedis(test_db, redis_client, payments)
        outcome = await service.place_order(order_request(customer, product))

        assert outcome.product_stock == 2
        assert redis_client.keys == {}

    @pytest.mark.asyncio
    async def test_held_lock_rejects_order(self, test_db, payments, make_product, make_customer, set_balance):
        product = make_product(stock=3)
        customer = make_customer()
        set_balance("user-1", "100.00")
        redis_client = FakeRedis()
        redis_client.set(f"product_lock:{product.id}", "locked")

        service = OrderWorkflowServiceWithRedis(test_db, redis_client, payments)
        with pytest.raises(ConcurrencyConflict):
            await service.place_order(order_request(customer, product))
        assert_unchanged(test_db, product, 3, "user-1", "100.00")

    @pytest.mark.asyncio
    async def test_without_redis_falls_back(self, test_db, payments, make_product, make_customer, set_balance):
        product = make_product(stock=3)
        customer = make_customer()
        set_balance("user-1", "100.00")

        service = OrderWorkflowServiceWithRedis(test_db, None, payments)
        outcome = await service.place_order(order_request(customer, product))
        assert outcome.order.status == "confirmed"


class TestOrderQueries:

    @pytest.mark.asyncio
    async def test_customer_orders_and_delete(self, test_db, payments, make_product, make_customer, set_balance):
        product = make_product(stock=10)
        alice = make_customer(user_id="user-1")
        bob = make_customer(user_id="user-2")
        set_balance("user-1", "100.00")
        set_balance("user-2", "100.00")
        service = OrderWorkflowService(test_db, payments)

        first = await service.place_order(order_request(alice, product))
        await service.place_order(order_request(bob, product))

        assert [o.customer_id for o in service.get_customer_orders(alice.id)] == [alice.id]
        assert len(service.get_orders()) == 2

        service.delete_order(first.order.id)
        assert len(service.get_orders()) == 1
        # Deleting an order does not restock
        test_db.refresh(product)
        assert product.stock == 8
