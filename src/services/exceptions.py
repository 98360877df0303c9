"""Domain errors raised by the services.

Every business rule violation subclasses ``InventoryError`` (itself a
``ValueError``) and carries a stable ``code`` plus the HTTP status the API
layer answers with.
"""


class InventoryError(ValueError):
    code = "inventory_error"
    status_code = 400


class InvalidQuantity(InventoryError):
    code = "invalid_quantity"


class InsufficientStock(InventoryError):
    code = "insufficient_stock"
    status_code = 409


class InsufficientBalance(InventoryError):
    code = "insufficient_balance"
    status_code = 402


class InvalidPaymentDetails(InventoryError):
    code = "invalid_payment_details"


class InvalidAmount(InventoryError):
    code = "invalid_amount"


class CustomerNotApproved(InventoryError):
    code = "customer_not_approved"
    status_code = 403


class CustomerNotFound(InventoryError):
    code = "customer_not_found"
    status_code = 404


class ProductNotFound(InventoryError):
    code = "product_not_found"
    status_code = 404


class CategoryNotFound(InventoryError):
    code = "category_not_found"
    status_code = 404


class OrderNotFound(InventoryError):
    code = "order_not_found"
    status_code = 404


class StaffNotFound(InventoryError):
    code = "staff_not_found"
    status_code = 404


class InvalidStatusTransition(InventoryError):
    code = "invalid_status_transition"
    status_code = 409


class DuplicateRecord(InventoryError):
    code = "duplicate_record"
    status_code = 409


class RecordInUse(InventoryError):
    code = "record_in_use"
    status_code = 409


class ConcurrencyConflict(InventoryError):
    """Raised when a concurrent modification wins a compare-and-swap or lock"""
    code = "concurrency_conflict"
    status_code = 409


class PermissionDenied(InventoryError):
    code = "permission_denied"
    status_code = 403


class StockAdjustmentFailed(InventoryError):
    """An order was recorded but its stock decrement did not happen.

    The order is kept with status ``stock_adjustment_failed`` so an operator
    can reconcile it.
    """
    code = "stock_adjustment_failed"
    status_code = 500

    def __init__(self, message, order_id=None):
        super().__init__(message)
        self.order_id = order_id


class InvalidRole(InventoryError):
    code = "invalid_role"
