from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import Column, Integer, String, Numeric, DateTime, ForeignKey
from sqlalchemy.orm import relationship

from src.core.config import LOW_STOCK_THRESHOLD
from src.core.database import Base


def utcnow():
    return datetime.now(timezone.utc)


# Product status values
STATUS_ACTIVE = "Active"
STATUS_LOW_STOCK = "Low stock"
STATUS_SOLD = "Sold"

# Customer approval states
CUSTOMER_PENDING = "pending"
CUSTOMER_APPROVED = "approved"
CUSTOMER_REJECTED = "rejected"

# Order states
ORDER_CONFIRMED = "confirmed"
ORDER_STOCK_ADJUSTMENT_FAILED = "stock_adjustment_failed"

STAFF_ROLES = ("Staff", "Admin", "Manager")
ROLE_CUSTOMER = "Customer"


def derive_product_status(stock: int) -> str:
    """Status shown for a product holding ``stock`` units."""
    if stock <= 0:
        return STATUS_SOLD
    if stock <= LOW_STOCK_THRESHOLD:
        return STATUS_LOW_STOCK
    return STATUS_ACTIVE


class Category(Base):
    """Product category with a denormalized product count"""
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, nullable=False)
    item_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    products = relationship("Product", back_populates="category")


class Product(Base):
    """Sellable product; status always follows stock"""
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    stock = Column(Integer, nullable=False, default=0)
    price = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True, index=True)
    category_name = Column(String)
    status = Column(String, nullable=False, default=STATUS_SOLD)
    version = Column(Integer, nullable=False, default=1)  # For optimistic locking
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    category = relationship("Category", back_populates="products")


class Customer(Base):
    """Customer record gated by the approval workflow"""
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    customer_code = Column(String, unique=True, nullable=False)
    user_id = Column(String, unique=True, index=True, nullable=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, index=True, nullable=False)
    status = Column(String, nullable=False, default=CUSTOMER_PENDING)  # pending, approved, rejected
    approved_by = Column(String, nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    orders = relationship("Order", back_populates="customer")


class Staff(Base):
    """Staff member; the only place a non-customer role is stored"""
    __tablename__ = "staff"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, unique=True, index=True, nullable=True)
    name = Column(String, nullable=False)
    email = Column(String, unique=True, nullable=False)
    role = Column(String, nullable=False, default="Staff")  # Staff, Admin, Manager
    created_at = Column(DateTime(timezone=True), default=utcnow)


class UserBalance(Base):
    """Simulated wallet balance for an external identity"""
    __tablename__ = "user_balances"

    user_id = Column(String, primary_key=True)
    balance = Column(Numeric(12, 2), nullable=False, default=Decimal("0.00"))
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


class Order(Base):
    """Single-product customer order"""
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    order_number = Column(String, unique=True, index=True, nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=True, index=True)
    product_name = Column(String, nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    total_amount = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String, nullable=False)
    status = Column(String, nullable=False, default=ORDER_CONFIRMED)
    order_date = Column(DateTime(timezone=True), default=utcnow)

    customer = relationship("Customer", back_populates="orders")
