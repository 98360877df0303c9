import os

# Must be set before the application modules read their configuration
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_app.db")
os.environ.setdefault("ADMIN_USER_IDS", "admin-1")
os.environ.setdefault("PAYMENT_SIMULATION_DELAY", "0")
os.environ.setdefault("CASH_IN_SIMULATION_DELAY", "0")

from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from src.core.database import Base
from src.models.database import Category, Customer, Product, UserBalance, derive_product_status
from src.services.payment_service import PaymentSimulator

TEST_DATABASE_URL = "sqlite:///./test_inventory.db"


@pytest.fixture
def test_engine():
    engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False, "timeout": 30})
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture
def test_db(session_factory):
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def payments():
    """Payment simulator without the artificial gateway delay"""
    return PaymentSimulator(delay=0)


@pytest.fixture
def make_category(test_db):
    def _make(name="Guitars"):
        category = Category(name=name, item_count=0)
        test_db.add(category)
        test_db.commit()
        test_db.refresh(category)
        return category
    return _make


@pytest.fixture
def make_product(test_db):
    """Insert a product directly, bypassing category bookkeeping"""
    def _make(name="Acoustic Guitar", stock=3, price="10.00", category=None):
        product = Product(
            name=name,
            stock=stock,
            price=Decimal(price),
            category_id=category.id if category else None,
            category_name=category.name if category else None,
            status=derive_product_status(stock),
        )
        test_db.add(product)
        test_db.commit()
        test_db.refresh(product)
        return product
    return _make


@pytest.fixture
def make_customer(test_db):
    def _make(user_id="user-1", status="approved", name=None, email=None):
        customer = Customer(
            customer_code=f"********-{user_id[-4:].upper()}",
            user_id=user_id,
            name=name or f"Customer {user_id}",
            email=email or f"{user_id}@example.com",
            status=status,
        )
        test_db.add(customer)
        test_db.commit()
        test_db.refresh(customer)
        return customer
    return _make


@pytest.fixture
def set_balance(test_db):
    def _set(user_id, amount):
        row = test_db.get(UserBalance, user_id)
        if row is None:
            row = UserBalance(user_id=user_id, balance=Decimal(amount))
            test_db.add(row)
        else:
            row.balance = Decimal(amount)
        test_db.commit()
        return row
    return _set
