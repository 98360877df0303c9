from decimal import Decimal
from enum import Enum
from typing import List, Optional
from datetime import datetime

from pydantic import BaseModel, EmailStr, Field


class PaymentMethod(str, Enum):
    BALANCE = "balance"
    EXTERNAL_GCASH = "external_gcash"
    EXTERNAL_CARD = "external_card"


class PaymentDetails(BaseModel):
    gcash_number: Optional[str] = None
    card_number: Optional[str] = None
    card_name: Optional[str] = None
    card_expiry: Optional[str] = None
    card_cvv: Optional[str] = None


class CategoryCreate(BaseModel):
    name: str = Field(..., min_length=1)

class CategoryUpdate(BaseModel):
    name: str = Field(..., min_length=1)

class Category(BaseModel):
    id: int
    name: str
    item_count: int
    created_at: datetime

    class Config:
        from_attributes = True


class ProductBase(BaseModel):
    name: str = Field(..., min_length=1)
    stock: int = Field(..., ge=0)
    price: Decimal = Field(Decimal("0.00"), ge=0)
    category_id: Optional[int] = None

class ProductCreate(ProductBase):
    pass

class ProductUpdate(BaseModel):
    name: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    price: Optional[Decimal] = Field(None, ge=0)
    category_id: Optional[int] = None

class Restock(BaseModel):
    quantity: int = Field(..., gt=0)

class Product(ProductBase):
    id: int
    category_name: Optional[str] = None
    status: str
    version: int
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class CustomerCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    user_id: Optional[str] = None

class CustomerUpdate(BaseModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None

class Customer(BaseModel):
    id: int
    customer_code: str
    user_id: Optional[str] = None
    name: str
    email: str
    status: str
    approved_by: Optional[str] = None
    approved_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class StaffCreate(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    user_id: Optional[str] = None
    role: str = "Staff"

class StaffUpdate(BaseModel):
    name: Optional[str] = None
    role: Optional[str] = None

class Staff(BaseModel):
    id: int
    user_id: Optional[str] = None
    name: str
    email: str
    role: str

    class Config:
        from_attributes = True


class Balance(BaseModel):
    user_id: str
    balance: Decimal

class CashIn(BaseModel):
    amount: Decimal
    payment_method: PaymentMethod
    payment_details: PaymentDetails = PaymentDetails()


class OrderCreate(BaseModel):
    customer_id: int
    product_id: int
    quantity: int
    payment_method: PaymentMethod = PaymentMethod.BALANCE
    payment_details: PaymentDetails = PaymentDetails()

class Order(BaseModel):
    id: int
    order_number: str
    customer_id: int
    product_id: Optional[int] = None
    product_name: str
    quantity: int
    unit_price: Decimal
    total_amount: Decimal
    payment_method: str
    status: str
    order_date: datetime

    class Config:
        from_attributes = True

class OrderResult(BaseModel):
    order: Order
    product_stock: int
    product_status: str
    balance: Optional[Decimal] = None


class Notification(BaseModel):
    id: str
    type: str  # pending_approval, out_of_stock, low_stock
    category: str  # approval, stock
    message: str
    product_id: Optional[int] = None
    stock: Optional[int] = None
    customer_id: Optional[int] = None

class NotificationSummary(BaseModel):
    pending_approvals: int
    out_of_stock: int
    low_stock: int
    total: int
    notifications: List[Notification] = []
