"""
Database Schemas for the Bookstore POS (MongoDB)

Each Pydantic model represents a collection in MongoDB. Collection names:
- Book -> "books"
- Category -> "categories"
- Customer -> "customers"
- Bill -> "orders" (BillItem is embedded, never stored on its own)
- StoreSettings -> "settings" (single document with id "store")

Documents read back from the store are validated against these models at the
repository boundary; a document missing a required field is rejected rather
than patched with defaults.
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Literal
from datetime import datetime, timezone

PaymentMethod = Literal["cash", "card", "upi"]
BillStatus = Literal["completed", "cancelled"]

GUEST_CUSTOMER_ID = "guest"
GUEST_CUSTOMER_NAME = "Guest"
STORE_SETTINGS_ID = "store"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Catalog
class Category(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1, max_length=100)
    description: str = ""
    created_at: Optional[datetime] = None


class Book(BaseModel):
    id: Optional[str] = None
    title: str = Field(..., min_length=1)
    author: str
    category: str = ""  # category name, not a reference
    pages: int = Field(0, ge=0)
    price: float = Field(..., ge=0)
    stock: int = Field(..., ge=0)


# CRM
class Customer(BaseModel):
    id: Optional[str] = None
    name: str = Field(..., min_length=1)
    email: str = ""
    phone: str
    address: Optional[str] = None
    gstin: Optional[str] = None
    created_at: datetime
    updated_at: datetime


# Identity
class Actor(BaseModel):
    id: str = Field(..., min_length=1)
    name: str


# Billing
class BillItem(BaseModel):
    id: str
    book: Book
    quantity: int = Field(..., gt=0)
    price: float
    discount: float = 0.0
    total: float


class Bill(BaseModel):
    id: Optional[str] = None
    invoice_number: str = Field(..., pattern=r"^\d+$")
    items: List[BillItem] = Field(..., min_length=1)
    subtotal: float
    discount: float
    total: float
    created_at: datetime
    customer_id: str = GUEST_CUSTOMER_ID
    customer_name: str = GUEST_CUSTOMER_NAME
    customer_phone: str = ""
    customer_email: str = ""
    payment_method: PaymentMethod = "cash"
    status: BillStatus = "completed"
    created_by: Actor

    @property
    def total_quantity(self) -> int:
        return sum(item.quantity for item in self.items)


# Settings
class StoreSettings(BaseModel):
    name: str
    address: str = ""
    phone: str = ""
    email: str = ""
    gstin: Optional[str] = None
    website: Optional[str] = None
    description: Optional[str] = None
    logo: Optional[str] = None
