"""
Database Schemas for BookBazaar

Each document model corresponds to a MongoDB collection. The collection name is
the lowercase of the class name (Listing -> "listing"). Documents are stored with
snake_case keys; the API speaks camelCase through the alias generator.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Mapping, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel

Condition = Literal["new", "like-new", "good", "fair"]
Category = Literal["fiction", "non-fiction", "academic", "children", "comics", "textbook", "other"]
PaymentMethod = Literal["UPI", "Bank Transfer", "Cash", "Other"]
NotificationStatus = Literal["pending", "approved", "rejected"]

PHONE_PATTERN = r"^[\d\s\-+()]+$"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Document(CamelModel):
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_mongo(cls, doc: Mapping[str, Any]):
        data = dict(doc)
        oid = data.pop("_id", None)
        if oid is not None:
            data["id"] = str(oid)
        return cls.model_validate(data)

    def to_mongo(self) -> Dict[str, Any]:
        return self.model_dump(exclude={"id", "created_at", "updated_at"})

    def to_api(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# Core domain models

class User(Document):
    username: str
    email: EmailStr
    password_hash: str
    is_admin: bool = False
    is_active: bool = True


class SellerContact(CamelModel):
    phone: str
    email: EmailStr


class Listing(Document):
    title: str = Field(..., max_length=200)
    author: str = Field(..., max_length=100)
    description: str = Field(..., min_length=10, max_length=1000)
    condition: Condition
    price: float = Field(..., ge=1)
    category: Category
    isbn: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    city: str = Field(..., max_length=50)
    quantity: int = Field(1, ge=0, description="Units in stock")
    seller_id: str
    seller_contact: SellerContact
    upi_id: str


class CartItem(CamelModel):
    listing_id: str
    quantity: int = Field(1, ge=1)
    unit_price: float = Field(..., ge=0, description="Listing price when the line was created")
    line_total: float = Field(0, ge=0)


class Cart(Document):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_price: float = 0
    total_items: int = 0


class PurchaseNotification(Document):
    listing_id: str
    book_title: str
    book_author: str
    quantity: int = Field(..., ge=1, le=10)
    buyer_name: str = "Anonymous"
    buyer_email: Optional[str] = None
    buyer_phone: Optional[str] = None
    amount_paid: Optional[float] = Field(None, ge=0)
    payment_method: PaymentMethod = "UPI"
    transaction_proof: str
    notes: Optional[str] = None
    status: NotificationStatus = "pending"
    stock_before: Optional[int] = None
    stock_after: Optional[int] = None
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    rejection_reason: Optional[str] = None


# Request payloads

class RequestModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class RegisterRequest(RequestModel):
    username: str = Field(..., min_length=3, max_length=30, pattern=r"^[a-zA-Z0-9_]+$")
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(RequestModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class CartItemIn(RequestModel):
    listing_id: str
    quantity: int = 1


class StockUpdateRequest(RequestModel):
    quantity: int = Field(..., ge=0)
    reason: Optional[str] = Field(None, max_length=200)


class ApproveRequest(RequestModel):
    processed_by: Optional[str] = None


class RejectRequest(RequestModel):
    reason: str = Field(..., min_length=1, max_length=200)
    processed_by: Optional[str] = None


class FormModel(RequestModel):
    """Multipart form payload; blank fields count as missing."""

    @classmethod
    def from_form(cls, **values: Optional[str]):
        return cls.model_validate({k: v for k, v in values.items() if v is not None and v.strip()})


class ListingIn(FormModel):
    title: str = Field(..., max_length=200)
    author: str = Field(..., max_length=100)
    description: str = Field(..., min_length=10, max_length=1000)
    condition: Condition
    price: float = Field(..., ge=1)
    category: Category
    city: str = Field(..., max_length=50)
    isbn: Optional[str] = None
    quantity: int = Field(1, ge=1)
    contact_phone: str = Field(..., min_length=10, pattern=PHONE_PATTERN)
    contact_email: EmailStr
    upi_id: str


class PurchaseNotificationIn(FormModel):
    book_title: str = Field(..., max_length=200)
    book_author: str = Field(..., max_length=100)
    quantity_purchased: int = Field(..., ge=1, le=10)
    buyer_name: Optional[str] = Field(None, max_length=100)
    buyer_email: Optional[EmailStr] = None
    buyer_phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    amount_paid: Optional[float] = Field(None, ge=0)
    payment_method: PaymentMethod = "UPI"
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator("buyer_email")
    @classmethod
    def lower_email(cls, value):
        return value.lower() if value else value
