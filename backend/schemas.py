"""
Database Schemas for the Ku-isoko marketplace
Each Pydantic model represents a MongoDB collection (collection name = class name lowercased).
References to other documents are stored as hex id strings.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator

Role = Literal["customer", "seller", "admin"]
SellerStatus = Literal["pending", "active", "blocked"]
PaymentMethod = Literal["momo", "stripe"]
PaymentStatus = Literal["pending", "paid", "failed"]
OrderStatus = Literal["pending", "paid", "shipped", "delivered", "cancelled"]
ShippingStatus = Literal["not_shipped", "in_transit", "delivered"]
OtpPurpose = Literal["verify", "login", "reset"]

ROLES = ("customer", "seller", "admin")
SELLER_STATUSES = ("pending", "active", "blocked")
PAYMENT_METHODS = ("momo", "stripe")


# Accounts
class User(BaseModel):
    name: str = Field(..., min_length=2, max_length=100)
    email: EmailStr
    password_hash: Optional[str] = None
    phone: Optional[str] = None
    role: Role = "customer"
    is_active: bool = True
    is_verified: bool = False
    google_id: Optional[str] = None
    avatar: Optional[str] = None
    role_changed_at: Optional[datetime] = None


class SellerProfile(BaseModel):
    user_id: str
    store_name: str = Field(..., min_length=3, max_length=100)
    store_description: str = Field("", max_length=1000)
    phone: str = ""
    logo_url: str = ""
    seller_status: SellerStatus = "pending"
    status_changed_at: Optional[datetime] = None


class Otp(BaseModel):
    email: str
    code: str
    purpose: OtpPurpose
    expires_at: datetime


# Catalog
class Product(BaseModel):
    name: str = Field(..., min_length=3, max_length=200)
    description: str = Field(..., min_length=10, max_length=5000)
    price: float = Field(..., ge=0)
    stock: int = Field(0, ge=0)
    category: str = Field(..., min_length=1)
    image_url: str
    seller_id: str
    average_rating: float = Field(0, ge=0, le=5)
    review_count: int = 0


class Review(BaseModel):
    product_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=1000)


# Cart
class CartItem(BaseModel):
    product_id: str
    seller_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)


# Orders
class ShippingAddress(BaseModel):
    full_name: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    address_line: str = Field(..., min_length=1)


class OrderItem(BaseModel):
    product_id: str
    seller_id: str
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    image_url: Optional[str] = None


class Order(BaseModel):
    user_id: str
    items: List[OrderItem]
    total_price: float = Field(..., ge=0)
    shipping_fee: float = Field(0, ge=0)
    grand_total: float = Field(..., ge=0)
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "pending"
    order_status: OrderStatus = "pending"
    shipping_status: ShippingStatus = "not_shipped"
    shipping_address: ShippingAddress
    momo_transaction_id: Optional[str] = None
    stripe_payment_id: Optional[str] = None

    @model_validator(mode="after")
    def check_totals(self):
        if self.grand_total != self.total_price + self.shipping_fee:
            raise ValueError("grand_total must equal total_price + shipping_fee")
        return self
