"""
Database Schemas for the Storefront API

Each Pydantic model corresponds to one MongoDB collection.
Collection name is the lowercase of the class name.
"""
from datetime import datetime
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr

PaymentMethod = Literal["paypal", "credit_card", "bank_transfer"]
PaymentStatus = Literal["pending", "completed", "failed", "refunded"]
OrderStatus = Literal["pending", "confirmed", "processing", "shipped", "delivered", "cancelled"]

# Orders in these states can no longer be cancelled
NON_CANCELLABLE_STATUSES = ("shipped", "delivered", "cancelled")


class UserAddress(BaseModel):
    street: str
    city: str
    state: str
    zip: str
    country: str

class User(BaseModel):
    email: EmailStr
    full_name: str = Field(..., description="Full name")
    password_hash: str = Field(..., description="Hashed password")
    role: Literal["customer", "admin"] = "customer"
    phone_number: Optional[str] = None
    address: Optional[UserAddress] = None

class Product(BaseModel):
    name: str
    description: str
    price: float = Field(..., ge=0)
    stock: int = Field(..., ge=0)
    category: str = Field(..., description="Category name (not id)")
    images: List[str] = []
    set_trending: bool = False
    ratings: float = Field(0, ge=0, le=5, description="Average review rating")
    review_count: int = 0
    is_active: bool = True

class Category(BaseModel):
    name: str
    slug: str = Field(..., description="URL-friendly unique identifier")
    description: str = ""
    is_active: bool = True
    product_count: int = 0

class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price when the item was added")
    added_at: datetime

class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = []
    total_amount: float = 0
    item_count: int = 0

class Wishlist(BaseModel):
    user_id: str
    product_ids: List[str] = []

class Review(BaseModel):
    review_id: str
    product_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    title: Optional[str] = None
    comment: str
    is_verified: bool = False
    helpful_count: int = 0

class Address(BaseModel):
    street: str
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str

class OrderItem(BaseModel):
    product_id: str
    name: str
    description: Optional[str] = None
    price: float
    quantity: int = Field(..., ge=1)
    total: float
    images: List[str] = []

class Order(BaseModel):
    order_id: str
    user_id: str
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    shipping: float = Field(..., ge=0)
    tax: float = Field(..., ge=0)
    total: float = Field(..., ge=0)
    billing_address: Address
    shipping_address: Address
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "pending"
    order_status: OrderStatus = "pending"
    tracking_number: Optional[str] = None
    delivered_at: Optional[datetime] = None
