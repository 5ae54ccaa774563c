"""
Database Schemas for the Storefront

Each Pydantic model corresponds to a MongoDB collection.
Collection name is the lowercase of the class name.

- User -> "user"
- Product -> "product"
- CartItem -> "cartitem"
- Order -> "order" (order items are embedded)

Money fields are Decimal in Python and Decimal128 in MongoDB.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

ORDER_STATUSES = ("pending", "processing", "paid", "shipped", "delivered", "cancelled")
OrderStatus = Literal["pending", "processing", "paid", "shipped", "delivered", "cancelled"]
PaymentMethod = Literal["card", "cod"]
Role = Literal["buyer", "seller"]


class User(BaseModel):
    """Users collection schema"""
    username: str = Field(..., min_length=3, max_length=30, description="Unique login name")
    email: EmailStr = Field(..., description="Unique email address")
    password_hash: str = Field(..., description="Salted sha256 password hash")
    token: str = Field(..., description="Opaque session token")
    role: Role = Field("buyer", description="Role: buyer or seller")
    is_active: bool = Field(True, description="Whether user is active")


class Product(BaseModel):
    """Products collection schema"""
    seller_id: str = Field(..., description="Owning seller user id")
    name: str = Field(..., min_length=1, description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    price: Decimal = Field(..., gt=0, decimal_places=2, description="Unit price")
    category: Optional[str] = Field(None, description="Product category")
    stock: int = Field(0, ge=0, description="Units in stock")
    image_url: Optional[str] = Field(None, description="Primary image URL")
    is_active: bool = Field(True, description="False once soft-deleted")


class CartItem(BaseModel):
    """One (user, product) line in a cart"""
    user_id: str = Field(..., description="Owner user id")
    product_id: str = Field(..., description="ID of the product")
    quantity: int = Field(1, ge=1, description="Quantity of the product")


class OrderItem(BaseModel):
    product_id: str
    name: str = Field(..., description="Snapshot of product name at order time")
    quantity: int = Field(..., ge=1)
    price: Decimal = Field(..., ge=0, description="Unit price at order time")


class Order(BaseModel):
    """Orders collection schema; items are written with the order in one document"""
    user_id: str
    order_date: datetime
    status: OrderStatus = Field("processing")
    total_amount: Decimal = Field(..., ge=0)
    shipping_address: str
    payment_method: PaymentMethod = Field("card")
    payment_intent: Optional[str] = Field(None, description="Payment provider intent id")
    idempotency_key: Optional[str] = Field(None, description="Client supplied dedup key")
    paid_at: Optional[datetime] = None
    items: List[OrderItem]
