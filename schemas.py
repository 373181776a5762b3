"""
Database Schemas for the Storefront API

Each Pydantic model represents a collection in MongoDB.
Collection name is the lowercase of the class name by default.

We store:
- User
- Product
- Cart (one per user)
- Order (immutable item snapshot + mutable lifecycle fields)
"""

from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, EmailStr
from typing import Dict, FrozenSet, List, Optional
from datetime import datetime


class Role(str, Enum):
    user = "user"
    admin = "admin"


class OrderStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    shipped = "shipped"
    delivered = "delivered"
    cancelled = "cancelled"


class PaymentStatus(str, Enum):
    unpaid = "unpaid"
    paid = "paid"
    refunded = "refunded"


class PaymentMethod(str, Enum):
    card = "card"
    paypal = "paypal"
    apple_pay = "apple_pay"
    google_pay = "google_pay"


# Legal admin status changes. delivered and cancelled are terminal.
STATUS_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.pending: frozenset({OrderStatus.processing, OrderStatus.cancelled}),
    OrderStatus.processing: frozenset({OrderStatus.shipped, OrderStatus.cancelled}),
    OrderStatus.shipped: frozenset({OrderStatus.delivered}),
    OrderStatus.delivered: frozenset(),
    OrderStatus.cancelled: frozenset(),
}

CANCELLABLE_STATUSES = frozenset({OrderStatus.pending, OrderStatus.processing})


class Address(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    phone: str = Field(..., min_length=1)
    country: str = Field("India", min_length=1)


class ProductImage(BaseModel):
    url: str
    alt: Optional[str] = None


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    model_config = ConfigDict(use_enum_values=True)

    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")

    # Auth fields (stored in DB, but not returned in public responses)
    password_hash: Optional[str] = Field(None, description="Hashed password")

    role: Role = Field("user", description="user | admin")
    is_active: bool = Field(True, description="Whether user is active")
    phone: Optional[str] = None
    address: Optional[Address] = Field(None, description="Default shipping address")

    # password reset: only the sha256 of the e-mailed token is stored
    reset_token_hash: Optional[str] = None
    reset_token_expires: Optional[datetime] = None


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, description="Unit price")
    discount: int = Field(0, ge=0, le=100, description="Percentage discount")
    stock: int = Field(0, ge=0, description="Available inventory")
    category: str = Field(..., description="Product category")
    images: List[ProductImage] = Field(default_factory=list)
    is_featured: bool = False
    is_active: bool = True


class CartItem(BaseModel):
    product_id: str = Field(..., description="Product id as string")
    quantity: int = Field(1, ge=1, description="Quantity for the product")
    added_at: datetime = Field(default_factory=datetime.utcnow)


class Cart(BaseModel):
    """
    Carts collection schema
    Collection name: "cart" (unique per user_id)
    """
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_items: int = 0
    total_price: float = 0.0
    last_updated: datetime = Field(default_factory=datetime.utcnow)


class OrderItem(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., description="Unit price at purchase time")
    name: str
    image: Optional[str] = None


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    model_config = ConfigDict(use_enum_values=True)

    user_id: str
    order_number: str
    items: List[OrderItem]
    shipping_address: Address
    billing_address: Address
    payment_method: PaymentMethod = "card"
    payment_intent_id: Optional[str] = None
    payment_status: PaymentStatus = "unpaid"
    subtotal: float
    tax: float
    shipping: float
    total: float
    status: OrderStatus = "pending"
    tracking_number: Optional[str] = None
    delivered_at: Optional[datetime] = None
