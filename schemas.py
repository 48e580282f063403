"""
Database Schemas for Sufficius

Each Pydantic model corresponds to a MongoDB collection. Collection name is the
lowercase class name.
"""
from datetime import datetime
from typing import Optional, List, Literal
from pydantic import BaseModel, Field, EmailStr


OrderStatus = Literal[
    "PAYMENT_PENDING",
    "AWAITING_PAYMENT",
    "PROCESSING",
    "SHIPPED",
    "DELIVERED",
    "CANCELLED",
]
PaymentStatus = Literal["PENDING", "APPROVED", "CANCELLED", "REFUNDED"]
PaymentMethod = Literal["PIX", "CREDIT_CARD", "DEBIT_CARD", "BOLETO"]
DiscountType = Literal["PERCENTAGE", "FIXED"]


class User(BaseModel):
    username: str = Field(..., min_length=3, max_length=30)
    email: EmailStr
    password_hash: str = Field(..., description="BCrypt hash of the password")
    role: Literal["customer", "admin"] = "customer"


class Category(BaseModel):
    name: str = Field(..., min_length=2)
    slug: str = Field(..., min_length=2)
    description: Optional[str] = None


class Product(BaseModel):
    name: str
    category: str = Field(..., description="Category slug")
    brand: Optional[str] = None
    price: float = Field(..., ge=0)
    discounted_price: Optional[float] = Field(None, ge=0)
    stock: int = Field(..., ge=0)
    image: Optional[str] = None
    description: Optional[str] = None
    specs: Optional[dict] = None
    rating: float = 0
    ratings_count: int = 0


class Review(BaseModel):
    product_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None
    verified_purchase: bool = False


class Address(BaseModel):
    user_id: str
    street: str
    number: str
    complement: Optional[str] = None
    district: str
    city: str
    state: str
    zip_code: str
    country: str = "Brasil"
    is_default: bool = False


class CartItem(BaseModel):
    user_id: str
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price when the line was added")


class Coupon(BaseModel):
    code: str = Field(..., min_length=2)
    active: bool = True
    valid_until: datetime
    discount_type: DiscountType
    value: float = Field(..., gt=0)
    used: int = 0


class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    unit_price: float = Field(..., ge=0)
    line_total: float = Field(..., ge=0)


class StatusChange(BaseModel):
    status: OrderStatus
    reason: Optional[str] = None
    changed_at: datetime


class Order(BaseModel):
    number: str
    user_id: str
    address_id: str
    address: dict
    status: OrderStatus = "PAYMENT_PENDING"
    subtotal: float
    shipping_fee: float
    tax: float
    discount: float = 0
    # No floor at zero: a fixed coupon above the subtotal yields a negative total.
    total: float
    coupon_code: Optional[str] = None
    payment_method: str
    shipping_method: str = "CORREIOS"
    notes: Optional[str] = None
    items: List[OrderItem]
    status_history: List[StatusChange] = Field(default_factory=list)
    cancel_reason: Optional[str] = None


class Payment(BaseModel):
    order_id: str
    user_id: str
    method: str
    gateway: str
    gateway_id: Optional[str] = None
    amount: float
    status: PaymentStatus = "PENDING"
    processed_at: Optional[datetime] = None
    metadata: Optional[dict] = None
