"""
Database Schemas for the storefront

Each top-level model maps to a MongoDB collection (products, orders, users,
promos, shipping). Embedded models (variants, discounts, order items,
addresses, cart items) are stored as nested documents. Everything the order
core receives is validated here once, at the boundary.
"""

from datetime import datetime
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

SixDigitId = Annotated[int, Field(ge=100000, le=999999)]
Phone = Annotated[str, Field(pattern=r"^\d{11}$")]

OrderStatus = Literal[
    "processing",
    "confirmed",
    "shipped",
    "delivered",
    "cancelled",
    "return-request",
    "returned",
]
PaymentStatus = Literal["pending", "paid", "failed"]
PaymentMethod = Literal["COD", "InstaPay", "VodafoneCash"]
Role = Literal["customer", "admin", "editor"]


# ------------ Catalog ------------
class Discount(BaseModel):
    # unknown types are stored but price nothing
    type: str = Field(..., description="percentage | fixed")
    value: float = Field(..., ge=0)
    is_active: bool = True
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class Variant(BaseModel):
    sku: str = Field(..., min_length=1)
    color: Optional[str] = None
    size: Optional[str] = None
    price_modifier: float = 0
    price: Optional[float] = Field(None, ge=0, description="Absolute price, overrides base + modifier")
    stock: int = Field(0, ge=0)
    images: List[str] = []
    discount: Optional[Discount] = None


def _check_unique_skus(variants: Optional[List[Variant]]):
    skus = [v.sku for v in variants or []]
    if len(skus) != len(set(skus)):
        raise ValueError("Variant SKUs must be unique within a product")


class ProductCreate(BaseModel):
    id: Optional[SixDigitId] = None
    name: str = Field(..., min_length=1)
    slug: str = Field(..., min_length=1)
    description: Optional[str] = None
    base_price: float = Field(..., ge=0)
    category: int = Field(..., gt=0)
    tags: List[str] = []
    variants: List[Variant] = []
    thumbnail: Optional[str] = None
    is_featured: bool = False
    is_active: bool = True
    discount: Optional[Discount] = None

    @model_validator(mode="after")
    def check_skus(self):
        _check_unique_skus(self.variants)
        return self


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    base_price: Optional[float] = Field(None, ge=0)
    category: Optional[int] = Field(None, gt=0)
    tags: Optional[List[str]] = None
    variants: Optional[List[Variant]] = None
    thumbnail: Optional[str] = None
    is_featured: Optional[bool] = None
    is_active: Optional[bool] = None

    @model_validator(mode="after")
    def check_skus(self):
        _check_unique_skus(self.variants)
        return self


class StockAdjust(BaseModel):
    delta: int


class DiscountApply(BaseModel):
    scope: Literal["product", "category"]
    target_id: int = Field(..., gt=0)
    discount: Optional[Discount] = None
    variant_skus: List[str] = []


# ------------ Users & carts ------------
class Address(BaseModel):
    street: str
    city: str
    governorate: str
    building_number: Optional[str] = None
    apartment_number: Optional[str] = None
    is_default: bool = False


class CartItem(BaseModel):
    product_id: SixDigitId
    sku: str
    name: Optional[str] = None
    quantity: int = Field(1, ge=1)
    price_at_purchase: Optional[float] = None
    image: Optional[str] = None
    color: Optional[str] = None
    size: Optional[str] = None


class CartMerge(BaseModel):
    items: List[CartItem] = []


class UserCreate(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[Phone] = None


class UserLogin(BaseModel):
    email: EmailStr
    password: str


class UserUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[Phone] = None
    addresses: Optional[List[Address]] = None
    wishlist: Optional[List[int]] = None
    cart_items: Optional[List[CartItem]] = None
    role: Optional[Role] = None


class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"


# ------------ Orders ------------
class OrderItemIn(BaseModel):
    product_id: SixDigitId
    sku: str = Field(..., min_length=1)
    quantity: int = Field(..., gt=0)


class OrderItemUpdate(OrderItemIn):
    price_at_purchase: Optional[float] = Field(None, ge=0)
    name: Optional[str] = None


class OrderItem(BaseModel):
    """Frozen line item; never re-read from the catalog once placed."""
    product_id: int
    sku: str
    quantity: int
    price_at_purchase: float
    original_price: float
    discount_snapshot: Optional[Discount] = None
    discount_applied: bool = False
    name: Optional[str] = None
    image: Optional[str] = None


class OrderCreate(BaseModel):
    id: Optional[SixDigitId] = None
    user_id: Optional[SixDigitId] = None
    items: List[OrderItemIn] = Field(..., min_length=1)
    shipping_address: Address
    payment_method: PaymentMethod = "COD"
    promo_code: Optional[str] = None


class OrderUpdate(BaseModel):
    payment_status: Optional[PaymentStatus] = None
    order_status: Optional[OrderStatus] = None
    tracking_number: Optional[str] = None
    items: Optional[List[OrderItemUpdate]] = None
    shipping_address: Optional[Address] = None


class CustomerOrderUpdate(BaseModel):
    items: Optional[List[OrderItemIn]] = None
    shipping_address: Optional[Address] = None
    order_status: Optional[Literal["return-request", "delivered"]] = None


# ------------ Promos ------------
class PromoCreate(BaseModel):
    id: Optional[SixDigitId] = None
    code: str = Field(..., min_length=1)
    type: Literal["percentage", "fixed"] = "percentage"
    value: float = Field(0, ge=0)
    is_active: bool = True
    min_order_amount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, gt=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def check_window(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class PromoUpdate(BaseModel):
    code: Optional[str] = None
    type: Optional[Literal["percentage", "fixed"]] = None
    value: Optional[float] = Field(None, ge=0)
    is_active: Optional[bool] = None
    min_order_amount: Optional[float] = Field(None, ge=0)
    usage_limit: Optional[int] = Field(None, gt=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: Optional[str]) -> Optional[str]:
        return v.strip().upper() if v is not None else v


# ------------ Shipping ------------
class ShippingCreate(BaseModel):
    id: str = Field(..., min_length=1, description="Governorate id")
    label: Optional[str] = None
    price: float = Field(..., ge=0)
    currency: str = "EGP"


class ShippingUpdate(BaseModel):
    label: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    currency: Optional[str] = None
