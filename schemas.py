"""
Database Schemas for the Storefront API

Each collection model describes the shape of a MongoDB document. Collection
names are the plural snake_case of the model (e.g., Product -> "products").
Request payload models follow the collection models.
"""
from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

MAX_COUPONS_PER_ORDER = 3


def reject_null(v):
    """PATCH payloads may omit a field but may not null out one the document requires."""
    if v is None:
        raise ValueError("may not be null")
    return v


class OrderStatus(str, Enum):
    pending = "pending"
    paid = "paid"
    shipped = "shipped"
    canceled = "canceled"
    refunded = "refunded"


class DiscountType(str, Enum):
    percent = "percent"
    amount = "amount"


class ShippingAddress(BaseModel):
    full_name: Optional[str] = None
    phone: Optional[str] = None
    address1: Optional[str] = None
    address2: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = "Australia"


# Collection models

class Customer(BaseModel):
    email: EmailStr
    password_hash: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    is_admin: bool = False
    shipping_address: Optional[ShippingAddress] = None
    referral_program_id: Optional[str] = None
    referral_code: Optional[str] = Field(None, description="Personal code others use at checkout")


class Category(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    category_image_url: Optional[str] = None


class Product(BaseModel):
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    category_id: Optional[str] = Field(None, description="Legacy single category, mirrors category_ids[0]")
    category_ids: List[str] = Field(default_factory=list)
    product_image_url: Optional[str] = None
    description: Optional[str] = None
    disclaimer: Optional[str] = None
    stock_qty: int = Field(0, ge=0, le=1_000_000)


class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float = Field(ge=0)
    qty: int = Field(ge=1)
    image_url: Optional[str] = None


class Order(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    order_id: str = Field(..., description="Public 8 hex character id")
    customer_id: str
    items: List[OrderItem]
    subtotal: float = Field(ge=0)
    discount_amount: float = Field(0, ge=0)
    total: float = Field(ge=0)
    status: OrderStatus = OrderStatus.pending
    shipping_name: Optional[str] = None
    shipping_address1: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_state: Optional[str] = None
    shipping_postcode: Optional[str] = None
    referral_code_used: Optional[str] = None
    referral_owner_customer_id: Optional[str] = None
    referral_program_id: Optional[str] = None
    referral_discount_type: Optional[DiscountType] = None
    referral_discount_value: Optional[float] = None
    referral_discount_amount: float = 0
    coupon_codes_used: List[str] = Field(default_factory=list)
    coupon_discount: float = 0
    reminder_message_ids: List[str] = Field(default_factory=list)
    shipping_carrier: Optional[str] = None
    tracking_number: Optional[str] = None


class Coupon(BaseModel):
    code: str
    customer_id: str
    value: float = Field(ge=0)
    is_used: bool = False
    used_in_order_id: Optional[str] = None
    expiry_date: Optional[datetime] = None
    active: bool = True
    description: Optional[str] = None


class Referral(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    name: str
    discount_type: DiscountType
    discount_value: float = Field(ge=0)
    active: bool = True


class EmailVerification(BaseModel):
    email: EmailStr
    code: str = Field(..., description="bcrypt hash of the 6 digit code")
    expires_at: datetime
    attempts: int = 0
    verified: bool = False
    verified_at: Optional[datetime] = None


# Request payloads

class SendVerificationPayload(BaseModel):
    email: EmailStr


class VerifyCodePayload(BaseModel):
    email: EmailStr
    code: str = Field(..., min_length=6, max_length=6)


class RegisterPayload(BaseModel):
    email: EmailStr
    verification_token: str
    password: str = Field(..., min_length=8)
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    referral_code: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


class UpdateProfilePayload(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None


class ChangePasswordPayload(BaseModel):
    current_password: str
    new_password: str = Field(..., min_length=8)


class CustomerAdminUpdate(BaseModel):
    email: Optional[EmailStr] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None
    is_admin: Optional[bool] = None
    referral_program_id: Optional[str] = None

    @field_validator("email", "is_admin")
    @classmethod
    def not_null(cls, v):
        return reject_null(v)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    category_image_url: Optional[str] = None

    @field_validator("name")
    @classmethod
    def not_null(cls, v):
        return reject_null(v)


class ProductCreate(BaseModel):
    name: str = Field(..., min_length=1)
    price: float = Field(..., ge=0)
    category_id: Optional[str] = None
    category_ids: Optional[List[str]] = None
    product_image_url: Optional[str] = None
    description: Optional[str] = None
    disclaimer: Optional[str] = None
    stock_qty: int = Field(0, ge=0, le=1_000_000)

    @field_validator("price")
    @classmethod
    def two_decimal_places(cls, v):
        if v is not None and round(v, 2) != v:
            raise ValueError("price must have at most 2 decimal places")
        return v


class ProductUpdate(ProductCreate):
    name: Optional[str] = Field(None, min_length=1)
    price: Optional[float] = Field(None, ge=0)
    stock_qty: Optional[int] = Field(None, ge=0, le=1_000_000)

    # category_id may be nulled to clear the categories; category_ids: [] does the same
    @field_validator("name", "price", "stock_qty", "category_ids")
    @classmethod
    def not_null(cls, v):
        return reject_null(v)


class CouponCreate(BaseModel):
    customer_id: str
    value: float = Field(..., ge=0)
    expiry_date: Optional[datetime] = None
    description: Optional[str] = None


class CouponUpdate(BaseModel):
    value: Optional[float] = Field(None, ge=0)
    active: Optional[bool] = None
    expiry_date: Optional[datetime] = None
    description: Optional[str] = None

    @field_validator("value", "active")
    @classmethod
    def not_null(cls, v):
        return reject_null(v)


class ReferralCreate(BaseModel):
    name: str = Field(..., min_length=1)
    discount_type: DiscountType
    discount_value: float = Field(..., ge=0)
    active: bool = True


class ReferralUpdate(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    name: Optional[str] = Field(None, min_length=1)
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(None, ge=0)
    active: Optional[bool] = None

    @field_validator("name", "discount_type", "discount_value", "active")
    @classmethod
    def not_null(cls, v):
        return reject_null(v)


class OrderItemInput(BaseModel):
    product_id: str
    qty: int = Field(..., ge=1)


class OrderCreate(BaseModel):
    items: List[OrderItemInput] = Field(default_factory=list)
    shipping_name: Optional[str] = None
    shipping_address1: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_state: Optional[str] = None
    shipping_postcode: Optional[str] = None
    referral_code: Optional[str] = None
    coupon_codes: List[str] = Field(default_factory=list)


class StatusChange(BaseModel):
    model_config = ConfigDict(use_enum_values=True)

    status: OrderStatus


class ShipmentUpdate(BaseModel):
    shipping_carrier: Optional[str] = None
    tracking_number: Optional[str] = None


class PresignPayload(BaseModel):
    file_name: str = Field(..., min_length=1)
    content_type: str = Field(..., min_length=1)
    folder: Optional[str] = None


class ReminderItem(BaseModel):
    name: str
    quantity: int
    price: float


class ReminderOrderDetails(BaseModel):
    id: str
    total: float
    subtotal: float
    coupon_discount: float = 0
    customer_name: str
    items: List[ReminderItem] = Field(default_factory=list)
    reminder_number: int


class ReminderPayload(BaseModel):
    type: str
    email: EmailStr
    order_details: ReminderOrderDetails
