"""
Database Schemas for the storefront

Each Pydantic model corresponds to a MongoDB collection (lowercased class name).
Request payloads accept both camelCase and snake_case keys.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

PriceOptionType = Literal["packet", "weight-based"]
DiscountType = Literal["percentage", "fixed"]
PaymentMethod = Literal["COD", "BankTransfer", "PayFast"]
PaymentStatus = Literal["Pending", "Confirmed", "Declined"]
OrderStatus = Literal["Pending", "Processing", "Shipped", "Delivered", "Cancelled", "Returned"]

ORDER_STATUSES = ("Pending", "Processing", "Shipped", "Delivered", "Cancelled", "Returned")


class RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -----------------------------
# Auth / Users
# -----------------------------
class User(BaseModel):
    name: str = Field(..., min_length=2, max_length=80)
    email: EmailStr
    phone: Optional[str] = None
    role: Literal["user", "admin"] = "user"
    verification_method: Literal["email", "phone"] = "email"
    api_token: Optional[str] = None
    is_active: bool = True


# -----------------------------
# Catalog
# -----------------------------
class Image(BaseModel):
    public_id: str
    url: str


class PriceOption(RequestModel):
    id: Optional[str] = Field(None, alias="_id")
    type: PriceOptionType
    weight: float = Field(..., ge=0, description="Weight in grams")
    price: float = Field(..., ge=0)
    sale_price: Optional[float] = Field(None, ge=0)


def price_option_documents(options: List[PriceOption]) -> List[Dict[str, Any]]:
    """Stored shape of price options; each keeps its id or gets a fresh ObjectId."""
    return [
        {
            "_id": ObjectId(opt.id) if opt.id and ObjectId.is_valid(opt.id) else ObjectId(),
            "type": opt.type,
            "weight": opt.weight,
            "price": opt.price,
            "sale_price": opt.sale_price,
        }
        for opt in options
    ]


class Product(RequestModel):
    name: str = Field(..., max_length=120)
    description: str = ""
    categories: List[str] = []
    stock: int = Field(0, ge=0)
    images: List[Image] = []
    price_options: List[PriceOption] = []
    sale: Optional[float] = Field(None, ge=0, le=100, description="Store-wide sale percentage")
    ratings: float = 0.0
    num_of_reviews: int = 0

    def to_document(self) -> Dict[str, Any]:
        doc = self.model_dump(exclude={"price_options"})
        doc["price_options"] = price_option_documents(self.price_options)
        return doc


class ProductUpdate(RequestModel):
    name: Optional[str] = Field(None, max_length=120)
    description: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    sale: Optional[float] = Field(None, ge=0, le=100)
    price_options: Optional[List[PriceOption]] = None


# -----------------------------
# Coupons
# -----------------------------
class Coupon(RequestModel):
    code: str = Field(..., min_length=1)
    discount_type: DiscountType
    discount_value: float = Field(..., ge=0)
    min_purchase: float = Field(0, ge=0)
    max_purchase: Optional[float] = Field(None, ge=0)
    total_coupons: int = Field(..., ge=0)
    used_coupons: int = 0
    max_uses_per_user: int = Field(1, ge=1)
    eligible_users: List[str] = []
    eligible_products: List[str] = []
    used_by: Dict[str, int] = {}
    start_at: Optional[datetime] = None
    expires_at: datetime
    is_active: bool = True

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def check_percentage(self) -> "Coupon":
        if self.discount_type == "percentage" and self.discount_value > 100:
            raise ValueError("Percentage discount cannot exceed 100%")
        return self


class CouponUpdate(RequestModel):
    code: Optional[str] = None
    discount_value: Optional[float] = Field(None, ge=0)
    min_purchase: Optional[float] = Field(None, ge=0)
    max_purchase: Optional[float] = Field(None, ge=0)
    total_coupons: Optional[int] = Field(None, ge=0)
    max_uses_per_user: Optional[int] = Field(None, ge=1)
    eligible_users: Optional[List[str]] = None
    eligible_products: Optional[List[str]] = None
    start_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    is_active: Optional[bool] = None

    @field_validator(
        "code",
        "discount_value",
        "min_purchase",
        "total_coupons",
        "max_uses_per_user",
        "eligible_users",
        "eligible_products",
        "expires_at",
        "is_active",
    )
    @classmethod
    def reject_null(cls, v: Any) -> Any:
        if v is None:
            raise ValueError("Field cannot be null")
        return v


class CartLine(RequestModel):
    product_id: str
    price_option_id: Optional[str] = None
    quantity: int = Field(1, ge=1)
    price: Optional[float] = None


class CouponValidateRequest(RequestModel):
    code: str
    cart_total: float = Field(0, ge=0)
    items: List[CartLine] = []


# -----------------------------
# Orders / Checkout
# -----------------------------
class ShippingAddress(RequestModel):
    full_name: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class OrderItemRequest(RequestModel):
    product_id: str
    price_option_id: str
    quantity: int = Field(..., ge=1)


class CreateOrderRequest(RequestModel):
    items: List[OrderItemRequest] = Field(..., min_length=1)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    coupon_code: Optional[str] = None


class PriceOptionSnapshot(BaseModel):
    option_id: str
    type: PriceOptionType
    weight: float
    price: float
    original_price: float
    sale_price: Optional[float] = None
    global_sale_percentage: Optional[float] = None


class OrderItem(BaseModel):
    product_id: str
    name: str
    price_option: PriceOptionSnapshot
    quantity: int = Field(..., ge=1)
    image: Optional[str] = None

    @property
    def line_total(self) -> float:
        return self.price_option.price * self.quantity


class PaymentResult(BaseModel):
    id: Optional[str] = None
    status: Optional[str] = None
    update_time: Optional[str] = None
    redirect_url: Optional[str] = None
    raw_data: Optional[Dict[str, Any]] = None


class Order(BaseModel):
    user_id: Optional[str] = None
    items: List[OrderItem]
    subtotal: float = Field(..., ge=0)
    shipping_cost: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    cod_fee: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    payment_status: PaymentStatus = "Pending"
    payment_proof: Optional[Image] = None
    payment_result: Optional[PaymentResult] = None
    coupon_used: Optional[str] = None
    coupon_code: Optional[str] = None
    status: OrderStatus = "Processing"
    tracking_id: Optional[str] = None
    stock_restored: bool = False
    delivered_at: Optional[datetime] = None


class StatusUpdateRequest(RequestModel):
    status: Any = None
    tracking_id: Optional[str] = None


class PaymentVerificationRequest(RequestModel):
    payment_status: Any = None


# -----------------------------
# Reviews
# -----------------------------
class Review(BaseModel):
    product_id: str
    user_id: str
    order_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)
    images: List[str] = []
    is_approved: bool = False


class ReviewCreate(RequestModel):
    product_id: str
    order_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)
    images: List[str] = []


class ReviewUpdate(RequestModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)
    images: Optional[List[str]] = None
    is_approved: Optional[bool] = None


# -----------------------------
# Settings (singleton)
# -----------------------------
class Settings(RequestModel):
    shipping_fee: float = Field(0, ge=0)
    free_shipping_threshold: float = Field(2000, ge=0)
    cod_fee: float = Field(100, ge=0)


class SettingsUpdate(RequestModel):
    shipping_fee: Optional[float] = Field(None, ge=0)
    free_shipping_threshold: Optional[float] = Field(None, ge=0)
    cod_fee: Optional[float] = Field(None, ge=0)
