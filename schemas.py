"""
Database Schemas for the storefront

Each Pydantic model in the first section represents a collection in MongoDB.
The collection name is the snake_case of the class name (e.g., Product ->
"product", ProductVariant -> "product_variant"). Money is stored as integer
minor units.

The second section holds the request/response bodies of the public API,
which speaks camelCase on the wire.
"""
from datetime import datetime
from enum import Enum
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator
from pydantic.alias_generators import to_camel


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


PAYMENT_METHOD_LABELS = {
    "bank_transfer": "Bank Transfer",
    "qris": "QRIS",
    "cod": "Cash on Delivery",
    "midtrans": "Midtrans",
}

PHONE_PATTERN = r"^[0-9+\-\s()]+$"


# ---------------------- Collections ----------------------

class Category(BaseModel):
    """
    Categories collection schema
    Collection: "category"
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str = Field(..., min_length=1, description="Category name")
    slug: str = Field(..., min_length=1, description="URL-friendly unique slug")
    description: Optional[str] = None
    image: Optional[str] = None
    is_active: bool = True


class Product(BaseModel):
    """
    Products collection schema
    Collection: "product"
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str = Field(..., min_length=1, description="Product name")
    slug: str = Field(..., min_length=1, description="URL-friendly unique slug")
    description: Optional[str] = None
    price: int = Field(..., ge=0, description="Price in minor units")
    discount_price: Optional[int] = Field(None, ge=0, description="Sale price, lower than price")
    stock: int = Field(0, ge=0, description="Units available when no variant is chosen")
    is_active: bool = True
    is_featured: bool = False
    category_id: Optional[str] = None
    images: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _discount_below_price(self):
        if self.discount_price is not None and self.discount_price >= self.price:
            raise ValueError("discount_price must be lower than price")
        return self


class ProductVariant(BaseModel):
    """
    Product variants collection schema
    Collection: "product_variant"

    Stock here is its own counter, independent of Product.stock.
    """
    product_id: str
    size: Optional[str] = None
    color: Optional[str] = None
    stock: int = Field(0, ge=0)
    additional_price: int = Field(0, ge=0, description="Added to the product's base price")
    sku: Optional[str] = None
    is_active: bool = True


class ShippingAddress(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    name: str = Field(..., min_length=2, max_length=50)
    phone: str = Field(..., min_length=10, max_length=15, pattern=PHONE_PATTERN)
    address: str = Field(..., min_length=10, max_length=200)
    city: str = Field(..., min_length=2, max_length=50)
    province: str = Field(..., min_length=2)
    postal_code: str = Field(..., min_length=5, max_length=10, pattern=r"^[0-9]+$")
    notes: Optional[str] = Field("", max_length=500)


class OrderItem(BaseModel):
    """Frozen snapshot of one purchased line; never re-joined to the live product."""
    model_config = ConfigDict(frozen=True)

    product_id: str
    variant_id: Optional[str] = None
    product_name: str
    variant_info: Optional[str] = None
    price: int = Field(..., ge=0, description="Unit price at purchase time")
    quantity: int = Field(..., ge=1)
    subtotal: int = Field(..., ge=0)


class Order(BaseModel):
    """
    Orders collection schema
    Collection: "order"

    Line items are embedded so the order and its items are written in a
    single insert.
    """
    model_config = ConfigDict(use_enum_values=True)

    order_number: str
    customer_name: str
    customer_email: EmailStr
    customer_phone: str
    shipping_address: ShippingAddress
    items: List[OrderItem]
    subtotal: int = Field(..., ge=0)
    shipping_cost: int = Field(..., ge=0)
    total_amount: int = Field(..., ge=0)
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: str
    notes: Optional[str] = None
    tracking_number: Optional[str] = None
    idempotency_key: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @model_validator(mode="after")
    def _totals_consistent(self):
        if sum(item.subtotal for item in self.items) != self.subtotal:
            raise ValueError("subtotal must equal the sum of item subtotals")
        if self.total_amount != self.subtotal + self.shipping_cost:
            raise ValueError("total_amount must equal subtotal + shipping_cost")
        return self


# ---------------------- API bodies ----------------------

class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CustomerInfo(ApiModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    phone: str = Field(..., min_length=10, max_length=15, pattern=PHONE_PATTERN)


class PaymentMethodChoice(ApiModel):
    method: Literal["bank_transfer", "qris", "cod", "midtrans"]
    bank_account: Optional[str] = None


class OrderLineIn(ApiModel):
    product_id: str = Field(..., min_length=1)
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1)
    # display values from the client cart; compared, never trusted
    product_name: Optional[str] = None
    price: Optional[int] = None


class OrderRequest(ApiModel):
    customer_info: CustomerInfo
    shipping_address: ShippingAddress
    payment_method: PaymentMethodChoice
    items: List[OrderLineIn] = Field(..., min_length=1)
    notes: Optional[str] = Field(None, max_length=1000)


class OrderConfirmation(ApiModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, use_enum_values=True)

    order_id: str
    order_number: str
    total_amount: int
    payment_method: str
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING


class OrderUpdate(ApiModel):
    status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = None


class ProductUpdate(ApiModel):
    name: Optional[str] = Field(None, min_length=1)
    slug: Optional[str] = Field(None, min_length=1)
    description: Optional[str] = None
    price: Optional[int] = Field(None, ge=0)
    discount_price: Optional[int] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    is_active: Optional[bool] = None
    is_featured: Optional[bool] = None
    category_id: Optional[str] = None
    images: Optional[List[str]] = None


class VariantIn(ApiModel):
    size: Optional[str] = None
    color: Optional[str] = None
    stock: int = Field(0, ge=0)
    additional_price: int = Field(0, ge=0)
    sku: Optional[str] = None
    is_active: bool = True


class VariantUpdate(ApiModel):
    size: Optional[str] = None
    color: Optional[str] = None
    stock: Optional[int] = Field(None, ge=0)
    additional_price: Optional[int] = Field(None, ge=0)
    sku: Optional[str] = None
    is_active: Optional[bool] = None
