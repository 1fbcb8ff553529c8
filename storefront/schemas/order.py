import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import ConfigDict, EmailStr, field_validator
from sqlmodel import SQLModel, Field

from storefront.schemas.common import Address, Money

OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
PaymentMethod = Literal["stripe", "paypal", "crypto", "manual"]
Carrier = Literal["canada-post", "ups"]


class OrderItemCreate(SQLModel):
    """
    Line item for a manual (admin) order.

    Customs fields override the product's customs defaults.
    """

    model_config = ConfigDict(extra="ignore")

    product_id: uuid.UUID
    quantity: int = Field(gt=0)
    price: Decimal | None = Field(default=None, ge=0)
    hs_code: str | None = None
    country_of_origin: str | None = None
    customs_description: str | None = None
    unit_value_cad: Decimal | None = Field(default=None, ge=0)
    mass_grams_each: int | None = Field(default=None, ge=0)


class OrderCreate(SQLModel):
    """
    Admin payload for a manual order.

    Backend derives:
      - order_number (ANA-<year>-<seq>)
      - status = 'pending' unless given
      - subtotal from items when not given
    """

    model_config = ConfigDict(extra="ignore")

    customer_name: str | None = None
    customer_email: EmailStr | None = None
    customer_phone: str | None = None
    user_id: uuid.UUID | None = None
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    payment_method: PaymentMethod = "manual"
    currency: str = "USD"
    subtotal: Decimal | None = Field(default=None, ge=0)
    tax_amount: Decimal = Field(default=Decimal("0"), ge=0)
    shipping_amount: Decimal = Field(default=Decimal("0"), ge=0)
    total_amount: Decimal | None = Field(default=None, ge=0)
    shipping_address: Address | None = None
    billing_address: Address | None = None
    notes: str | None = None
    items: list[OrderItemCreate] = Field(default_factory=list)
    create_shipping_label: bool = False
    shipping_carrier: Carrier = "canada-post"

    @field_validator("customer_name", "notes")
    @classmethod
    def normalize_text(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        return v or None


class OrderUpdate(SQLModel):
    """
    Admin partial update. Status moves are checked by the service.
    """

    model_config = ConfigDict(extra="forbid")

    status: OrderStatus | None = None
    payment_status: PaymentStatus | None = None
    tracking_number: str | None = None
    notes: str | None = None
    customer_name: str | None = None
    customer_phone: str | None = None
    shipping_address: Address | None = None
    billing_address: Address | None = None
    refund_amount: Decimal | None = Field(default=None, ge=0)


class OrderItemRead(SQLModel):
    id: uuid.UUID
    order_id: uuid.UUID
    product_id: uuid.UUID
    product_name: str | None = None
    quantity: int
    price: Money
    line_total: Money
    hs_code: str | None = None
    country_of_origin: str | None = None
    customs_description: str | None = None
    unit_value_cad: Money | None = None
    mass_grams_each: int | None = None
    is_digital: bool = False


class ShipmentRead(SQLModel):
    id: uuid.UUID
    carrier: str
    status: str
    tracking_number: str | None = None
    label_url: str | None = None
    cost: Money | None = None
    service: str | None = None
    provider_transaction_id: str | None = None
    estimated_delivery: datetime | None = None
    created_at: datetime


class OrderRead(SQLModel):
    """
    Order without items (list view).
    """

    id: uuid.UUID
    order_number: str
    user_id: uuid.UUID | None = None
    customer_name: str
    customer_email: str
    customer_phone: str | None = None
    status: OrderStatus
    payment_status: PaymentStatus
    payment_method: str | None = None
    provider_payment_id: str | None = None
    currency: str
    subtotal: Money
    tax_amount: Money
    shipping_amount: Money
    total_amount: Money
    refund_amount: Money | None = None
    shipping_address: dict[str, Any] | None = None
    billing_address: dict[str, Any] | None = None
    notes: str | None = None
    buyer_country: str | None = None
    shipping_country: str | None = None
    tax_breakdown: dict[str, Any] | None = None
    taxes_estimated_cad: Money
    duties_estimated_cad: Money
    incoterm: str | None = None
    tracking_number: str | None = None
    created_at: datetime
    updated_at: datetime
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    refunded_at: datetime | None = None


class OrderWithItemsRead(OrderRead):
    """
    Full order view including items and shipments.
    """

    items: list[OrderItemRead] = Field(default_factory=list)
    shipments: list[ShipmentRead] = Field(default_factory=list)


class OrderCreateResult(OrderWithItemsRead):
    """Admin create response; label outcome is reported, never raised."""

    label_error: str | None = None
