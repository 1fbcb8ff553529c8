import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Order(SQLModel, table=True):
    """
    Customer order.

    Created by a payment webhook / capture (gateway orders) or by an admin
    (manual orders). Monetary fields are fixed-point decimals in `currency`.

    Invariant at creation:
        total_amount == subtotal + tax_amount + shipping_amount
    Admin edits afterwards are not re-validated.
    """

    __tablename__ = "orders"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    # ANA-<year>-<seq> for manual orders, <PROVIDER>_<provider id> otherwise
    order_number: str = Field(
        unique=True,
        index=True,
        description="Human-readable order code (unique)",
    )

    user_id: uuid.UUID | None = Field(
        default=None,
        foreign_key="users.id",
        index=True,
        description="Owner; unset for guest checkout",
    )

    customer_name: str = Field(description="Customer display name")
    customer_email: str = Field(index=True, description="Customer email")
    customer_phone: str | None = None

    # pending | processing | shipped | delivered | cancelled
    status: str = Field(default="pending", index=True)

    # pending | paid | failed | refunded
    payment_status: str = Field(default="pending", index=True)

    # stripe | paypal | crypto | manual
    payment_method: str | None = None

    # Provider-side reference (payment intent, capture id, crypto address)
    provider_payment_id: str | None = None

    currency: str = Field(default="USD", max_length=3)

    subtotal: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    tax_amount: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    shipping_amount: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    total_amount: Decimal = Field(max_digits=12, decimal_places=2)
    refund_amount: Decimal | None = Field(default=None, max_digits=12, decimal_places=2)

    shipping_address: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    billing_address: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    notes: str | None = None

    # Tax & customs snapshot
    buyer_country: str | None = Field(default=None, max_length=2)
    shipping_country: str | None = Field(default=None, max_length=2)
    tax_subtotal_cad: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    tax_breakdown: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    duties_estimated_cad: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    taxes_estimated_cad: Decimal = Field(default=Decimal("0"), max_digits=12, decimal_places=2)
    duties_taxes_currency: str = Field(default="CAD", max_length=3)
    incoterm: str | None = None

    tracking_number: str | None = None

    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    refunded_at: datetime | None = None


class OrderItem(SQLModel, table=True):
    """
    Line item inside an order.

    `price` is the unit price at purchase time, decoupled from the live
    Product price. The customs fields are a snapshot of the product's
    customs defaults so later catalog edits don't change old declarations.
    """

    __tablename__ = "order_items"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    order_id: uuid.UUID = Field(
        foreign_key="orders.id",
        index=True,
    )

    product_id: uuid.UUID = Field(
        foreign_key="products.id",
        index=True,
    )

    quantity: int = Field(
        gt=0,
        description="Quantity ordered (>=1)",
    )

    price: Decimal = Field(
        max_digits=12,
        decimal_places=2,
        description="Unit price at time of order",
    )

    # Customs snapshot
    hs_code: str | None = None
    country_of_origin: str | None = Field(default=None, max_length=2)
    customs_description: str | None = None
    unit_value_cad: Decimal | None = Field(default=None, max_digits=12, decimal_places=2)
    mass_grams_each: int | None = None
    is_digital: bool = False
