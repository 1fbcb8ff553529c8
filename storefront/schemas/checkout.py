from decimal import Decimal
from typing import Any, Literal

from pydantic import ConfigDict, Field, field_validator
from sqlmodel import SQLModel

from storefront.schemas.common import CAMEL_INPUT, Address, Money

ItemType = Literal["product", "seal"]


class CheckoutItem(SQLModel):
    """
    One cart line as sent by the storefront.

    `custom_data.isDigital` marks digital products; `seal` items are always
    digital.
    """

    model_config = CAMEL_INPUT

    product_id: str | None = None
    type: ItemType = "product"
    name: str = Field(min_length=1, max_length=200)
    price: Decimal = Field(ge=0)
    quantity: int = Field(gt=0)
    image_url: str | None = None
    custom_data: dict[str, Any] | None = None

    @property
    def is_digital(self) -> bool:
        return self.type == "seal" or bool((self.custom_data or {}).get("isDigital"))


class CheckoutRequest(SQLModel):
    """
    Payload shared by the three checkout endpoints.

    Amounts (`price`, `shipping_amount`) are USD; `currency` is the display
    currency the customer is charged in.
    """

    model_config = ConfigDict(**CAMEL_INPUT, extra="ignore")

    items: list[CheckoutItem] = Field(default_factory=list)
    user_id: str | None = None
    user_email: str | None = None
    shipping_address: Address | None = None
    billing_address: Address | None = None
    billing_same_as_shipping: bool = False
    allow_guest: bool = False
    shipping_amount: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = "USD"
    # crypto only: coin the customer pays with
    pay_currency: str = "btc"
    affiliate_code: str | None = None

    @field_validator("currency")
    @classmethod
    def normalize_currency(cls, v: str) -> str:
        v = (v or "USD").strip().upper()
        if len(v) != 3 or not v.isalpha():
            raise ValueError("currency must be a 3-letter code")
        return v

    @property
    def all_physical(self) -> bool:
        return bool(self.items) and all(
            it.type == "product" and not it.is_digital for it in self.items
        )


class CheckoutQuote(SQLModel):
    """Amounts for one checkout in the charged currency."""

    currency: str
    rate: Decimal
    subtotal: Money
    extra_amount: Money
    extra_label: str | None = None
    extra_kind: str | None = None
    shipping_amount: Money
    total_amount: Money
    tax_breakdown: dict[str, Money] | None = None
    buyer_country: str = ""
    province: str | None = None


class StripeCheckoutResponse(SQLModel):
    session_id: str
    url: str | None = None
    livemode: bool | None = None


class PayPalCheckoutResponse(SQLModel):
    order_id: str
    approval_url: str


class CryptoCheckoutResponse(SQLModel):
    payment_id: str
    pay_address: str | None = None
    pay_amount: float | None = None
    pay_currency: str | None = None
    price_amount: float | None = None
    price_currency: str | None = None
    payment_status: str | None = None


class CryptoStatusResponse(SQLModel):
    payment_id: str
    status: Literal["pending", "confirming", "confirmed", "failed"]
    payment_status: str | None = None
    pay_amount: float | None = None
    actually_paid: float | None = None
    pay_currency: str | None = None
