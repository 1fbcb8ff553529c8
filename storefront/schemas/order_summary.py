"""
Compact order summary carried through payment-provider metadata.

The checkout step serializes it into Stripe session metadata, the PayPal
approval URL (`custom_data`) and the NOWPayments `order_description`; the
webhook/capture step reads it back to rebuild the order.

Stripe caps metadata values, so `to_metadata()` degrades the payload in a
fixed order until it fits:

  1. full items       [{"i": id, "n": name, "q": qty, "p": price}, ...]
  2. no item pricing  [{"i": id, "n": name, "q": qty}, ...]
  3. item count only  {"count": N}
  4. minimal          totals, currency and count only
"""
import json
import logging
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

logger = logging.getLogger(__name__)

SUMMARY_VERSION = 1
STRIPE_METADATA_LIMIT = 480


class SummaryItem(BaseModel):
    model_config = ConfigDict(extra="ignore")

    i: str | None = None  # product id
    n: str = "Item"
    q: int = 1
    p: float | None = None


class ItemCount(BaseModel):
    count: int = 0


class OrderSummary(BaseModel):
    """Versioned order snapshot; camelCase on the wire, None fields dropped."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
    )

    v: int = SUMMARY_VERSION
    items: list[SummaryItem] | ItemCount = Field(default_factory=list)
    subtotal: float = 0
    total_amount: float = 0
    shipping_amount: float = 0
    extra_label: str | None = None
    extra_amount: float = 0
    buyer_country: str | None = None
    province: str | None = None
    tax_breakdown: dict[str, float] | None = None
    payment_method: str | None = None
    currency: str = "USD"
    billing_same_as_shipping: bool | None = None
    user_id: str | None = None
    user_email: str | None = None
    aff: str | None = None
    shipping_address: dict[str, Any] | None = None
    billing_address: dict[str, Any] | None = None

    # ----- Derived -----

    @property
    def item_count(self) -> int:
        if isinstance(self.items, ItemCount):
            return self.items.count
        return len(self.items)

    @property
    def item_list(self) -> list[SummaryItem]:
        return self.items if isinstance(self.items, list) else []

    @property
    def extra_kind(self) -> str | None:
        label = (self.extra_label or "").lower()
        if "tariff" in label:
            return "tariff"
        if "tax" in label:
            return "tax"
        return None

    # ----- Write -----

    def dumps(self) -> str:
        return json.dumps(
            self.model_dump(by_alias=True, exclude_none=True, mode="json"),
            separators=(",", ":"),
        )

    def to_metadata(self, limit: int = STRIPE_METADATA_LIMIT) -> str:
        """Serialize, degrading item detail until the string fits `limit`."""
        raw = self.dumps()
        if len(raw) <= limit:
            return raw

        items = self.item_list
        count = self.item_count

        unpriced = self.model_copy(
            update={"items": [SummaryItem(i=it.i, n=it.n, q=it.q) for it in items]}
        )
        raw = unpriced.dumps()
        if len(raw) <= limit:
            return raw

        counted = self.model_copy(update={"items": ItemCount(count=count)})
        raw = counted.dumps()
        if len(raw) <= limit:
            return raw

        minimal = OrderSummary(
            items=ItemCount(count=count),
            subtotal=self.subtotal,
            total_amount=self.total_amount,
            shipping_amount=self.shipping_amount,
            extra_amount=self.extra_amount,
            extra_label=self.extra_label if self.extra_label and len(self.extra_label) <= 40 else None,
            currency=self.currency,
            payment_method=self.payment_method,
        )
        return minimal.dumps()

    # ----- Read -----

    @classmethod
    def from_metadata(cls, raw: str | dict | None) -> "OrderSummary":
        """
        Parse a summary; missing or corrupt input yields an empty summary
        so webhook handling can continue.
        """
        if not raw:
            return cls()
        try:
            data = json.loads(raw) if isinstance(raw, str) else raw
            if not isinstance(data, dict):
                raise ValueError("summary is not an object")
            if data.get("v", SUMMARY_VERSION) != SUMMARY_VERSION:
                logger.warning("Unknown order summary version %s", data.get("v"))
            return cls.model_validate(data)
        except (ValueError, ValidationError) as e:
            logger.warning("Discarding unreadable order summary: %s", e)
            return cls()


def decimal_or_zero(value: Any) -> Decimal:
    try:
        return Decimal(str(value)).quantize(Decimal("0.01"))
    except (ArithmeticError, ValueError, TypeError):
        return Decimal("0.00")
