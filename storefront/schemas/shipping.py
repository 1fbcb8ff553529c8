import uuid
from decimal import Decimal
from typing import Any, Literal

from pydantic import ConfigDict
from sqlmodel import SQLModel, Field

Carrier = Literal["canada-post", "ups"]
LabelProvider = Literal["shippo", "direct"]


class ShippingAddressIn(SQLModel):
    """Sender / recipient in the admin shipping UI shape."""

    name: str
    company: str | None = None
    address: str
    city: str
    state: str
    postal_code: str
    country: str
    phone: str | None = None
    email: str | None = None


class ParcelIn(SQLModel):
    length: float = Field(gt=0)
    width: float = Field(gt=0)
    height: float = Field(gt=0)
    # kg
    weight: float = Field(gt=0)


class CustomsItemIn(SQLModel):
    description: str
    quantity: int = Field(gt=0)
    unit_value_cad: Decimal = Field(ge=0)
    hs_code: str | None = None
    country_of_origin: str | None = "CA"
    mass_grams_each: int | None = None


class RatesRequest(SQLModel):
    model_config = ConfigDict(extra="ignore")

    sender: ShippingAddressIn | None = None
    recipient: ShippingAddressIn
    parcel: ParcelIn | None = None
    customs_items: list[CustomsItemIn] | None = None
    carrier: Carrier | None = None
    carrier_account_id: str | None = None


class RatesResponse(SQLModel):
    shipment_id: str | None = None
    rates: list[dict[str, Any]]


class LabelRequest(SQLModel):
    model_config = ConfigDict(extra="ignore")

    order_id: uuid.UUID
    carrier: Carrier = "canada-post"
    parcel: ParcelIn | None = None
    customs_items: list[CustomsItemIn] | None = None
    carrier_account_id: str | None = None
    # None uses the shipping config
    provider: LabelProvider | None = None


class LabelResponse(SQLModel):
    success: bool = True
    provider: str = "shippo"
    shipment_record_id: uuid.UUID
    tracking_number: str | None = None
    label_url: str | None = None
    rate: dict[str, Any] | None = None
    shipment_id: str | None = None
    transaction_id: str | None = None


class PurchaseRequest(SQLModel):
    rate_object_id: str
    label_file_type: Literal["PDF_4x6", "PDF_A4", "PNG", "ZPLII", "PDF"] = "PDF_4x6"
    order_id: uuid.UUID | None = None
    carrier: str | None = None


class PurchaseResponse(SQLModel):
    ok: bool = True
    transaction_id: str | None = None
    shipment_id: str | None = None
    tracking_number: str | None = None
    label_url: str | None = None
    status: str | None = None
    messages: list[Any] = Field(default_factory=list)


class CancelRequest(SQLModel):
    transaction_id: str
    shipment_id: uuid.UUID | None = None


class TrackRequest(SQLModel):
    carrier: str
    tracking_number: str


class CustomsValidationItem(SQLModel):
    name: str
    quantity: int = 1
    is_digital: bool = False
    hs_code: str | None = None
    country_of_origin: str | None = None
    customs_description: str | None = None
    unit_value_cad: Decimal | None = None
    mass_grams_each: int | None = None


class CustomsValidationRequest(SQLModel):
    items: list[CustomsValidationItem]
    destination_country: str
    origin_country: str = "CA"


class CustomsValidationError(SQLModel):
    field: str
    item_index: int
    item_name: str
    message: str


class CustomsValidationResult(SQLModel):
    is_valid: bool
    is_ddp_required: bool
    errors: list[CustomsValidationError] = Field(default_factory=list)
    total_value_cad: float = 0
    total_weight_grams: int = 0
