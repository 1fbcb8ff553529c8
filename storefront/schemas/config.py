"""
Typed models for the runtime-editable configuration domains.

Each domain is stored as one AppConfig row (see ConfigService). Fields
listed in a model's `secret_fields` are masked as "***" when read back
through the admin API; writing "***" keeps the stored value.
"""
from decimal import Decimal
from typing import ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field

MASK = "***"


class ConfigModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    secret_fields: ClassVar[frozenset[str]] = frozenset()


# ----- tax -----


class TaxConfig(ConfigModel):
    # Fraction of the subtotal charged as a prepaid US tariff (0.35 = 35 %)
    us_tariff_rate: Decimal = Field(default=Decimal("0.35"), ge=0, le=1)


# ----- payments -----


class StripeGateway(ConfigModel):
    secret_fields = frozenset(
        {"secret_key", "webhook_secret", "test_secret_key", "test_webhook_secret"}
    )

    enabled: bool = False
    test_mode: bool = True
    publishable_key: str = ""
    secret_key: str = ""
    webhook_secret: str = ""
    test_publishable_key: str = ""
    test_secret_key: str = ""
    test_webhook_secret: str = ""


class PayPalGateway(ConfigModel):
    secret_fields = frozenset({"client_secret", "test_client_secret"})

    enabled: bool = False
    test_mode: bool = True
    client_id: str = ""
    client_secret: str = ""
    test_client_id: str = ""
    test_client_secret: str = ""


class NowPaymentsGateway(ConfigModel):
    secret_fields = frozenset({"api_key", "test_api_key", "ipn_secret"})

    enabled: bool = False
    test_mode: bool = False
    api_key: str = ""
    public_key: str = ""
    test_api_key: str = ""
    ipn_secret: str = ""


class PaymentsConfig(ConfigModel):
    stripe: StripeGateway = Field(default_factory=StripeGateway)
    paypal: PayPalGateway = Field(default_factory=PayPalGateway)
    now_payments: NowPaymentsGateway = Field(default_factory=NowPaymentsGateway)
    currency: str = "USD"


# ----- shipping -----


class OriginAddress(ConfigModel):
    name: str = ""
    company: str | None = None
    street1: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""
    country: str = "CA"
    phone: str | None = None


class ParcelDefault(ConfigModel):
    length: float = 20
    width: float = 15
    height: float = 5
    distance_unit: str = "cm"
    weight: float = 0.5
    mass_unit: str = "kg"


class CarrierAccounts(ConfigModel):
    canada_post: str | None = None
    ups_canada: str | None = None


class ShippingConfig(ConfigModel):
    # "direct" buys labels from Canada Post / UPS without Shippo
    label_provider: Literal["shippo", "direct"] = "shippo"
    origin: OriginAddress = Field(default_factory=OriginAddress)
    parcel_default: ParcelDefault = Field(default_factory=ParcelDefault)
    carrier_account_ids: CarrierAccounts = Field(default_factory=CarrierAccounts)
    parcel_template_id: str | None = None


# ----- support -----


class SupportConfig(ConfigModel):
    enabled: bool = False
    # System prompt for the support assistant; empty uses the built-in one
    description: str = ""
    kb_files: list[str] = Field(default_factory=list)


# ----- email -----


class EmailTemplates(ConfigModel):
    order_receipt_subject: str = "[{brand}] Order {order_number} confirmed"
    order_receipt_intro: str = "Thank you for your order!"
    admin_copy_subject: str = "[{brand}] New order {order_number}"
