"""
Destination-based tax and duty estimation.

All arithmetic is done in integer cents. Each tax component is computed
once on its taxable base and rounded half-up to the cent:

  - GST / HST: every item (physical and digital)
  - PST / QST: physical items only

Conversion to decimal currency happens at the API boundary
(`cents_to_decimal`, `format_cents`).
"""
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

# Percent rates per province / territory.
# QC's QST is reported in the PST slot.
CANADIAN_TAX_RATES: dict[str, dict[str, Decimal]] = {
    # HST provinces
    "ON": {"hst": Decimal("13")},
    "NB": {"hst": Decimal("15")},
    "NL": {"hst": Decimal("15")},
    "NS": {"hst": Decimal("15")},
    "PE": {"hst": Decimal("15")},
    # GST only
    "AB": {"gst": Decimal("5")},
    "NT": {"gst": Decimal("5")},
    "NU": {"gst": Decimal("5")},
    "YT": {"gst": Decimal("5")},
    # GST + PST
    "BC": {"gst": Decimal("5"), "pst": Decimal("7")},
    "SK": {"gst": Decimal("5"), "pst": Decimal("6")},
    "MB": {"gst": Decimal("5"), "pst": Decimal("7")},
    # GST + QST
    "QC": {"gst": Decimal("5"), "pst": Decimal("9.975")},
}

PROVINCE_NAMES: dict[str, str] = {
    "AB": "Alberta",
    "BC": "British Columbia",
    "MB": "Manitoba",
    "NB": "New Brunswick",
    "NL": "Newfoundland and Labrador",
    "NS": "Nova Scotia",
    "NT": "Northwest Territories",
    "NU": "Nunavut",
    "ON": "Ontario",
    "PE": "Prince Edward Island",
    "QC": "Quebec",
    "SK": "Saskatchewan",
    "YT": "Yukon",
}

# Placeholder approximation of US import duties, not a customs computation.
DEFAULT_US_TARIFF_RATE = Decimal("0.35")

TAX_LABEL = "Taxes (GST/HST/PST)"
TARIFF_LABEL = "Prepaid Tariff (DDP {pct}%)"

CENT = Decimal("0.01")


class UnsupportedProvinceError(ValueError):
    """Raised for a Canadian destination whose province code is not in the table."""

    def __init__(self, province: str):
        super().__init__(f"Unsupported province: {province}")
        self.province = province


@dataclass(frozen=True)
class TaxItem:
    is_digital: bool
    price_cents: int
    quantity: int


@dataclass(frozen=True)
class TaxResult:
    gst_cents: int = 0
    hst_cents: int = 0
    pst_cents: int = 0

    @property
    def total_tax_cents(self) -> int:
        return self.gst_cents + self.hst_cents + self.pst_cents

    def breakdown(self) -> dict[str, Decimal]:
        """{gst, hst, pst} in currency units, as stored on the order."""
        return {
            "gst": cents_to_decimal(self.gst_cents),
            "hst": cents_to_decimal(self.hst_cents),
            "pst": cents_to_decimal(self.pst_cents),
        }


@dataclass(frozen=True)
class DestinationCharge:
    """Extra amount added on top of the subtotal for a destination."""

    amount: Decimal
    label: str | None
    kind: str | None  # "tax" | "tariff" | None
    tax: TaxResult | None = None


def _percent_of(base_cents: int, percent: Decimal) -> int:
    value = Decimal(base_cents) * percent / Decimal(100)
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def to_cents(amount: Decimal | float | int | str) -> int:
    value = Decimal(str(amount)) * 100
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def cents_to_decimal(cents: int) -> Decimal:
    return (Decimal(cents) / 100).quantize(CENT)


def format_cents(cents: int) -> str:
    return f"{cents_to_decimal(cents):.2f}"


def calculate_canadian_taxes(
    buyer_country: str,
    destination_province: str | None,
    items: Iterable[TaxItem],
) -> TaxResult:
    """
    Compute GST/HST/PST for a Canadian destination.

    Non-Canadian buyers (exports) get an all-zero result.

    Raises:
        UnsupportedProvinceError: Canadian buyer with an unknown province.
    """
    items = list(items)
    if (buyer_country or "").upper() != "CA":
        return TaxResult()

    province = (destination_province or "").strip().upper()
    rates = CANADIAN_TAX_RATES.get(province)
    if rates is None:
        raise UnsupportedProvinceError(destination_province or "")

    all_cents = sum(it.price_cents * it.quantity for it in items)
    physical_cents = sum(
        it.price_cents * it.quantity for it in items if not it.is_digital
    )

    if "hst" in rates:
        return TaxResult(hst_cents=_percent_of(all_cents, rates["hst"]))

    gst = _percent_of(all_cents, rates["gst"])
    pst = _percent_of(physical_cents, rates["pst"]) if "pst" in rates else 0
    return TaxResult(gst_cents=gst, pst_cents=pst)


def us_prepaid_tariff(subtotal: Decimal, rate: Decimal = DEFAULT_US_TARIFF_RATE) -> Decimal:
    """Flat tariff on the whole subtotal, rounded to the cent."""
    return (Decimal(subtotal) * rate).quantize(CENT, rounding=ROUND_HALF_UP)


def destination_charge(
    country: str | None,
    province: str | None,
    items: Iterable[TaxItem],
    subtotal: Decimal,
    us_tariff_rate: Decimal = DEFAULT_US_TARIFF_RATE,
) -> DestinationCharge:
    """
    Extra charge for a shipping destination:

      - CA with a province: GST/HST/PST
      - US: prepaid tariff; labelled only when it exceeds one cent
      - anything else: nothing
    """
    country = (country or "").upper()

    if country == "CA" and province:
        tax = calculate_canadian_taxes("CA", province, items)
        return DestinationCharge(
            amount=cents_to_decimal(tax.total_tax_cents),
            label=TAX_LABEL,
            kind="tax",
            tax=tax,
        )

    if country == "US":
        amount = us_prepaid_tariff(subtotal, us_tariff_rate)
        if amount > CENT:
            pct = (us_tariff_rate * 100).normalize()
            return DestinationCharge(
                amount=amount,
                label=TARIFF_LABEL.format(pct=f"{pct:f}"),
                kind="tariff",
            )
        return DestinationCharge(amount=amount, label=None, kind=None)

    return DestinationCharge(amount=Decimal("0.00"), label=None, kind=None)


def province_name(code: str) -> str:
    return PROVINCE_NAMES.get((code or "").upper(), code)


def tax_type_for_province(code: str) -> str:
    rates = CANADIAN_TAX_RATES.get((code or "").upper())
    if not rates:
        return "GST"
    if "hst" in rates:
        return "HST"
    if "pst" in rates:
        return "GST + PST"
    return "GST"
