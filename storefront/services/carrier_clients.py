"""
Direct label clients for Canada Post and UPS.

Used when the shipping config selects `label_provider="direct"` instead of
Shippo. Both clients take the shapes ShippingService already builds for
Shippo (address dicts, a cm/kg parcel, customs lines) and return a
`CarrierLabel` carrying the raw provider responses for the audit trail.

Canada Post speaks XML over Basic auth: a rating call picks the service
and price, then a non-contract shipment is created and its label artifact
downloaded. UPS uses an OAuth client-credentials token and a JSON ship
request that returns the label inline as base64.
"""
import base64
import binascii
import logging
import uuid
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx

from storefront.core import http
from storefront.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)


class CarrierError(Exception):
    def __init__(self, carrier: str, message: str, status_code: int | None = None):
        super().__init__(f"{carrier}: {message}")
        self.carrier = carrier
        self.message = message
        self.status_code = status_code


class CarrierNotConfigured(CarrierError):
    pass


@dataclass
class CarrierLabel:
    service_code: str
    tracking_number: str | None = None
    shipment_id: str | None = None
    service_name: str | None = None
    cost: Decimal | None = None
    transit_days: int | None = None
    label: bytes | None = None
    label_ext: str = "pdf"
    # provider link to the label when it could not be downloaded
    label_link: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


def _decimal(value: Any) -> Decimal | None:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


# ----- Canada Post -----

RATE_MEDIA_TYPE = "application/vnd.cpc.ship.rate-v4+xml"
NCSHIPMENT_MEDIA_TYPE = "application/vnd.cpc.ncshipment-v4+xml"
RATE_NS = "http://www.canadapost.ca/ws/ship/rate-v4"
NCSHIPMENT_NS = "http://www.canadapost.ca/ws/ncshipment-v4"

# customs-description is capped by the API
CP_DESCRIPTION_MAX = 45


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child(parent: ET.Element, tag: str, text: Any = None) -> ET.Element:
    el = ET.SubElement(parent, tag)
    if text is not None:
        el.text = str(text)
    return el


def _optional(parent: ET.Element, tag: str, text: Any) -> None:
    if text:
        _child(parent, tag, text)


def _find_text(root: ET.Element, tag: str) -> str | None:
    for el in root.iter():
        if _local(el.tag) == tag and el.text:
            return el.text.strip()
    return None


def _postal(code: str | None) -> str:
    return (code or "").replace(" ", "").upper()


def _kg(weight: float) -> str:
    return f"{weight:.3f}"


def _cm(length: float) -> str:
    return f"{length:.1f}"


def _parcel_characteristics(parent: ET.Element, parcel: dict[str, Any]) -> None:
    chars = _child(parent, "parcel-characteristics")
    _child(chars, "weight", _kg(parcel["weight"]))
    dims = _child(chars, "dimensions")
    for key in ("length", "width", "height"):
        _child(dims, key, _cm(parcel[key]))


def _cp_messages(content: bytes) -> str | None:
    try:
        root = ET.fromstring(content)
    except ET.ParseError:
        return None
    descriptions = [el.text.strip() for el in root.iter() if _local(el.tag) == "description" and el.text]
    return "; ".join(descriptions) or None


class CanadaPostClient:
    name = "Canada Post"
    carrier = "canadapost"

    def __init__(self, client: httpx.Client):
        username = settings.CANADA_POST_USERNAME
        password = settings.CANADA_POST_PASSWORD
        if not (username and password and settings.CANADA_POST_CUSTOMER_NUMBER):
            raise CarrierNotConfigured(self.name, "API credentials are not configured")
        self.client = client
        self.auth = (username, password)
        self.customer_number = settings.CANADA_POST_CUSTOMER_NUMBER
        self.base_url = settings.CANADA_POST_API_BASE.rstrip("/")

    @staticmethod
    def service_for(country: str) -> str:
        if country == "CA":
            return settings.CANADA_POST_DOMESTIC_SERVICE
        if country == "US":
            return settings.CANADA_POST_USA_SERVICE
        return settings.CANADA_POST_INTL_SERVICE

    def _post(self, path: str, media_type: str, doc: ET.Element, what: str) -> tuple[ET.Element, str]:
        body = ET.tostring(doc, encoding="utf-8", xml_declaration=True)
        try:
            resp = self.client.post(
                f"{self.base_url}{path}",
                content=body,
                auth=self.auth,
                headers={"Content-Type": media_type, "Accept": media_type, "Accept-language": "en-CA"},
            )
        except httpx.HTTPError as e:
            raise CarrierError(self.name, f"{what} failed: {e}") from e
        if resp.status_code >= 400:
            detail = _cp_messages(resp.content) or f"HTTP {resp.status_code}"
            raise CarrierError(self.name, f"{what} failed: {detail}", resp.status_code)
        try:
            return ET.fromstring(resp.content), resp.text
        except ET.ParseError as e:
            raise CarrierError(self.name, f"{what} returned invalid XML") from e

    def quote(
        self,
        sender: dict[str, Any],
        recipient: dict[str, Any],
        parcel: dict[str, Any],
    ) -> tuple[list[dict[str, Any]], str]:
        """Price quotes for every service to the destination, plus the raw XML."""
        doc = ET.Element("mailing-scenario", xmlns=RATE_NS)
        _child(doc, "customer-number", self.customer_number)
        _parcel_characteristics(doc, parcel)
        _child(doc, "origin-postal-code", _postal(sender["zip"]))
        destination = _child(doc, "destination")
        country = recipient["country"]
        if country == "CA":
            _child(_child(destination, "domestic"), "postal-code", _postal(recipient["zip"]))
        elif country == "US":
            _child(_child(destination, "united-states"), "zip-code", recipient["zip"])
        else:
            _child(_child(destination, "international"), "country-code", country)

        tree, raw = self._post("/rs/ship/price", RATE_MEDIA_TYPE, doc, "rating")
        quotes = [
            {
                "service_code": _find_text(q, "service-code"),
                "service_name": _find_text(q, "service-name"),
                "due": _find_text(q, "due"),
                "transit_days": _find_text(q, "expected-transit-time"),
            }
            for q in tree.iter()
            if _local(q.tag) == "price-quote"
        ]
        return quotes, raw

    def _shipment_doc(
        self,
        reference: str,
        service_code: str,
        sender: dict[str, Any],
        recipient: dict[str, Any],
        parcel: dict[str, Any],
        customs_lines: list[dict[str, Any]] | None,
    ) -> ET.Element:
        doc = ET.Element("non-contract-shipment", xmlns=NCSHIPMENT_NS)
        _child(doc, "requested-shipping-point", _postal(sender["zip"]))
        delivery = _child(doc, "delivery-spec")
        _child(delivery, "service-code", service_code)

        s = _child(delivery, "sender")
        _optional(s, "name", sender.get("name"))
        _child(s, "company", sender.get("company") or sender.get("name"))
        _optional(s, "contact-phone", sender.get("phone"))
        address = _child(s, "address-details")
        _child(address, "address-line-1", sender["street1"])
        _child(address, "city", sender["city"])
        _child(address, "prov-state", sender["state"])
        _child(address, "postal-zip-code", _postal(sender["zip"]))

        country = recipient["country"]
        d = _child(delivery, "destination")
        _child(d, "name", recipient["name"])
        _optional(d, "company", recipient.get("company"))
        address = _child(d, "address-details")
        _child(address, "address-line-1", recipient["street1"])
        _optional(address, "address-line-2", recipient.get("street2"))
        _child(address, "city", recipient["city"])
        _optional(address, "prov-state", recipient.get("state"))
        _child(address, "country-code", country)
        _child(address, "postal-zip-code", _postal(recipient["zip"]) if country == "CA" else recipient["zip"])

        if country != "CA":
            # non-delivery handling is mandatory abroad: return at sender's expense
            option = _child(_child(delivery, "options"), "option")
            _child(option, "option-code", "RASE")

        _parcel_characteristics(delivery, parcel)
        _child(_child(delivery, "preferences"), "show-packing-instructions", "true")
        _child(_child(delivery, "references"), "customer-ref-1", reference)

        if customs_lines:
            customs = _child(delivery, "customs")
            _child(customs, "currency", "CAD")
            _child(customs, "reason-for-export", "SOG")
            skus = _child(customs, "sku-list")
            for line in customs_lines:
                item = _child(skus, "item")
                _child(item, "customs-number-of-units", line["quantity"])
                _child(item, "customs-description", line["description"][:CP_DESCRIPTION_MAX])
                _optional(item, "hs-tariff-code", line.get("tariff_number"))
                _child(item, "unit-weight", _kg(line["net_weight"]))
                _child(item, "customs-value-per-unit", line["value_amount"])
                _child(item, "country-of-origin", line["origin_country"])
        return doc

    def _download(self, href: str) -> bytes | None:
        try:
            resp = self.client.get(href, auth=self.auth, headers={"Accept": "application/pdf"})
        except httpx.HTTPError as e:
            logger.error("Canada Post label download failed: %s", e)
            return None
        if resp.status_code >= 400:
            logger.error("Canada Post label download failed (%s)", resp.status_code)
            return None
        return resp.content

    def create_label(
        self,
        reference: str,
        sender: dict[str, Any],
        recipient: dict[str, Any],
        parcel: dict[str, Any],
        customs_lines: list[dict[str, Any]] | None = None,
    ) -> CarrierLabel:
        wanted = self.service_for(recipient["country"])
        quotes, rate_raw = self.quote(sender, recipient, parcel)
        quote = next((q for q in quotes if q["service_code"] == wanted), quotes[0] if quotes else None)
        if quote is None:
            raise CarrierError(self.name, "no services available for this destination")

        doc = self._shipment_doc(reference, quote["service_code"], sender, recipient, parcel, customs_lines)
        tree, shipment_raw = self._post(
            f"/rs/{self.customer_number}/ncshipment", NCSHIPMENT_MEDIA_TYPE, doc, "shipment"
        )
        href = next(
            (el.get("href") for el in tree.iter() if _local(el.tag) == "link" and el.get("rel") == "label"),
            None,
        )
        return CarrierLabel(
            service_code=quote["service_code"],
            service_name=quote["service_name"],
            tracking_number=_find_text(tree, "tracking-pin"),
            shipment_id=_find_text(tree, "shipment-id"),
            cost=_decimal(quote["due"]),
            transit_days=_int(quote["transit_days"]),
            label=self._download(href) if href else None,
            label_link=href,
            raw={"rate": rate_raw, "shipment": shipment_raw},
        )


# ----- UPS -----

UPS_SERVICES = {
    "01": "UPS Next Day Air",
    "02": "UPS 2nd Day Air",
    "03": "UPS Ground",
    "07": "UPS Worldwide Express",
    "08": "UPS Worldwide Expedited",
    "11": "UPS Standard",
    "12": "UPS 3 Day Select",
    "13": "UPS Next Day Air Saver",
    "65": "UPS Worldwide Saver",
}

UPS_SHIP_PATH = "/api/shipments/v2409/ship"
UPS_DESCRIPTION_MAX = 35


def _ups_errors(resp: httpx.Response) -> str:
    try:
        errors = resp.json()["response"]["errors"]
        return "; ".join(str(e.get("message")) for e in errors) or f"HTTP {resp.status_code}"
    except (ValueError, KeyError, TypeError, AttributeError):
        return http.error_text(resp)


def _ups_address(a: dict[str, Any]) -> dict[str, Any]:
    address = {
        "AddressLine": [line for line in (a.get("street1"), a.get("street2")) if line],
        "City": a["city"],
        "PostalCode": a["zip"],
        "CountryCode": a["country"],
    }
    if a.get("state"):
        address["StateProvinceCode"] = a["state"]
    return address


def _ups_party(a: dict[str, Any]) -> dict[str, Any]:
    party = {
        "Name": (a.get("company") or a["name"])[:35],
        "AttentionName": a["name"][:35],
        "Address": _ups_address(a),
    }
    if a.get("phone"):
        party["Phone"] = {"Number": a["phone"]}
    return party


class UPSClient:
    name = "UPS"
    carrier = "ups"

    def __init__(self, client: httpx.Client):
        if not (settings.UPS_CLIENT_ID and settings.UPS_CLIENT_SECRET and settings.UPS_ACCOUNT_NUMBER):
            raise CarrierNotConfigured(self.name, "API credentials are not configured")
        self.client = client
        self.account = settings.UPS_ACCOUNT_NUMBER
        self.base_url = settings.UPS_API_BASE.rstrip("/")

    def access_token(self) -> str:
        try:
            resp = self.client.post(
                f"{self.base_url}/security/v1/oauth/token",
                data={"grant_type": "client_credentials"},
                auth=(settings.UPS_CLIENT_ID, settings.UPS_CLIENT_SECRET),
                headers={"x-merchant-id": self.account},
            )
        except httpx.HTTPError as e:
            raise CarrierError(self.name, f"auth failed: {e}") from e
        if resp.status_code >= 400:
            raise CarrierError(self.name, f"auth failed: {_ups_errors(resp)}", resp.status_code)
        token = resp.json().get("access_token")
        if not token:
            raise CarrierError(self.name, "auth response had no access token")
        return token

    def _customs(self, lines: list[dict[str, Any]]) -> dict[str, Any]:
        """Commercial invoice; duties billed to the shipper (DDP)."""
        return {
            "InternationalForms": {
                "FormType": "01",
                "InvoiceDate": date.today().strftime("%Y%m%d"),
                "ReasonForExport": "SALE",
                "CurrencyCode": "CAD",
                "TermsOfShipment": "DDP",
                "Product": [
                    {
                        "Description": [line["description"][:UPS_DESCRIPTION_MAX]],
                        "CommodityCode": line.get("tariff_number") or "",
                        "OriginCountryCode": line["origin_country"],
                        "Unit": {
                            "Number": str(line["quantity"]),
                            "Value": line["value_amount"],
                            "UnitOfMeasurement": {"Code": "PCS"},
                        },
                        "ProductWeight": {
                            "UnitOfMeasurement": {"Code": "KGS"},
                            "Weight": f"{max(line['net_weight'] * line['quantity'], 0.1):.1f}",
                        },
                    }
                    for line in lines
                ],
            }
        }

    def ship_request(
        self,
        reference: str,
        sender: dict[str, Any],
        recipient: dict[str, Any],
        parcel: dict[str, Any],
        customs_lines: list[dict[str, Any]] | None,
    ) -> dict[str, Any]:
        charges = [{"Type": "01", "BillShipper": {"AccountNumber": self.account}}]
        shipment: dict[str, Any] = {
            "Description": "Merchandise",
            "Shipper": dict(_ups_party(sender), ShipperNumber=self.account),
            "ShipTo": _ups_party(recipient),
            "ShipFrom": _ups_party(sender),
            "PaymentInformation": {"ShipmentCharge": charges},
            "Service": {"Code": settings.UPS_SERVICE_CODE},
            "Package": {
                "Packaging": {"Code": "02"},
                "Dimensions": {
                    "UnitOfMeasurement": {"Code": "CM"},
                    "Length": _cm(parcel["length"]),
                    "Width": _cm(parcel["width"]),
                    "Height": _cm(parcel["height"]),
                },
                "PackageWeight": {
                    "UnitOfMeasurement": {"Code": "KGS"},
                    "Weight": f"{parcel['weight']:.1f}",
                },
            },
        }
        if customs_lines:
            charges.append({"Type": "02", "BillShipper": {"AccountNumber": self.account}})
            shipment["ShipmentServiceOptions"] = self._customs(customs_lines)
        return {
            "ShipmentRequest": {
                "Request": {
                    "RequestOption": "nonvalidate",
                    "TransactionReference": {"CustomerContext": reference},
                },
                "Shipment": shipment,
                "LabelSpecification": {
                    "LabelImageFormat": {"Code": "GIF"},
                    "LabelStockSize": {"Height": "6", "Width": "4"},
                },
            }
        }

    def create_label(
        self,
        reference: str,
        sender: dict[str, Any],
        recipient: dict[str, Any],
        parcel: dict[str, Any],
        customs_lines: list[dict[str, Any]] | None = None,
    ) -> CarrierLabel:
        token = self.access_token()
        try:
            resp = self.client.post(
                f"{self.base_url}{UPS_SHIP_PATH}",
                json=self.ship_request(reference, sender, recipient, parcel, customs_lines),
                headers={
                    "Authorization": f"Bearer {token}",
                    "transId": uuid.uuid4().hex,
                    "transactionSrc": "storefront",
                },
            )
        except httpx.HTTPError as e:
            raise CarrierError(self.name, f"shipment failed: {e}") from e
        if resp.status_code >= 400:
            raise CarrierError(self.name, f"shipment failed: {_ups_errors(resp)}", resp.status_code)

        data = resp.json()
        results = (data.get("ShipmentResponse") or {}).get("ShipmentResults") or {}
        package = results.get("PackageResults") or {}
        if isinstance(package, list):
            package = package[0] if package else {}
        image = (package.get("ShippingLabel") or {}).get("GraphicImage")
        try:
            label = base64.b64decode(image) if image else None
        except (binascii.Error, ValueError):
            logger.error("UPS label image for %s is not valid base64", reference)
            label = None

        total = ((results.get("ShipmentCharges") or {}).get("TotalCharges") or {}).get("MonetaryValue")
        code = settings.UPS_SERVICE_CODE
        return CarrierLabel(
            service_code=code,
            service_name=UPS_SERVICES.get(code, f"UPS {code}"),
            tracking_number=package.get("TrackingNumber"),
            shipment_id=results.get("ShipmentIdentificationNumber"),
            cost=_decimal(total),
            label=label,
            label_ext="gif",
            raw={"shipment": data},
        )


def carrier_client(carrier: str, client: httpx.Client) -> CanadaPostClient | UPSClient:
    if carrier == "ups":
        return UPSClient(client)
    return CanadaPostClient(client)
