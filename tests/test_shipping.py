import base64
import json
import os
import xml.etree.ElementTree as ET
from decimal import Decimal
from pathlib import Path

import httpx
import pytest
from sqlmodel import select

from conftest import ON_ADDRESS
from storefront.models.order import Order, OrderItem
from storefront.models.shipment import Shipment
from storefront.schemas.shipping import CustomsValidationItem
from storefront.services import carrier_clients
from storefront.services.shipping_service import select_preferred_rate, validate_customs


ORIGIN = {
    "origin": {
        "name": "ANOINT Array",
        "street1": "100 Queen St",
        "city": "Ottawa",
        "state": "ON",
        "zip": "K1P 1J9",
        "country": "CA",
    },
    "carrier_account_ids": {"canada_post": "acct_cp"},
}

US_ADDRESS = {
    "full_name": "John Smith",
    "street": "350 5th Ave",
    "city": "New York",
    "state": "NY",
    "zip": "10118",
    "country": "US",
}

RATES = [
    {"object_id": "rate_ups", "provider": "UPS", "amount": "31.00", "carrier_account": "acct_ups",
     "servicelevel": {"name": "Standard"}},
    {"object_id": "rate_cp_other", "provider": "Canada Post", "amount": "20.00", "carrier_account": "acct_x",
     "servicelevel": {"name": "Expedited"}},
    {"object_id": "rate_cp", "provider": "Canada Post", "amount": "18.40", "carrier_account": "acct_cp",
     "servicelevel": {"name": "Tracked Packet USA"}, "estimated_days": 6},
]


def shippo_handler(purchase_status="SUCCESS"):
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["Authorization"] == "ShippoToken shippo_test_key"
        if request.url.path == "/shipments/":
            return httpx.Response(201, json={"object_id": "shp_1", "rates": RATES})
        if request.url.path == "/transactions/":
            body = json.loads(request.content)
            return httpx.Response(
                201,
                json={
                    "object_id": "tx_1",
                    "status": purchase_status,
                    "rate": body["rate"],
                    "tracking_number": "CP123456789CA",
                    "label_url": "https://shippo.test/label.pdf",
                    "messages": [] if purchase_status == "SUCCESS" else [{"text": "address invalid"}],
                },
            )
        if request.url.path == "/refunds/":
            return httpx.Response(201, json={"object_id": "rf_1", "status": "QUEUED"})
        if request.url.path.startswith("/tracks/"):
            return httpx.Response(200, json={"tracking_status": {"status": "TRANSIT"}})
        return httpx.Response(404, json={"detail": "not found"})

    return handler


@pytest.fixture
def configured(client, admin_headers):
    resp = client.put("/api/admin/shipping/config", json=ORIGIN, headers=admin_headers)
    assert resp.status_code == 200, resp.text


@pytest.fixture
def us_order(session):
    order = Order(
        order_number="ANA-2026-001",
        customer_name="John Smith",
        customer_email="john@example.com",
        subtotal=Decimal("40.00"),
        total_amount=Decimal("40.00"),
        shipping_address=dict(US_ADDRESS),
    )
    session.add(order)
    session.commit()
    session.refresh(order)
    return order


def shipment_request(mock_http) -> dict:
    (request,) = mock_http.find("/shipments/")
    return json.loads(request.content)


class TestLabel:
    def test_us_order_without_items_gets_generic_customs_line(
        self, client, admin_headers, configured, us_order, mock_http, session
    ):
        mock_http.handler = shippo_handler()
        resp = client.post("/api/admin/shipping/label", json={"order_id": str(us_order.id)}, headers=admin_headers)
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["tracking_number"] == "CP123456789CA"
        assert data["rate"]["object_id"] == "rate_cp"

        body = shipment_request(mock_http)
        customs = body["customs_declaration"]
        assert customs["incoterm"] == "DDP"
        assert customs["certify"] is True
        (line,) = customs["items"]
        assert line["description"] == "Merchandise"
        assert line["value_amount"] == "40.00"
        assert line["value_currency"] == "CAD"
        assert body["carrier_accounts"] == ["acct_cp"]
        assert body["address_from"]["city"] == "Ottawa"
        assert body["address_to"]["country"] == "US"

        (shipment,) = session.exec(select(Shipment)).all()
        assert shipment.carrier == "canadapost"
        assert shipment.incoterm == "DDP"
        assert shipment.cost == Decimal("18.40")
        assert shipment.service == "Tracked Packet USA"
        assert shipment.estimated_delivery is not None
        assert shipment.api_audit["transaction"]["object_id"] == "tx_1"

        session.refresh(us_order)
        assert us_order.tracking_number == "CP123456789CA"

    def test_customs_lines_from_order_items(
        self, client, admin_headers, configured, us_order, mock_http, session, make_product
    ):
        product = make_product()
        session.add_all(
            [
                OrderItem(order_id=us_order.id, product_id=product.id, quantity=2, price=Decimal("20.00"),
                          hs_code="7117.90", country_of_origin="CA", customs_description="Pendant",
                          unit_value_cad=Decimal("27.00"), mass_grams_each=300),
                OrderItem(order_id=us_order.id, product_id=product.id, quantity=1, price=Decimal("5.00"),
                          is_digital=True),
            ]
        )
        session.commit()
        mock_http.handler = shippo_handler()

        resp = client.post("/api/admin/shipping/label", json={"order_id": str(us_order.id)}, headers=admin_headers)
        assert resp.status_code == 200, resp.text

        body = shipment_request(mock_http)
        (line,) = body["customs_declaration"]["items"]
        assert line["description"] == "Pendant"
        assert line["tariff_number"] == "7117.90"
        assert line["quantity"] == 2
        assert line["net_weight"] == 0.3
        assert body["parcels"][0]["weight"] == 0.6

    def test_domestic_order_has_no_customs(self, client, admin_headers, configured, us_order, mock_http, session):
        us_order.shipping_address = dict(US_ADDRESS, country="CA", state="ON", zip="M5H 1A1", city="Toronto")
        session.add(us_order)
        session.commit()
        mock_http.handler = shippo_handler()

        resp = client.post("/api/admin/shipping/label", json={"order_id": str(us_order.id)}, headers=admin_headers)
        assert resp.status_code == 200
        assert "customs_declaration" not in shipment_request(mock_http)

    def test_failed_purchase_is_500(self, client, admin_headers, configured, us_order, mock_http, session):
        mock_http.handler = shippo_handler(purchase_status="ERROR")
        resp = client.post("/api/admin/shipping/label", json={"order_id": str(us_order.id)}, headers=admin_headers)
        assert resp.status_code == 500
        assert "address invalid" in resp.json()["error"]
        assert session.exec(select(Shipment)).all() == []

    def test_unconfigured_origin(self, client, admin_headers, us_order):
        resp = client.post("/api/admin/shipping/label", json={"order_id": str(us_order.id)}, headers=admin_headers)
        assert resp.status_code == 400

    def test_unknown_order(self, client, admin_headers, configured):
        resp = client.post(
            "/api/admin/shipping/label",
            json={"order_id": "11111111-1111-1111-1111-111111111111"},
            headers=admin_headers,
        )
        assert resp.status_code == 404


class TestOtherEndpoints:
    def test_rates_filtered_by_carrier(self, client, admin_headers, configured, mock_http):
        mock_http.handler = shippo_handler()
        body = {
            "recipient": {"name": "John", "address": "350 5th Ave", "city": "New York", "state": "NY",
                          "postal_code": "10118", "country": "us"},
            "carrier": "ups",
        }
        resp = client.post("/api/admin/shipping/rates", json=body, headers=admin_headers)
        assert resp.status_code == 200, resp.text
        assert [r["object_id"] for r in resp.json()["rates"]] == ["rate_ups"]

    def test_cancel_marks_shipment(self, client, admin_headers, configured, us_order, mock_http, session):
        mock_http.handler = shippo_handler()
        client.post("/api/admin/shipping/label", json={"order_id": str(us_order.id)}, headers=admin_headers)

        resp = client.post("/api/admin/shipping/cancel", json={"transaction_id": "tx_1"}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["success"] is True

        session.expire_all()
        (shipment,) = session.exec(select(Shipment)).all()
        assert shipment.status == "cancelled"
        assert shipment.api_audit["refund"]["object_id"] == "rf_1"

    def test_track(self, client, admin_headers, mock_http):
        mock_http.handler = shippo_handler()
        resp = client.post(
            "/api/admin/shipping/track",
            json={"carrier": "canada_post", "tracking_number": "CP1"},
            headers=admin_headers,
        )
        assert resp.json()["tracking"]["tracking_status"]["status"] == "TRANSIT"

    def test_customs_validate_endpoint(self, client, admin_headers):
        body = {
            "destination_country": "US",
            "items": [{"name": "Pendant", "quantity": 1, "hs_code": "7117.90", "country_of_origin": "CA",
                       "customs_description": "Pendant", "unit_value_cad": "10", "mass_grams_each": 50}],
        }
        resp = client.post("/api/admin/shipping/customs/validate", json=body, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["is_valid"] is True
        assert resp.json()["is_ddp_required"] is True


class TestRateSelection:
    def test_prefers_configured_account(self):
        assert select_preferred_rate(RATES, "canada-post", "acct_cp")["object_id"] == "rate_cp"

    def test_falls_back_to_provider_name(self):
        assert select_preferred_rate(RATES, "canada-post", "acct_missing")["object_id"] == "rate_cp_other"

    def test_falls_back_to_first(self):
        rates = [{"object_id": "r1", "provider": "DHL"}]
        assert select_preferred_rate(rates, "ups")["object_id"] == "r1"

    def test_no_rates(self):
        assert select_preferred_rate([], "ups") is None


class TestCustomsValidation:
    def test_reports_every_missing_field(self):
        result = validate_customs([CustomsValidationItem(name="Pendant")], "US")
        assert result.is_valid is False
        assert {e.field for e in result.errors} == {
            "hs_code", "country_of_origin", "customs_description", "unit_value_cad", "mass_grams_each",
        }

    def test_digital_items_skipped(self):
        result = validate_customs([CustomsValidationItem(name="Reading", is_digital=True)], "US")
        assert result.is_valid is True

    def test_other_lanes_not_checked(self):
        result = validate_customs([CustomsValidationItem(name="Pendant")], "GB")
        assert result.is_valid is True
        assert result.is_ddp_required is False


# ----- direct carrier labels -----

DIRECT = dict(ORIGIN, label_provider="direct")

CP_RATES = b"""<?xml version="1.0" encoding="UTF-8"?>
<price-quotes xmlns="http://www.canadapost.ca/ws/ship/rate-v4">
  <price-quote>
    <service-code>USA.XP</service-code>
    <service-name>Xpresspost USA</service-name>
    <price-details><base>35.00</base><due>38.00</due></price-details>
  </price-quote>
  <price-quote>
    <service-code>USA.EP</service-code>
    <service-name>Expedited Parcel USA</service-name>
    <price-details><base>20.00</base><due>24.15</due></price-details>
    <service-standard><expected-transit-time>4</expected-transit-time></service-standard>
  </price-quote>
  <price-quote>
    <service-code>DOM.EP</service-code>
    <service-name>Expedited Parcel</service-name>
    <price-details><base>11.00</base><due>12.43</due></price-details>
  </price-quote>
</price-quotes>"""

CP_SHIPMENT = b"""<?xml version="1.0" encoding="UTF-8"?>
<non-contract-shipment-info xmlns="http://www.canadapost.ca/ws/ncshipment-v4">
  <shipment-id>406951321983787352</shipment-id>
  <tracking-pin>123456789012</tracking-pin>
  <links>
    <link rel="self" href="https://ct.soa-gw.canadapost.ca/rs/0001234567/ncshipment/406951321983787352"/>
    <link rel="label" href="https://ct.soa-gw.canadapost.ca/ers/artifact/abc/20071/0" media-type="application/pdf"/>
  </links>
</non-contract-shipment-info>"""

CP_ERROR = b"""<?xml version="1.0" encoding="UTF-8"?>
<messages xmlns="http://www.canadapost.ca/ws/messages">
  <message><code>1153</code><description>Invalid destination postal code.</description></message>
</messages>"""


def canada_post_handler(request: httpx.Request) -> httpx.Response:
    assert request.headers["Authorization"].startswith("Basic ")
    if request.url.path == "/rs/ship/price":
        return httpx.Response(200, content=CP_RATES)
    if request.url.path == "/rs/0001234567/ncshipment":
        return httpx.Response(200, content=CP_SHIPMENT)
    if request.url.path.startswith("/ers/artifact/"):
        return httpx.Response(200, content=b"%PDF-1.4 label")
    return httpx.Response(404)


UPS_SHIPPED = {
    "ShipmentResponse": {
        "Response": {"ResponseStatus": {"Code": "1", "Description": "Success"}},
        "ShipmentResults": {
            "ShipmentIdentificationNumber": "1ZA1B2C30490000000",
            "ShipmentCharges": {"TotalCharges": {"CurrencyCode": "CAD", "MonetaryValue": "31.50"}},
            "PackageResults": [
                {
                    "TrackingNumber": "1ZA1B2C30490000001",
                    "ShippingLabel": {
                        "ImageFormat": {"Code": "GIF"},
                        "GraphicImage": base64.b64encode(b"GIF89a label").decode(),
                    },
                }
            ],
        },
    }
}


def ups_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/security/v1/oauth/token":
        assert request.headers["Authorization"].startswith("Basic ")
        return httpx.Response(200, json={"access_token": "ups-token", "expires_in": "14399"})
    if request.url.path == "/api/shipments/v2409/ship":
        assert request.headers["Authorization"] == "Bearer ups-token"
        return httpx.Response(200, json=UPS_SHIPPED)
    return httpx.Response(404)


@pytest.fixture
def carrier_credentials(monkeypatch):
    for name, value in {
        "CANADA_POST_USERNAME": "cp-user",
        "CANADA_POST_PASSWORD": "cp-pass",
        "CANADA_POST_CUSTOMER_NUMBER": "0001234567",
        "UPS_CLIENT_ID": "ups-id",
        "UPS_CLIENT_SECRET": "ups-secret",
        "UPS_ACCOUNT_NUMBER": "A1B2C3",
    }.items():
        monkeypatch.setattr(carrier_clients.settings, name, value)


@pytest.fixture
def direct(client, admin_headers, carrier_credentials):
    resp = client.put("/api/admin/shipping/config", json=DIRECT, headers=admin_headers)
    assert resp.status_code == 200, resp.text


def xml_request(mock_http, path: str) -> ET.Element:
    (request,) = mock_http.find(path)
    return ET.fromstring(request.content)


def xml_text(doc: ET.Element, path: str) -> str | None:
    el = doc.find(path)
    return el.text if el is not None else None


def label_file(name: str) -> Path:
    return Path(os.environ["UPLOADS_DIR"]) / "labels" / name


class TestCanadaPostDirect:
    def test_us_label_with_customs(self, client, admin_headers, direct, us_order, mock_http, session):
        mock_http.handler = canada_post_handler
        resp = client.post("/api/admin/shipping/label", json={"order_id": str(us_order.id)}, headers=admin_headers)
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["provider"] == "canada-post"
        assert data["tracking_number"] == "123456789012"
        assert data["label_url"] == "/api/files/labels/canadapost-123456789012.pdf"
        assert mock_http.find("/shipments/") == []

        rating = xml_request(mock_http, "/rs/ship/price")
        assert xml_text(rating, "{*}customer-number") == "0001234567"
        assert xml_text(rating, "{*}origin-postal-code") == "K1P1J9"
        assert xml_text(rating, "{*}destination/{*}united-states/{*}zip-code") == "10118"

        shipment = xml_request(mock_http, "/ncshipment")
        assert xml_text(shipment, "{*}delivery-spec/{*}service-code") == "USA.EP"
        assert xml_text(shipment, ".//{*}destination//{*}country-code") == "US"
        assert xml_text(shipment, ".//{*}option-code") == "RASE"
        assert xml_text(shipment, ".//{*}customer-ref-1") == "ANA-2026-001"
        assert xml_text(shipment, ".//{*}customs/{*}currency") == "CAD"
        (item,) = shipment.findall(".//{*}sku-list/{*}item")
        assert xml_text(item, "{*}customs-description") == "Merchandise"
        assert xml_text(item, "{*}customs-value-per-unit") == "40.00"
        assert xml_text(item, "{*}country-of-origin") == "CA"

        (record,) = session.exec(select(Shipment)).all()
        assert record.carrier == "canadapost"
        assert record.incoterm == "DDP"
        assert record.cost == Decimal("24.15")
        assert record.service == "Expedited Parcel USA"
        assert record.estimated_delivery is not None
        assert "<tracking-pin>123456789012</tracking-pin>" in record.api_audit["shipment"]
        assert "USA.EP" in record.api_audit["rate"]

        assert label_file("canadapost-123456789012.pdf").read_bytes() == b"%PDF-1.4 label"
        assert client.get(data["label_url"]).content == b"%PDF-1.4 label"
        session.refresh(us_order)
        assert us_order.tracking_number == "123456789012"

    def test_domestic_label_has_no_customs(self, client, admin_headers, direct, us_order, mock_http, session):
        us_order.shipping_address = dict(ON_ADDRESS)
        session.add(us_order)
        session.commit()
        mock_http.handler = canada_post_handler

        resp = client.post("/api/admin/shipping/label", json={"order_id": str(us_order.id)}, headers=admin_headers)
        assert resp.status_code == 200, resp.text

        rating = xml_request(mock_http, "/rs/ship/price")
        assert xml_text(rating, "{*}destination/{*}domestic/{*}postal-code") == "M5H1A1"
        shipment = xml_request(mock_http, "/ncshipment")
        assert xml_text(shipment, "{*}delivery-spec/{*}service-code") == "DOM.EP"
        assert shipment.find(".//{*}customs") is None
        assert shipment.find(".//{*}options") is None
        (record,) = session.exec(select(Shipment)).all()
        assert record.incoterm is None

    def test_rejected_shipment_is_500_and_not_recorded(
        self, client, admin_headers, direct, us_order, mock_http, session
    ):
        def handler(request):
            if request.url.path == "/rs/ship/price":
                return httpx.Response(200, content=CP_RATES)
            return httpx.Response(400, content=CP_ERROR)

        mock_http.handler = handler
        resp = client.post("/api/admin/shipping/label", json={"order_id": str(us_order.id)}, headers=admin_headers)
        assert resp.status_code == 500
        assert resp.json()["error"] == "Canada Post label failed: shipment failed: Invalid destination postal code."
        assert session.exec(select(Shipment)).all() == []

    def test_label_download_failure_keeps_provider_link(
        self, client, admin_headers, direct, us_order, mock_http, session
    ):
        def handler(request):
            if request.url.path.startswith("/ers/artifact/"):
                return httpx.Response(503)
            return canada_post_handler(request)

        mock_http.handler = handler
        resp = client.post("/api/admin/shipping/label", json={"order_id": str(us_order.id)}, headers=admin_headers)
        assert resp.status_code == 200, resp.text
        assert resp.json()["label_url"] == "https://ct.soa-gw.canadapost.ca/ers/artifact/abc/20071/0"


class TestUPSDirect:
    def test_us_label_with_ddp_invoice(self, client, admin_headers, direct, us_order, mock_http, session):
        mock_http.handler = ups_handler
        resp = client.post(
            "/api/admin/shipping/label",
            json={"order_id": str(us_order.id), "carrier": "ups"},
            headers=admin_headers,
        )
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["provider"] == "ups"
        assert data["tracking_number"] == "1ZA1B2C30490000001"
        assert data["shipment_id"] == "1ZA1B2C30490000000"
        assert data["label_url"] == "/api/files/labels/ups-1ZA1B2C30490000001.gif"

        (token_request,) = mock_http.find("/oauth/token")
        assert token_request.content == b"grant_type=client_credentials"

        (ship_request,) = mock_http.find("/ship")
        shipment = json.loads(ship_request.content)["ShipmentRequest"]["Shipment"]
        assert shipment["Shipper"]["ShipperNumber"] == "A1B2C3"
        assert shipment["Shipper"]["Address"]["PostalCode"] == "K1P 1J9"
        assert shipment["ShipTo"]["Address"]["CountryCode"] == "US"
        assert shipment["Service"]["Code"] == "11"
        assert shipment["Package"]["PackageWeight"] == {"UnitOfMeasurement": {"Code": "KGS"}, "Weight": "0.5"}
        assert [c["Type"] for c in shipment["PaymentInformation"]["ShipmentCharge"]] == ["01", "02"]
        forms = shipment["ShipmentServiceOptions"]["InternationalForms"]
        assert forms["TermsOfShipment"] == "DDP"
        assert forms["CurrencyCode"] == "CAD"
        (product,) = forms["Product"]
        assert product["Unit"]["Value"] == "40.00"
        assert product["OriginCountryCode"] == "CA"

        (record,) = session.exec(select(Shipment)).all()
        assert record.carrier == "ups"
        assert record.incoterm == "DDP"
        assert record.cost == Decimal("31.50")
        assert record.service == "UPS Standard"
        assert record.provider_transaction_id == "1ZA1B2C30490000000"
        assert record.api_audit["shipment"]["ShipmentResponse"]["Response"]["ResponseStatus"]["Code"] == "1"
        assert label_file("ups-1ZA1B2C30490000001.gif").read_bytes() == b"GIF89a label"

    def test_request_can_choose_direct_over_config(
        self, client, admin_headers, configured, carrier_credentials, us_order, mock_http
    ):
        mock_http.handler = ups_handler
        resp = client.post(
            "/api/admin/shipping/label",
            json={"order_id": str(us_order.id), "carrier": "ups", "provider": "direct"},
            headers=admin_headers,
        )
        assert resp.status_code == 200, resp.text
        assert resp.json()["provider"] == "ups"

    def test_missing_credentials_is_400(self, client, admin_headers, configured, us_order, mock_http):
        resp = client.post(
            "/api/admin/shipping/label",
            json={"order_id": str(us_order.id), "carrier": "ups", "provider": "direct"},
            headers=admin_headers,
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "UPS API credentials are not configured"
        assert mock_http.requests == []


def test_direct_label_failure_keeps_manual_order(client, admin_headers, direct, session):
    body = {
        "customer_name": "John Smith",
        "customer_email": "john@example.com",
        "total_amount": "40.00",
        "shipping_address": dict(US_ADDRESS),
        "create_shipping_label": True,
        "shipping_carrier": "ups",
    }
    resp = client.post("/api/admin/orders", json=body, headers=admin_headers)
    assert resp.status_code == 201, resp.text
    assert resp.json()["label_error"] == "UPS label failed: auth failed: offline"
    assert session.exec(select(Order)).one().order_number == resp.json()["order_number"]
    assert session.exec(select(Shipment)).all() == []
