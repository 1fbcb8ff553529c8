import hashlib
import hmac
import json
from decimal import Decimal

import httpx
import pytest
from sqlalchemy.exc import OperationalError
from sqlmodel import select

from conftest import ON_ADDRESS, stripe_event, stripe_signature
from storefront.models.order import Order, OrderItem
from storefront.repositories.config_repo import ConfigRepository
from storefront.routers import payments
from storefront.schemas.order_summary import OrderSummary, SummaryItem
from storefront.services.payment_gateways import nowpayments_signature


def ontario_summary(product_id=None, **overrides) -> OrderSummary:
    data = dict(
        items=[SummaryItem(i=str(product_id) if product_id else None, n="Crystal Grid", q=2, p=10.0)],
        subtotal=20.0,
        extra_label="Taxes (GST/HST/PST)",
        extra_amount=2.6,
        shipping_amount=5.0,
        total_amount=27.6,
        buyer_country="CA",
        province="ON",
        tax_breakdown={"gst": 0.0, "hst": 2.6, "pst": 0.0},
        payment_method="stripe",
        currency="USD",
        user_email="buyer@example.com",
    )
    data.update(overrides)
    return OrderSummary(**data)


def checkout_session(summary: OrderSummary | None, session_id="cs_test_1", **overrides) -> dict:
    obj = {
        "id": session_id,
        "amount_total": 2760,
        "currency": "usd",
        "payment_intent": "pi_123",
        "customer_details": {
            "email": "buyer@example.com",
            "name": "Jane Doe",
            "address": {"line1": "1 King St W", "city": "Toronto", "state": "ON",
                        "postal_code": "M5H 1A1", "country": "CA"},
        },
        "metadata": {"orderData": summary.to_metadata() if summary else "", "aff": "friend42"},
    }
    obj.update(overrides)
    return obj


def post_stripe(client, payload: bytes, signature: str | None = None):
    headers = {"Stripe-Signature": signature if signature is not None else stripe_signature(payload)}
    return client.post("/api/payment/stripe/webhook", content=payload, headers=headers)


def orders(session) -> list[Order]:
    session.expire_all()
    return session.exec(select(Order)).all()


class TestStripeWebhook:
    def test_invalid_signature_creates_nothing(self, client, session):
        payload = stripe_event(checkout_session(ontario_summary()))
        resp = post_stripe(client, payload, signature="t=1,v1=deadbeef")
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid signature"
        assert orders(session) == []

    def test_missing_signature_header(self, client, session):
        payload = stripe_event(checkout_session(ontario_summary()))
        resp = client.post("/api/payment/stripe/webhook", content=payload)
        assert resp.status_code == 400
        assert orders(session) == []

    def test_stale_timestamp_rejected(self, client, session):
        payload = stripe_event(checkout_session(ontario_summary()))
        resp = post_stripe(client, payload, signature=stripe_signature(payload, timestamp=1_000_000))
        assert resp.status_code == 400

    def test_completed_session_creates_order(self, client, session, make_product):
        product = make_product(hs_code="7117.90", mass_grams=150, default_customs_value_cad=Decimal("12.00"))
        resp = post_stripe(client, stripe_event(checkout_session(ontario_summary(product.id))))
        assert resp.status_code == 200
        assert resp.json() == {"received": True}

        (order,) = orders(session)
        assert order.order_number == "STRIPE_cs_test_1"
        assert order.status == "processing"
        assert order.payment_status == "paid"
        assert order.payment_method == "stripe"
        assert order.subtotal == Decimal("20.00")
        assert order.tax_amount == Decimal("2.60")
        assert order.shipping_amount == Decimal("5.00")
        assert order.total_amount == order.subtotal + order.tax_amount + order.shipping_amount
        assert order.tax_breakdown["hst"] == 2.6
        assert order.billing_address["city"] == "Toronto"

        (item,) = session.exec(select(OrderItem)).all()
        assert item.product_id == product.id
        assert item.quantity == 2
        assert item.price == Decimal("10.00")
        assert item.hs_code == "7117.90"
        assert item.mass_grams_each == 150
        assert item.unit_value_cad == Decimal("12.00")

    def test_duplicate_delivery_is_a_no_op(self, client, session):
        payload = stripe_event(checkout_session(ontario_summary()))
        assert post_stripe(client, payload).status_code == 200
        assert post_stripe(client, payload).status_code == 200
        assert len(orders(session)) == 1

    def test_other_events_are_acknowledged(self, client, session):
        payload = stripe_event({"id": "pi_1"}, event_type="payment_intent.created")
        resp = post_stripe(client, payload)
        assert resp.status_code == 200
        assert orders(session) == []

    def test_corrupt_metadata_falls_back_to_provider_total(self, client, session):
        obj = checkout_session(None)
        obj["metadata"]["orderData"] = "{broken"
        resp = post_stripe(client, stripe_event(obj))
        assert resp.status_code == 200

        (order,) = orders(session)
        assert order.total_amount == Decimal("27.60")
        assert order.subtotal == Decimal("27.60")
        assert order.tax_amount == Decimal("0.00")
        assert session.exec(select(OrderItem)).all() == []

    def test_unknown_products_are_not_itemized(self, client, session):
        summary = ontario_summary("11111111-1111-1111-1111-111111111111")
        assert post_stripe(client, stripe_event(checkout_session(summary))).status_code == 200
        assert len(orders(session)) == 1
        assert session.exec(select(OrderItem)).all() == []

    def test_persistence_failure_still_acknowledged(self, client, session, monkeypatch):
        def boom(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("db down"))

        monkeypatch.setattr(payments.order_service, "create_paid_order", boom)
        resp = post_stripe(client, stripe_event(checkout_session(ontario_summary())))
        assert resp.status_code == 200
        assert resp.json() == {"received": True}

    def test_us_tariff_recorded_as_duties(self, client, session):
        summary = ontario_summary(
            extra_label="Prepaid Tariff (DDP 35%)",
            extra_amount=7.0,
            shipping_amount=0.0,
            total_amount=27.0,
            buyer_country="US",
            province="NY",
            tax_breakdown=None,
        )
        obj = checkout_session(summary, amount_total=2700)
        assert post_stripe(client, stripe_event(obj)).status_code == 200

        (order,) = orders(session)
        assert order.duties_estimated_cad == Decimal("7.00")
        assert order.taxes_estimated_cad == Decimal("0.00")
        assert order.incoterm == "DDP"
        assert order.total_amount == Decimal("27.00")


def paypal_handler(capture_status="COMPLETED"):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21"})
        if request.url.path == "/v2/checkout/orders/TOKEN1/capture":
            assert request.headers["Authorization"] == "Bearer A21"
            return httpx.Response(
                201,
                json={
                    "id": "TOKEN1",
                    "status": capture_status,
                    "payer": {"email_address": "payer@example.com",
                              "name": {"given_name": "Jane", "surname": "Doe"}},
                    "purchase_units": [
                        {
                            "custom_id": "",
                            "payments": {"captures": [{"id": "CAP-1",
                                                       "amount": {"value": "27.60", "currency_code": "USD"}}]},
                            "shipping": {
                                "name": {"full_name": "Jane Doe"},
                                "address": {"address_line_1": "1 King St W", "admin_area_2": "Toronto",
                                            "admin_area_1": "ON", "postal_code": "M5H 1A1",
                                            "country_code": "CA"},
                            },
                        }
                    ],
                },
            )
        return httpx.Response(404)

    return handler


class TestPayPalCapture:
    def test_completed_capture_creates_order(self, client, session, mock_http):
        mock_http.handler = paypal_handler()
        summary = ontario_summary(payment_method="paypal", shipping_address=dict(ON_ADDRESS))
        resp = client.get(
            "/api/payment/paypal/capture",
            params={"token": "TOKEN1", "PayerID": "PAYER", "custom_data": summary.dumps()},
            follow_redirects=False,
        )
        assert resp.status_code == 302
        assert resp.headers["location"] == "https://shop.test/success?provider=paypal"

        (order,) = orders(session)
        assert order.order_number == "PAYPAL_TOKEN1"
        assert order.customer_email == "payer@example.com"
        assert order.customer_name == "Jane Doe"
        assert order.provider_payment_id == "CAP-1"
        assert order.total_amount == Decimal("27.60")
        assert order.shipping_address["city"] == "Toronto"

    def test_incomplete_capture_redirects_with_error(self, client, session, mock_http):
        mock_http.handler = paypal_handler(capture_status="PENDING")
        resp = client.get(
            "/api/payment/paypal/capture",
            params={"token": "TOKEN1"},
            follow_redirects=False,
        )
        assert resp.status_code == 302
        assert "payment=error" in resp.headers["location"]
        assert orders(session) == []

    def test_missing_token(self, client, session):
        resp = client.get("/api/payment/paypal/capture", follow_redirects=False)
        assert resp.status_code == 302
        assert "Missing%20PayPal%20token" in resp.headers["location"]


def crypto_body(status="finished", payment_id=42) -> dict:
    summary = ontario_summary(payment_method="crypto", shipping_address=dict(ON_ADDRESS))
    return {
        "payment_id": payment_id,
        "payment_status": status,
        "price_amount": 27.6,
        "price_currency": "usd",
        "order_description": summary.dumps(),
    }


class TestCryptoWebhook:
    @pytest.mark.parametrize("status", ["finished", "confirmed"])
    def test_paid_statuses_create_order(self, client, session, status):
        resp = client.post("/api/payment/crypto/webhook", json=crypto_body(status))
        assert resp.status_code == 200
        assert resp.json() == {"status": "success"}

        (order,) = orders(session)
        assert order.order_number == "CRYPTO_42"
        assert order.payment_method == "crypto"
        assert order.customer_email == "buyer@example.com"
        assert order.customer_name == "Jane Doe"
        assert order.total_amount == Decimal("27.60")

    def test_waiting_payment_creates_nothing(self, client, session):
        resp = client.post("/api/payment/crypto/webhook", json=crypto_body("waiting"))
        assert resp.status_code == 200
        assert orders(session) == []

    def test_signature_checked_when_secret_configured(self, client, session):
        ConfigRepository().upsert(session, "payments-config", {"now_payments": {"ipn_secret": "ipn-secret"}})
        body = crypto_body()

        bad = client.post("/api/payment/crypto/webhook", json=body, headers={"x-nowpayments-sig": "nope"})
        assert bad.status_code == 400
        assert orders(session) == []

        raw = json.dumps(body).encode()
        good = client.post(
            "/api/payment/crypto/webhook",
            content=raw,
            headers={
                "content-type": "application/json",
                "x-nowpayments-sig": nowpayments_signature(raw, "ipn-secret"),
            },
        )
        assert good.status_code == 200
        assert len(orders(session)) == 1

    def test_small_crypto_amount_signature(self, client, session):
        ConfigRepository().upsert(session, "payments-config", {"now_payments": {"ipn_secret": "ipn-secret"}})
        body = crypto_body()
        body["actually_paid"] = "__SMALL__"
        # a Node sender writes 0.00005 where Python would write 5e-05
        raw = json.dumps(body, separators=(",", ":")).replace('"__SMALL__"', "0.00005").encode()
        signed = json.dumps(dict(sorted(body.items())), separators=(",", ":"), ensure_ascii=False)
        signed = signed.replace('"__SMALL__"', "0.00005")
        signature = hmac.new(b"ipn-secret", signed.encode(), hashlib.sha512).hexdigest()

        resp = client.post(
            "/api/payment/crypto/webhook",
            content=raw,
            headers={"content-type": "application/json", "x-nowpayments-sig": signature},
        )
        assert resp.status_code == 200
        assert len(orders(session)) == 1

    def test_body_must_be_json(self, client, session):
        resp = client.post(
            "/api/payment/crypto/webhook", content=b"not json", headers={"content-type": "application/json"}
        )
        assert resp.status_code == 400
        assert orders(session) == []
