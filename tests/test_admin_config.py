from decimal import Decimal

from storefront.repositories.config_repo import ConfigRepository
from storefront.schemas.checkout import CheckoutRequest
from storefront.schemas.config import PaymentsConfig
from storefront.services import payment_gateways as gw
from storefront.services.checkout_service import CheckoutService
from storefront.services.config_service import ConfigService
from storefront.services.currency_service import CurrencyService


class TestConfigEndpoints:
    def test_defaults_when_unset(self, client, admin_headers):
        resp = client.get("/api/admin/config/tax", headers=admin_headers)
        assert resp.status_code == 200
        assert Decimal(str(resp.json()["us_tariff_rate"])) == Decimal("0.35")

    def test_secrets_are_masked_and_kept(self, client, admin_headers, session):
        body = {"stripe": {"enabled": True, "test_mode": False, "secret_key": "sk_live_abc"}}
        resp = client.put("/api/admin/config/payments", json=body, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json()["stripe"]["secret_key"] == "***"
        assert resp.json()["stripe"]["webhook_secret"] == ""

        body["stripe"]["secret_key"] = "***"
        body["stripe"]["publishable_key"] = "pk_live_abc"
        client.put("/api/admin/config/payments", json=body, headers=admin_headers)

        stored = ConfigService(ConfigRepository()).payments(session)
        assert stored.stripe.secret_key == "sk_live_abc"
        assert stored.stripe.publishable_key == "pk_live_abc"

    def test_unknown_domain(self, client, admin_headers):
        resp = client.get("/api/admin/config/generator", headers=admin_headers)
        assert resp.status_code == 404

    def test_invalid_payload(self, client, admin_headers):
        resp = client.put("/api/admin/config/tax", json={"us_tariff_rate": 3}, headers=admin_headers)
        assert resp.status_code == 400
        assert "us_tariff_rate" in resp.json()["error"]

    def test_requires_admin(self, client):
        assert client.get("/api/admin/config/tax").status_code == 401


def test_bad_stored_value_falls_back_to_defaults(session):
    ConfigRepository().upsert(session, "tax-config", {"us_tariff_rate": "lots"})
    assert ConfigService(ConfigRepository()).tax(session).us_tariff_rate == Decimal("0.35")


def test_tariff_rate_from_config_reaches_checkout(session, mock_http):
    ConfigRepository().upsert(session, "tax-config", {"us_tariff_rate": "0.10"})
    payload = CheckoutRequest.model_validate(
        {
            "items": [{"name": "Pendant", "price": "50", "quantity": 1}],
            "shipping_address": {"full_name": "J", "street": "1 A St", "city": "NYC", "state": "NY",
                                 "zip": "10001", "country": "us"},
        }
    )
    service = CheckoutService(ConfigService(ConfigRepository()), CurrencyService())
    q = service.quote(session, payload, mock_http.client())
    assert q.extra_amount == Decimal("5.00")
    assert q.extra_label == "Prepaid Tariff (DDP 10%)"


class TestCredentialResolution:
    def test_environment_is_fallback(self):
        creds = gw.resolve_stripe(PaymentsConfig())
        assert creds.secret_key == "sk_test_123"
        assert creds.webhook_secret == "whsec_test"

    def test_config_overrides_environment(self):
        cfg = PaymentsConfig.model_validate(
            {"stripe": {"test_mode": True, "test_secret_key": "sk_test_cfg", "test_webhook_secret": "whsec_cfg"}}
        )
        creds = gw.resolve_stripe(cfg)
        assert creds.secret_key == "sk_test_cfg"
        assert creds.webhook_secret == "whsec_cfg"

    def test_mask_counts_as_unset(self):
        cfg = PaymentsConfig.model_validate({"stripe": {"test_mode": True, "test_secret_key": "***"}})
        assert gw.resolve_stripe(cfg).secret_key == "sk_test_123"

    def test_paypal_sandbox_in_test_mode(self):
        creds = gw.resolve_paypal(PaymentsConfig())
        assert creds.sandbox is True
        assert creds.client_id == "pp-client"
        assert "sandbox" in creds.base_url

    def test_paypal_live_without_credentials(self):
        cfg = PaymentsConfig.model_validate({"paypal": {"test_mode": False}})
        creds = gw.resolve_paypal(cfg)
        assert creds.sandbox is False
        assert creds.client_id is None
