"""
Clients for the three payment providers.

Stripe goes through the official SDK; PayPal and NOWPayments are thin REST
clients over an `httpx.Client`. Every client raises `GatewayError` with the
provider's own error text when a call fails; the checkout and webhook
services turn that into an HTTP response.

Credential resolution (`resolve_*`): the admin `payments` config domain
wins, environment settings are the fallback, and the mask "***" counts as
unset.
"""
import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any

import httpx
import stripe

from storefront.core import http
from storefront.core.config import get_settings
from storefront.schemas.config import MASK, PaymentsConfig

settings = get_settings()
logger = logging.getLogger(__name__)


class GatewayError(RuntimeError):
    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message


class SignatureError(ValueError):
    """Webhook signature missing, malformed, stale or wrong."""


def _usable(value: str | None) -> str | None:
    value = (value or "").strip()
    if not value or value == MASK:
        return None
    return value


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class StripeCredentials:
    secret_key: str | None
    webhook_secret: str | None


@dataclass(frozen=True)
class PayPalCredentials:
    client_id: str | None
    client_secret: str | None
    base_url: str
    sandbox: bool


@dataclass(frozen=True)
class NowPaymentsCredentials:
    api_key: str | None
    ipn_secret: str | None


def resolve_stripe(cfg: PaymentsConfig) -> StripeCredentials:
    s = cfg.stripe
    if s.test_mode:
        secret = _usable(s.test_secret_key) or _usable(settings.STRIPE_SECRET_TEST_KEY)
        hook = _usable(s.test_webhook_secret)
    else:
        secret = _usable(s.secret_key)
        hook = _usable(s.webhook_secret)
    return StripeCredentials(
        secret_key=secret or _usable(settings.STRIPE_SECRET_KEY),
        webhook_secret=hook or _usable(settings.STRIPE_WEBHOOK_SECRET),
    )


def resolve_paypal(cfg: PaymentsConfig) -> PayPalCredentials:
    p = cfg.paypal
    if p.test_mode:
        return PayPalCredentials(
            client_id=_usable(p.test_client_id) or _usable(settings.PAYPAL_CLIENT_ID_SANDBOX),
            client_secret=_usable(p.test_client_secret)
            or _usable(settings.PAYPAL_CLIENT_SECRET_SANDBOX),
            base_url=settings.PAYPAL_API_BASE_SANDBOX,
            sandbox=True,
        )
    return PayPalCredentials(
        client_id=_usable(p.client_id) or _usable(settings.PAYPAL_CLIENT_ID_LIVE),
        client_secret=_usable(p.client_secret) or _usable(settings.PAYPAL_SECRET_LIVE),
        base_url=settings.PAYPAL_API_BASE_LIVE,
        sandbox=False,
    )


def resolve_nowpayments(cfg: PaymentsConfig) -> NowPaymentsCredentials:
    n = cfg.now_payments
    key = _usable(n.test_api_key) if n.test_mode else _usable(n.api_key)
    return NowPaymentsCredentials(
        api_key=key or _usable(n.api_key) or _usable(settings.NOWPAYMENTS_API_KEY),
        ipn_secret=_usable(n.ipn_secret) or _usable(settings.NOWPAYMENTS_IPN_SECRET),
    )


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


class StripeGateway:
    """Checkout Sessions through the official SDK, one secret key per call."""

    name = "Stripe"

    def __init__(self, secret_key: str):
        self.secret_key = secret_key

    def create_checkout_session(self, params: dict[str, Any]) -> dict[str, Any]:
        try:
            checkout = stripe.checkout.Session.create(api_key=self.secret_key, **params)
        except stripe.StripeError as e:
            raise GatewayError(self.name, e.user_message or str(e)) from e
        return {"id": checkout.id, "url": checkout.url, "livemode": checkout.livemode}


def verify_stripe_signature(
    payload: bytes,
    header: str | None,
    secret: str,
    tolerance: int = 300,
) -> dict[str, Any]:
    """
    Verify a `Stripe-Signature` header with `stripe.Webhook` and return the
    event as a plain dict.

    Raises:
        SignatureError: on any mismatch, a stale timestamp or bad JSON.
    """
    if not header:
        raise SignatureError("Missing Stripe-Signature header")
    try:
        stripe.Webhook.construct_event(payload, header, secret, tolerance=tolerance)
    except stripe.SignatureVerificationError as e:
        raise SignatureError(str(e)) from e
    except ValueError:
        raise SignatureError("Webhook body is not JSON")
    return json.loads(payload)


# ---------------------------------------------------------------------------
# PayPal
# ---------------------------------------------------------------------------


class PayPalGateway:
    name = "PayPal"

    def __init__(self, client: httpx.Client, creds: PayPalCredentials):
        self.client = client
        self.creds = creds
        self.base_url = creds.base_url.rstrip("/")
        self._token: str | None = None

    def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        try:
            resp = self.client.request(method, f"{self.base_url}{path}", **kwargs)
        except httpx.HTTPError as e:
            raise GatewayError(self.name, str(e)) from e
        if resp.status_code >= 400:
            raise GatewayError(self.name, http.error_text(resp))
        try:
            return resp.json()
        except ValueError:
            raise GatewayError(self.name, "Invalid JSON response")

    def access_token(self) -> str:
        if self._token:
            return self._token
        data = self._request(
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
            auth=(self.creds.client_id or "", self.creds.client_secret or ""),
            headers={"Accept": "application/json"},
        )
        token = data.get("access_token")
        if not token:
            raise GatewayError(self.name, "No access token returned")
        self._token = token
        return token

    def _auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token()}"}

    def create_order(self, body: dict[str, Any]) -> dict[str, Any]:
        return self._request(
            "POST", "/v2/checkout/orders", json=body, headers=self._auth_headers()
        )

    def capture_order(self, order_id: str) -> dict[str, Any]:
        return self._request(
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            json={},
            headers=self._auth_headers(),
        )


# ---------------------------------------------------------------------------
# NOWPayments
# ---------------------------------------------------------------------------


class NowPaymentsGateway:
    name = "NOWPayments"

    def __init__(self, client: httpx.Client, api_key: str):
        self.client = client
        self.api_key = api_key
        self.base_url = settings.NOWPAYMENTS_API_BASE.rstrip("/")

    def _request(self, method: str, path: str, **kwargs) -> dict[str, Any]:
        try:
            resp = self.client.request(
                method,
                f"{self.base_url}{path}",
                headers={"x-api-key": self.api_key},
                **kwargs,
            )
        except httpx.HTTPError as e:
            raise GatewayError(self.name, str(e)) from e
        if resp.status_code >= 400:
            raise GatewayError(self.name, http.error_text(resp))
        data = resp.json()
        if isinstance(data, dict) and data.get("error"):
            raise GatewayError(self.name, str(data.get("message") or data["error"]))
        return data

    def create_payment(self, body: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", "/v1/payment", json=body)

    def get_payment(self, payment_id: str) -> dict[str, Any]:
        return self._request("GET", f"/v1/payment/{payment_id}")


class _NumberLiteral(str):
    """A JSON float kept exactly as the sender wrote it."""


def _canonical(value: Any) -> str:
    if isinstance(value, dict):
        members = (f"{_canonical(k)}:{_canonical(v)}" for k, v in sorted(value.items()))
        return "{" + ",".join(members) + "}"
    if isinstance(value, list):
        return "[" + ",".join(_canonical(v) for v in value) + "]"
    if isinstance(value, _NumberLiteral):
        return str.__str__(value)
    return json.dumps(value, ensure_ascii=False)


def canonical_ipn_body(raw: bytes | str) -> str:
    """
    Key-sorted compact JSON of an IPN body, the string NOWPayments signs.

    Floats keep their original spelling (`0.00005`, not `5e-05`).
    """
    return _canonical(json.loads(raw, parse_float=_NumberLiteral))


def nowpayments_signature(raw: bytes | str, secret: str) -> str:
    """HMAC-SHA512 of the canonical IPN body."""
    canonical = canonical_ipn_body(raw)
    return hmac.new(secret.encode(), canonical.encode(), hashlib.sha512).hexdigest()


def verify_nowpayments_signature(raw: bytes | str, header: str | None, secret: str) -> None:
    if not header:
        raise SignatureError("Missing x-nowpayments-sig header")
    try:
        expected = nowpayments_signature(raw, secret)
    except ValueError:
        raise SignatureError("Webhook body is not JSON")
    if not hmac.compare_digest(expected, header.strip()):
        raise SignatureError("NOWPayments signature mismatch")


# waiting -> pending; confirming; confirmed/sending/partially_paid/finished
# -> confirmed; failed/refunded/expired -> failed
CRYPTO_STATUS_MAP: dict[str, str] = {
    "waiting": "pending",
    "confirming": "confirming",
    "confirmed": "confirmed",
    "sending": "confirmed",
    "partially_paid": "confirmed",
    "finished": "confirmed",
    "failed": "failed",
    "refunded": "failed",
    "expired": "failed",
}


def map_crypto_status(provider_status: str | None) -> str:
    return CRYPTO_STATUS_MAP.get((provider_status or "").lower(), "pending")
