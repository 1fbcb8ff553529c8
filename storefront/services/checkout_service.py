import logging
import time
from decimal import Decimal
from urllib.parse import quote as url_quote, urljoin

import httpx
from fastapi import HTTPException, status
from sqlmodel import Session

from storefront.core.config import get_settings
from storefront.models.user import User
from storefront.schemas.checkout import (
    CheckoutQuote,
    CheckoutRequest,
    CryptoCheckoutResponse,
    PayPalCheckoutResponse,
    StripeCheckoutResponse,
)
from storefront.schemas.order_summary import OrderSummary, SummaryItem
from storefront.services import payment_gateways as gw
from storefront.services.config_service import ConfigService
from storefront.services.currency_service import CurrencyService, convert
from storefront.services.tax_service import (
    CENT,
    TaxItem,
    UnsupportedProvinceError,
    destination_charge,
    to_cents,
)

settings = get_settings()
logger = logging.getLogger(__name__)

SEAL_DESCRIPTION = "Custom Sacred Seal Array"

STRIPE_SHIPPING_COUNTRIES = ["US", "CA", "GB", "AU", "DE", "FR", "IT", "ES", "NL", "BE"]


def _money(value: Decimal) -> str:
    return f"{value.quantize(CENT):.2f}"


def _cents(value: Decimal) -> int:
    return to_cents(value)


class CheckoutService:
    """
    Builds provider checkout sessions from a client cart.

    Steps shared by every provider:
      1. validate cart, caller and shipping address
      2. quote: subtotal, destination tax/tariff, shipping, FX conversion
      3. snapshot the order into an OrderSummary for the webhook step
    No Order row is written here; the webhook/capture step does that.
    """

    def __init__(self, config_service: ConfigService, currency_service: CurrencyService):
        self.config_service = config_service
        self.currency_service = currency_service

    # ----- Validation -----

    @staticmethod
    def validate(payload: CheckoutRequest, current_user: User | None) -> None:
        """
        Order of checks: empty cart (400), guest not allowed (401), missing
        shipping fields on an all-physical cart (400).
        """
        if not payload.items:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid items",
            )

        if current_user is None and not (payload.allow_guest and payload.all_physical):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Unauthorized",
            )

        if payload.all_physical:
            missing = (
                payload.shipping_address.missing_fields()
                if payload.shipping_address
                else ["full_name"]
            )
            if missing:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Shipping address is required for physical products (missing {missing[0]})",
                )

    # ----- Quote -----

    def quote(
        self,
        session: Session,
        payload: CheckoutRequest,
        client: httpx.Client,
    ) -> CheckoutQuote:
        """
        Price the cart in the charged currency.

        Tax/tariff is computed on USD amounts; every component is then
        converted and rounded on its own and the total re-summed, so
        total == subtotal + extra + shipping holds in the charged currency.
        """
        address = payload.shipping_address
        country = ((address.country if address else "") or "").strip().upper()
        province = (address.state or "").strip().upper() if address else None

        subtotal_usd = sum(
            (it.price * it.quantity for it in payload.items), Decimal("0")
        ).quantize(CENT)
        tax_items = [
            TaxItem(is_digital=it.is_digital, price_cents=_cents(it.price), quantity=it.quantity)
            for it in payload.items
        ]

        tax_cfg = self.config_service.tax(session)
        try:
            charge = destination_charge(
                country,
                province,
                tax_items,
                subtotal_usd,
                us_tariff_rate=tax_cfg.us_tariff_rate,
            )
        except UnsupportedProvinceError as e:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

        rate = (
            Decimal(1)
            if payload.currency == "USD"
            else self.currency_service.get_fx_rate("USD", payload.currency, client)
        )

        subtotal = sum(
            (convert(it.price, rate) * it.quantity for it in payload.items), Decimal("0")
        ).quantize(CENT)
        extra = convert(charge.amount, rate)
        shipping = convert(payload.shipping_amount, rate)
        breakdown = (
            {k: convert(v, rate) for k, v in charge.tax.breakdown().items()}
            if charge.tax
            else None
        )

        return CheckoutQuote(
            currency=payload.currency,
            rate=rate,
            subtotal=subtotal,
            extra_amount=extra,
            extra_label=charge.label,
            extra_kind=charge.kind,
            shipping_amount=shipping,
            total_amount=subtotal + extra + shipping,
            tax_breakdown=breakdown,
            buyer_country=country,
            province=province or None,
        )

    # ----- Summary -----

    @staticmethod
    def build_summary(
        payload: CheckoutRequest,
        q: CheckoutQuote,
        method: str,
        current_user: User | None,
        affiliate_code: str | None,
        include_address: bool = True,
    ) -> OrderSummary:
        items = [
            SummaryItem(
                i=it.product_id,
                n=it.name[:50],
                q=it.quantity,
                p=float(convert(it.price, q.rate)),
            )
            for it in payload.items
        ]
        shipping_address = billing_address = None
        if include_address:
            if payload.shipping_address:
                shipping_address = payload.shipping_address.as_dict()
            if payload.billing_address and not payload.billing_same_as_shipping:
                billing_address = payload.billing_address.as_dict()

        return OrderSummary(
            items=items,
            subtotal=float(q.subtotal),
            total_amount=float(q.total_amount),
            shipping_amount=float(q.shipping_amount),
            extra_label=q.extra_label,
            extra_amount=float(q.extra_amount),
            buyer_country=q.buyer_country or None,
            province=q.province,
            tax_breakdown=(
                {k: float(v) for k, v in q.tax_breakdown.items()}
                if q.tax_breakdown
                else None
            ),
            payment_method=method,
            currency=q.currency,
            billing_same_as_shipping=payload.billing_same_as_shipping,
            user_id=str(current_user.id) if current_user else payload.user_id,
            user_email=payload.user_email or (current_user.email if current_user else None),
            aff=affiliate_code,
            shipping_address=shipping_address,
            billing_address=billing_address,
        )

    # ----- Stripe -----

    def create_stripe_session(
        self,
        session: Session,
        payload: CheckoutRequest,
        current_user: User | None,
        affiliate_code: str | None,
        client: httpx.Client,
    ) -> StripeCheckoutResponse:
        self.validate(payload, current_user)
        creds = gw.resolve_stripe(self.config_service.payments(session))
        if not creds.secret_key:
            logger.error("Stripe secret key missing")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Stripe is not configured",
            )

        q = self.quote(session, payload, client)
        # Stripe collects the shipping address itself
        summary = self.build_summary(
            payload, q, "stripe", current_user, affiliate_code, include_address=False
        )
        cur = q.currency.lower()

        line_items = []
        for it in payload.items:
            product_data = {"name": it.name}
            if it.type == "seal":
                product_data["description"] = SEAL_DESCRIPTION
            image = self._absolute_url(it.image_url)
            if image:
                product_data["images"] = [image]
            line_items.append(
                {
                    "price_data": {
                        "currency": cur,
                        "product_data": product_data,
                        "unit_amount": _cents(convert(it.price, q.rate)),
                    },
                    "quantity": it.quantity,
                }
            )
        if q.extra_label and q.extra_amount > 0:
            line_items.append(self._stripe_line(cur, q.extra_label, q.extra_amount))
        if q.shipping_amount > 0:
            line_items.append(self._stripe_line(cur, "Shipping", q.shipping_amount))

        user_id = summary.user_id
        params = {
            "mode": "payment",
            "payment_method_types": ["card"],
            "line_items": line_items,
            "success_url": f"{self._base()}/success?provider=stripe&session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self._base()}/dashboard?payment=cancelled",
            "customer_email": summary.user_email,
            "client_reference_id": user_id,
            "metadata": {
                "userId": user_id or "",
                "orderData": summary.to_metadata(),
                "aff": affiliate_code or "",
            },
            "billing_address_collection": "required",
            "shipping_address_collection": {"allowed_countries": STRIPE_SHIPPING_COUNTRIES},
        }

        try:
            data = gw.StripeGateway(creds.secret_key).create_checkout_session(params)
        except gw.GatewayError as e:
            logger.error("Stripe create session failed: %s", e.message)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Stripe session error: {e.message}",
            )

        logger.info("Stripe session %s created (%s %s)", data.get("id"), q.total_amount, q.currency)
        return StripeCheckoutResponse(
            session_id=data.get("id", ""),
            url=data.get("url"),
            livemode=data.get("livemode"),
        )

    @staticmethod
    def _stripe_line(cur: str, name: str, amount: Decimal) -> dict:
        return {
            "price_data": {
                "currency": cur,
                "product_data": {"name": name},
                "unit_amount": _cents(amount),
            },
            "quantity": 1,
        }

    # ----- PayPal -----

    def create_paypal_order(
        self,
        session: Session,
        payload: CheckoutRequest,
        current_user: User | None,
        affiliate_code: str | None,
        client: httpx.Client,
    ) -> PayPalCheckoutResponse:
        self.validate(payload, current_user)
        creds = gw.resolve_paypal(self.config_service.payments(session))
        if not (creds.client_id and creds.client_secret):
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="PayPal is not configured",
            )

        q = self.quote(session, payload, client)
        summary = self.build_summary(payload, q, "paypal", current_user, affiliate_code)
        cur = q.currency

        breakdown: dict[str, dict] = {
            "item_total": {"currency_code": cur, "value": _money(q.subtotal)},
        }
        if q.extra_kind == "tax":
            breakdown["tax_total"] = {"currency_code": cur, "value": _money(q.extra_amount)}
        elif q.extra_amount > 0:
            breakdown["handling"] = {"currency_code": cur, "value": _money(q.extra_amount)}
        if q.shipping_amount > 0:
            breakdown["shipping"] = {"currency_code": cur, "value": _money(q.shipping_amount)}

        items = []
        for it in payload.items:
            item = {
                "name": it.name[:127],
                "unit_amount": {"currency_code": cur, "value": _money(convert(it.price, q.rate))},
                "quantity": str(it.quantity),
                "category": "DIGITAL_GOODS" if it.is_digital else "PHYSICAL_GOODS",
            }
            if it.type == "seal":
                item["description"] = SEAL_DESCRIPTION
            items.append(item)

        body = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "amount": {
                        "currency_code": cur,
                        "value": _money(q.total_amount),
                        "breakdown": breakdown,
                    },
                    "items": items,
                    "custom_id": summary.user_id or "",
                }
            ],
            "application_context": {
                "return_url": (
                    f"{self._base()}{settings.API_V1_STR}/payment/paypal/capture"
                    f"?custom_data={url_quote(summary.dumps(), safe='')}"
                ),
                "cancel_url": f"{self._base()}/dashboard?payment=cancelled",
                "brand_name": settings.BRAND_NAME,
                "user_action": "PAY_NOW",
            },
        }

        try:
            data = gw.PayPalGateway(client, creds).create_order(body)
        except gw.GatewayError as e:
            logger.error("PayPal order creation failed: %s", e.message)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"PayPal order error: {e.message}",
            )

        approve = next(
            (link.get("href") for link in data.get("links", []) if link.get("rel") == "approve"),
            None,
        )
        if not approve:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="PayPal order error: no approval link returned",
            )

        approval_url = approve
        logger.info("PayPal order %s created (%s %s)", data.get("id"), q.total_amount, cur)
        return PayPalCheckoutResponse(order_id=data.get("id", ""), approval_url=approval_url)

    # ----- Crypto -----

    def create_crypto_payment(
        self,
        session: Session,
        payload: CheckoutRequest,
        current_user: User | None,
        affiliate_code: str | None,
        client: httpx.Client,
    ) -> CryptoCheckoutResponse:
        self.validate(payload, current_user)
        creds = gw.resolve_nowpayments(self.config_service.payments(session))
        if not creds.api_key:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="NOWPayments is not configured",
            )

        q = self.quote(session, payload, client)
        summary = self.build_summary(payload, q, "crypto", current_user, affiliate_code)

        body = {
            "price_amount": float(q.total_amount),
            "price_currency": q.currency.lower(),
            "pay_currency": payload.pay_currency.lower(),
            "order_id": f"anoint_{int(time.time() * 1000)}_{summary.user_id or 'guest'}",
            "order_description": summary.dumps(),
            "ipn_callback_url": f"{self._base()}{settings.API_V1_STR}/payment/crypto/webhook",
            "success_url": f"{self._base()}/success?provider=crypto",
            "cancel_url": f"{self._base()}/dashboard?payment=cancelled",
        }

        try:
            data = gw.NowPaymentsGateway(client, creds.api_key).create_payment(body)
        except gw.GatewayError as e:
            logger.error("NOWPayments payment creation failed: %s", e.message)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"NOWPayments error: {e.message}",
            )

        logger.info("Crypto payment %s created (%s %s)", data.get("payment_id"), q.total_amount, q.currency)
        return CryptoCheckoutResponse(
            payment_id=str(data.get("payment_id", "")),
            pay_address=data.get("pay_address"),
            pay_amount=data.get("pay_amount"),
            pay_currency=data.get("pay_currency"),
            price_amount=data.get("price_amount"),
            price_currency=data.get("price_currency"),
            payment_status=data.get("payment_status"),
        )

    def crypto_status(self, session: Session, payment_id: str, client: httpx.Client) -> dict:
        creds = gw.resolve_nowpayments(self.config_service.payments(session))
        if not creds.api_key:
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="NOWPayments is not configured",
            )
        try:
            data = gw.NowPaymentsGateway(client, creds.api_key).get_payment(payment_id)
        except gw.GatewayError as e:
            logger.error("Crypto payment status failed: %s", e.message)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Failed to check payment status",
            )
        return {
            "payment_id": str(data.get("payment_id", payment_id)),
            "status": gw.map_crypto_status(data.get("payment_status")),
            "payment_status": data.get("payment_status"),
            "pay_amount": data.get("pay_amount"),
            "actually_paid": data.get("actually_paid"),
            "pay_currency": data.get("pay_currency"),
        }

    # ----- Helpers -----

    @staticmethod
    def _base() -> str:
        return settings.PUBLIC_BASE_URL.rstrip("/")

    def _absolute_url(self, url: str | None) -> str | None:
        if not url:
            return None
        absolute = urljoin(self._base() + "/", url)
        if not absolute.lower().startswith(("http://", "https://")):
            return None
        return absolute
