# storefront/services/webhook_service.py
"""
Turns provider callbacks into orders.

Every handler follows the same steps:
  1. authenticate the callback (signature or a capture call)
  2. rebuild the OrderSummary written at checkout
  3. persist Order + OrderItems through OrderService (idempotent)
  4. schedule receipt / affiliate notifications after the response

Once a callback is authenticated the caller answers 200 even if step 3
fails; the failure is logged for manual follow-up.
"""
import json
import logging
from decimal import Decimal
from typing import Any
from urllib.parse import quote as url_quote

import httpx
from fastapi import BackgroundTasks, HTTPException, status
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from storefront.core.config import get_settings
from storefront.models.order import Order
from storefront.schemas.order_summary import OrderSummary, decimal_or_zero
from storefront.services import payment_gateways as gw
from storefront.services.config_service import ConfigService
from storefront.services.notification_service import NotificationService, ReceiptLine
from storefront.services.order_service import OrderService, PaidOrder

settings = get_settings()
logger = logging.getLogger(__name__)

CRYPTO_PAID_STATUSES = {"finished", "confirmed"}


def receipt_lines(summary: OrderSummary) -> list[ReceiptLine]:
    return [
        ReceiptLine(
            name=it.n or "Item",
            quantity=it.q,
            price=decimal_or_zero(it.p) if it.p is not None else Decimal("0.00"),
        )
        for it in summary.item_list
    ]


def _stripe_address(details: dict | None, email: str | None = None, phone: str | None = None) -> dict | None:
    """Stripe `{name, address{line1,...}}` -> Address-shaped dict."""
    if not details or not details.get("address"):
        return None
    a = details["address"]
    return {
        "full_name": details.get("name") or "",
        "street": a.get("line1") or "",
        "street2": a.get("line2"),
        "city": a.get("city") or "",
        "state": a.get("state") or "",
        "zip": a.get("postal_code") or "",
        "country": a.get("country") or "",
        "phone": details.get("phone") or phone,
        "email": email,
    }


def _paypal_address(shipping: dict | None, email: str | None = None) -> dict | None:
    if not shipping or not shipping.get("address"):
        return None
    a = shipping["address"]
    return {
        "full_name": (shipping.get("name") or {}).get("full_name") or "",
        "street": a.get("address_line_1") or "",
        "street2": a.get("address_line_2"),
        "city": a.get("admin_area_2") or "",
        "state": a.get("admin_area_1") or "",
        "zip": a.get("postal_code") or "",
        "country": a.get("country_code") or "",
        "email": email,
    }


class WebhookService:
    def __init__(
        self,
        config_service: ConfigService,
        order_service: OrderService,
        notifier: NotificationService,
    ):
        self.config_service = config_service
        self.order_service = order_service
        self.notifier = notifier

    # ----- Shared -----

    def _record(
        self,
        session: Session,
        paid: PaidOrder,
        background_tasks: BackgroundTasks,
        affiliate_code: str | None = None,
    ) -> Order | None:
        """Persist and schedule notifications; None on duplicate or DB failure."""
        try:
            order = self.order_service.create_paid_order(session, paid)
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("Failed to record %s order %s: %s", paid.payment_method, paid.order_number, e)
            return None
        if order is None:
            return None

        background_tasks.add_task(
            self.notifier.order_paid,
            order.id,
            receipt_lines(paid.summary),
            affiliate_code or paid.summary.aff,
        )
        return order

    # ----- Stripe -----

    def handle_stripe(
        self,
        session: Session,
        payload: bytes,
        signature: str | None,
        background_tasks: BackgroundTasks,
    ) -> Order | None:
        creds = gw.resolve_stripe(self.config_service.payments(session))
        if not creds.webhook_secret:
            logger.error("Stripe webhook secret missing")
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail="Stripe webhook is not configured",
            )

        try:
            event = gw.verify_stripe_signature(
                payload,
                signature,
                creds.webhook_secret,
                tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
            )
        except gw.SignatureError as e:
            logger.warning("Rejected Stripe webhook: %s", e)
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid signature",
            )

        event_type = event.get("type")
        if event_type != "checkout.session.completed":
            logger.info("Stripe event %s acknowledged", event_type)
            return None

        obj: dict[str, Any] = (event.get("data") or {}).get("object") or {}
        metadata = obj.get("metadata") or {}
        summary = OrderSummary.from_metadata(metadata.get("orderData"))

        customer = obj.get("customer_details") or {}
        email = customer.get("email") or obj.get("customer_email") or summary.user_email
        shipping_details = obj.get("shipping_details") or (
            obj.get("collected_information") or {}
        ).get("shipping_details")

        paid = PaidOrder(
            order_number=f"STRIPE_{obj.get('id')}",
            payment_method="stripe",
            provider_total=Decimal(obj.get("amount_total") or 0) / 100,
            currency=(obj.get("currency") or summary.currency or "usd").upper(),
            customer_email=email or "",
            customer_name=customer.get("name") or (shipping_details or {}).get("name") or "",
            summary=summary,
            provider_payment_id=obj.get("payment_intent"),
            user_id=obj.get("client_reference_id") or metadata.get("userId") or None,
            shipping_address=_stripe_address(shipping_details, email, customer.get("phone")),
            billing_address=_stripe_address(customer, email),
        )
        return self._record(session, paid, background_tasks, metadata.get("aff") or None)

    # ----- PayPal -----

    @staticmethod
    def _error_redirect(message: str) -> str:
        base = settings.PUBLIC_BASE_URL.rstrip("/")
        return f"{base}/dashboard?payment=error&message={url_quote(message, safe='')}"

    def handle_paypal_capture(
        self,
        session: Session,
        token: str | None,
        custom_data: str | None,
        background_tasks: BackgroundTasks,
        client: httpx.Client,
    ) -> str:
        """Capture an approved PayPal order; returns the browser redirect URL."""
        if not token:
            return self._error_redirect("Missing PayPal token")

        creds = gw.resolve_paypal(self.config_service.payments(session))
        if not (creds.client_id and creds.client_secret):
            logger.error("PayPal capture attempted without credentials")
            return self._error_redirect("PayPal is not configured")

        try:
            data = gw.PayPalGateway(client, creds).capture_order(token)
        except gw.GatewayError as e:
            logger.error("PayPal capture for %s failed: %s", token, e.message)
            return self._error_redirect("Payment capture failed")

        if data.get("status") != "COMPLETED":
            logger.warning("PayPal order %s captured with status %s", token, data.get("status"))
            return self._error_redirect("Payment not completed")

        summary = OrderSummary.from_metadata(custom_data)
        unit = (data.get("purchase_units") or [{}])[0]
        captures = (unit.get("payments") or {}).get("captures") or [{}]
        capture = captures[0]
        amount = capture.get("amount") or unit.get("amount") or {}

        payer = data.get("payer") or {}
        email = payer.get("email_address") or summary.user_email or ""
        name = payer.get("name") or {}
        full_name = " ".join(p for p in (name.get("given_name"), name.get("surname")) if p)

        paid = PaidOrder(
            order_number=f"PAYPAL_{token}",
            payment_method="paypal",
            provider_total=decimal_or_zero(amount.get("value")),
            currency=(amount.get("currency_code") or summary.currency or "USD").upper(),
            customer_email=email,
            customer_name=full_name,
            summary=summary,
            provider_payment_id=capture.get("id"),
            user_id=unit.get("custom_id") or None,
            shipping_address=_paypal_address(unit.get("shipping"), email),
        )
        self._record(session, paid, background_tasks)
        return f"{settings.PUBLIC_BASE_URL.rstrip('/')}/success?provider=paypal"

    # ----- Crypto -----

    def handle_crypto(
        self,
        session: Session,
        payload: bytes,
        signature: str | None,
        background_tasks: BackgroundTasks,
    ) -> Order | None:
        creds = gw.resolve_nowpayments(self.config_service.payments(session))
        if creds.ipn_secret:
            try:
                gw.verify_nowpayments_signature(payload, signature, creds.ipn_secret)
            except gw.SignatureError as e:
                logger.warning("Rejected crypto webhook: %s", e)
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="Invalid signature",
                )
        else:
            logger.warning("NOWPAYMENTS_IPN_SECRET not set; crypto webhook accepted unsigned")

        try:
            body = json.loads(payload)
        except ValueError:
            body = None
        if not isinstance(body, dict):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid JSON body",
            )

        payment_status = (body.get("payment_status") or "").lower()
        payment_id = body.get("payment_id")
        if payment_status not in CRYPTO_PAID_STATUSES:
            logger.info("Crypto payment %s status %s; no order yet", payment_id, payment_status)
            return None

        summary = OrderSummary.from_metadata(body.get("order_description"))
        address = summary.shipping_address or {}
        paid = PaidOrder(
            order_number=f"CRYPTO_{payment_id}",
            payment_method="crypto",
            provider_total=decimal_or_zero(body.get("price_amount")),
            currency=(body.get("price_currency") or summary.currency or "USD").upper(),
            customer_email=summary.user_email or address.get("email") or "",
            customer_name=address.get("full_name") or "",
            summary=summary,
            provider_payment_id=str(payment_id) if payment_id is not None else None,
        )
        return self._record(session, paid, background_tasks)
