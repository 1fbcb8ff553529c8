"""
Post-commit side effects for a paid order.

Runs as a FastAPI background task after the webhook response, with its own
DB session. Nothing here can fail the order write: every step is retried
a few times, then logged and dropped.

  - receipt email to the customer and a copy to every active ADMIN
  - affiliate conversion ping to GoAffPro
"""
import html
import logging
import smtplib
import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable

import httpx
from sqlmodel import Session

from storefront import database
from storefront.core import http
from storefront.core.config import get_settings
from storefront.core.email_client import is_configured as smtp_configured
from storefront.core.email_client import send_email
from storefront.models.order import Order
from storefront.repositories.order_repo import OrderRepository
from storefront.repositories.product_repo import ProductRepository
from storefront.repositories.user_repo import UserRepository
from storefront.schemas.config import EmailTemplates
from storefront.services.config_service import ConfigService
from storefront.services.currency_service import currency_symbol

settings = get_settings()
logger = logging.getLogger(__name__)

GOAFFPRO_ENDPOINTS = (
    "https://api.goaffpro.com/v2/conversion",
    "https://api.goaffpro.com/track/conversion",
)


@dataclass
class ReceiptLine:
    name: str
    quantity: int
    price: Decimal


@dataclass
class Receipt:
    order_number: str
    total: Decimal
    currency: str
    customer_name: str | None = None
    lines: list[ReceiptLine] = field(default_factory=list)
    shipping_address: dict[str, Any] | None = None


def render_receipt(receipt: Receipt, templates: EmailTemplates, admin_copy: bool = False) -> tuple[str, str, str]:
    """Return (subject, text, html) for a receipt."""
    fmt = {"brand": settings.BRAND_NAME, "order_number": receipt.order_number}
    subject = (templates.admin_copy_subject if admin_copy else templates.order_receipt_subject).format(**fmt)
    sym = currency_symbol(receipt.currency)

    text_lines = [
        f"Hi {receipt.customer_name or 'there'},",
        "",
        templates.order_receipt_intro,
        f"Order: {receipt.order_number}",
        "",
    ]
    for line in receipt.lines:
        text_lines.append(f"  {line.quantity} x {line.name}  {sym}{line.price:.2f}")
    text_lines += ["", f"Total: {sym}{receipt.total:.2f} {receipt.currency}"]

    addr = receipt.shipping_address or {}
    if addr:
        parts = [addr.get(k) for k in ("full_name", "street", "city", "state", "zip", "country")]
        text_lines += ["", "Ships to: " + ", ".join(p for p in parts if p)]

    rows = "".join(
        f"<tr><td>{html.escape(line.name)}</td><td>{line.quantity}</td>"
        f"<td>{sym}{line.price:.2f}</td></tr>"
        for line in receipt.lines
    )
    html_body = (
        f"<p>Hi {html.escape(receipt.customer_name or 'there')},</p>"
        f"<p>{html.escape(templates.order_receipt_intro)}</p>"
        f"<p><strong>Order:</strong> {html.escape(receipt.order_number)}</p>"
        f"<table>{rows}</table>"
        f"<p><strong>Total:</strong> {sym}{receipt.total:.2f} {receipt.currency}</p>"
    )
    return subject, "\n".join(text_lines), html_body


class NotificationService:
    def __init__(
        self,
        order_repo: OrderRepository,
        product_repo: ProductRepository,
        user_repo: UserRepository,
        config_service: ConfigService,
        max_attempts: int = 3,
        backoff_seconds: float = 1.0,
    ):
        self.order_repo = order_repo
        self.product_repo = product_repo
        self.user_repo = user_repo
        self.config_service = config_service
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds

    # ----- Retry -----

    def _with_retry(self, what: str, fn: Callable[[], bool | None], retry_on: tuple) -> bool:
        """Call fn until it succeeds; False after max_attempts failures."""
        for attempt in range(1, self.max_attempts + 1):
            try:
                fn()
                return True
            except retry_on as e:
                logger.warning("%s failed (attempt %d/%d): %s", what, attempt, self.max_attempts, e)
                if attempt < self.max_attempts and self.backoff_seconds:
                    time.sleep(self.backoff_seconds * attempt)
        logger.error("%s gave up after %d attempts", what, self.max_attempts)
        return False

    # ----- Entry point (background task) -----

    def order_paid(
        self,
        order_id: uuid.UUID,
        summary_lines: list[ReceiptLine] | None = None,
        affiliate_code: str | None = None,
    ) -> None:
        with Session(database.engine) as session:
            order = self.order_repo.get_by_id(session, order_id)
            if order is None:
                logger.warning("Notification skipped: order %s not found", order_id)
                return
            receipt = self._build_receipt(session, order, summary_lines or [])
            self.send_receipts(session, order, receipt)
            customer_email = order.customer_email

        self.notify_affiliate(
            order_number=receipt.order_number,
            amount=receipt.total,
            currency=receipt.currency,
            affiliate_code=affiliate_code,
            customer_email=customer_email,
        )

    def _build_receipt(self, session: Session, order: Order, fallback: list[ReceiptLine]) -> Receipt:
        items = self.order_repo.list_items_for_order(session, order.id)
        if items:
            products = self.product_repo.get_many(session, (it.product_id for it in items))
            lines = [
                ReceiptLine(
                    name=products[it.product_id].name if it.product_id in products else "Item",
                    quantity=it.quantity,
                    price=Decimal(it.price),
                )
                for it in items
            ]
        else:
            lines = fallback
        return Receipt(
            order_number=order.order_number,
            total=Decimal(order.total_amount),
            currency=order.currency,
            customer_name=order.customer_name,
            lines=lines,
            shipping_address=order.shipping_address,
        )

    # ----- Email -----

    def send_receipts(self, session: Session, order: Order, receipt: Receipt) -> int:
        """Customer receipt plus admin copies; returns the number delivered."""
        if not smtp_configured():
            logger.info("SMTP not configured; receipts for %s not sent", order.order_number)
            return 0

        templates = self.config_service.email_templates(session)
        recipients: list[tuple[str, bool]] = []
        if order.customer_email and "@" in order.customer_email:
            recipients.append((order.customer_email, False))
        for admin in self.user_repo.list_active_admins(session):
            if admin.email and admin.email != order.customer_email:
                recipients.append((admin.email, True))

        sent = 0
        for email, admin_copy in recipients:
            subject, text, html_body = render_receipt(receipt, templates, admin_copy=admin_copy)
            ok = self._with_retry(
                f"Receipt email to {email}",
                lambda: send_email(email, subject, text, html_body),
                (smtplib.SMTPException, OSError),
            )
            sent += int(ok)
        return sent

    # ----- Affiliate -----

    def notify_affiliate(
        self,
        order_number: str,
        amount: Decimal,
        currency: str,
        affiliate_code: str | None,
        customer_email: str | None,
        client: httpx.Client | None = None,
    ) -> bool:
        access = settings.GOAFFPRO_ACCESS_TOKEN
        public = settings.GOAFFPRO_PUBLIC_TOKEN
        if not (access or public):
            return False

        payload = {
            "order_id": order_number,
            "sale_amount": float(amount),
            "currency": (currency or "USD").upper(),
            "affiliate_code": affiliate_code or None,
            "customer_email": customer_email or None,
        }
        headers = {}
        if access:
            headers["x-goaffpro-access-token"] = access
        if public:
            headers["x-goaffpro-public-token"] = public

        owns_client = client is None
        client = client or http.make_http_client()

        def post() -> None:
            for url in GOAFFPRO_ENDPOINTS:
                resp = client.post(url, json=payload, headers=headers)
                if resp.status_code < 400:
                    return
            raise httpx.HTTPStatusError(
                f"GoAffPro rejected conversion ({resp.status_code})",
                request=resp.request,
                response=resp,
            )

        try:
            return self._with_retry(
                f"Affiliate conversion for {order_number}", post, (httpx.HTTPError,)
            )
        finally:
            if owns_client:
                client.close()
