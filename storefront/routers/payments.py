# storefront/routers/payments.py
import httpx
from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import RedirectResponse
from sqlmodel import Session

from storefront.core.auth import get_current_user
from storefront.core.http import get_http_client
from storefront.database import get_session
from storefront.models.user import User
from storefront.repositories.config_repo import ConfigRepository
from storefront.repositories.order_repo import OrderRepository
from storefront.repositories.product_repo import ProductRepository
from storefront.repositories.shipment_repo import ShipmentRepository
from storefront.repositories.user_repo import UserRepository
from storefront.schemas.checkout import (
    CheckoutRequest,
    CryptoCheckoutResponse,
    CryptoStatusResponse,
    PayPalCheckoutResponse,
    StripeCheckoutResponse,
)
from storefront.services.checkout_service import CheckoutService
from storefront.services.config_service import ConfigService
from storefront.services.currency_service import CurrencyService
from storefront.services.notification_service import NotificationService
from storefront.services.order_service import OrderService
from storefront.services.webhook_service import WebhookService

router = APIRouter(prefix="/payment", tags=["Payments"])

AFFILIATE_COOKIES = ("an_aff", "ga_ref", "goaff_ref")

config_service = ConfigService(ConfigRepository())
order_repo = OrderRepository()
product_repo = ProductRepository()
user_repo = UserRepository()

checkout_service = CheckoutService(config_service, CurrencyService())
order_service = OrderService(order_repo, product_repo, user_repo, ShipmentRepository())
notifier = NotificationService(order_repo, product_repo, user_repo, config_service)
webhook_service = WebhookService(config_service, order_service, notifier)


def affiliate_code(request: Request, payload: CheckoutRequest) -> str | None:
    """Explicit code in the body wins over the tracking cookies."""
    if payload.affiliate_code:
        return payload.affiliate_code
    for name in AFFILIATE_COOKIES:
        value = request.cookies.get(name)
        if value:
            return value
    return None


# -------- Checkout --------


@router.post("/stripe/create-payment", response_model=StripeCheckoutResponse)
def create_stripe_session(
    payload: CheckoutRequest,
    request: Request,
    session: Session = Depends(get_session),
    current_user: User | None = Depends(get_current_user),
    client: httpx.Client = Depends(get_http_client),
):
    """
    Create a Stripe Checkout Session for the cart.

    Guests may check out only with `allow_guest=true` and an all-physical cart.
    """
    return checkout_service.create_stripe_session(
        session, payload, current_user, affiliate_code(request, payload), client
    )


@router.post("/paypal/create-order", response_model=PayPalCheckoutResponse)
def create_paypal_order(
    payload: CheckoutRequest,
    request: Request,
    session: Session = Depends(get_session),
    current_user: User | None = Depends(get_current_user),
    client: httpx.Client = Depends(get_http_client),
):
    return checkout_service.create_paypal_order(
        session, payload, current_user, affiliate_code(request, payload), client
    )


@router.post("/crypto/create-payment", response_model=CryptoCheckoutResponse)
def create_crypto_payment(
    payload: CheckoutRequest,
    request: Request,
    session: Session = Depends(get_session),
    current_user: User | None = Depends(get_current_user),
    client: httpx.Client = Depends(get_http_client),
):
    return checkout_service.create_crypto_payment(
        session, payload, current_user, affiliate_code(request, payload), client
    )


@router.get("/crypto/status/{payment_id}", response_model=CryptoStatusResponse)
def crypto_status(
    payment_id: str,
    session: Session = Depends(get_session),
    client: httpx.Client = Depends(get_http_client),
):
    return checkout_service.crypto_status(session, payment_id, client)


# -------- Provider callbacks --------


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
    session: Session = Depends(get_session),
) -> dict[str, bool]:
    """
    Stripe event receiver. The signature is checked against the raw body,
    so the body is read here rather than parsed by FastAPI.
    """
    payload = await request.body()
    await run_in_threadpool(
        webhook_service.handle_stripe, session, payload, stripe_signature, background_tasks
    )
    return {"received": True}


@router.get("/paypal/capture")
def paypal_capture(
    background_tasks: BackgroundTasks,
    token: str | None = None,
    custom_data: str | None = None,
    session: Session = Depends(get_session),
    client: httpx.Client = Depends(get_http_client),
):
    """
    PayPal return URL: capture the approved order, then send the buyer on.
    `PayerID` is also sent by PayPal and not needed for the capture.
    """
    url = webhook_service.handle_paypal_capture(
        session, token, custom_data, background_tasks, client
    )
    return RedirectResponse(url, status_code=status.HTTP_302_FOUND)


@router.post("/crypto/webhook")
async def crypto_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    signature: str | None = Header(default=None, alias="x-nowpayments-sig"),
    session: Session = Depends(get_session),
) -> dict[str, str]:
    """
    NOWPayments IPN receiver; an order is written once the payment is
    `finished` or `confirmed`. The IPN signature covers the raw body.
    """
    payload = await request.body()
    await run_in_threadpool(
        webhook_service.handle_crypto, session, payload, signature, background_tasks
    )
    return {"status": "success"}
