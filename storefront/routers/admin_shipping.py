# storefront/routers/admin_shipping.py
from typing import Any

import httpx
from fastapi import APIRouter, Body, Depends
from sqlmodel import Session

from storefront.core.auth import require_admin
from storefront.core.http import get_http_client
from storefront.database import get_session
from storefront.repositories.config_repo import ConfigRepository
from storefront.repositories.order_repo import OrderRepository
from storefront.repositories.shipment_repo import ShipmentRepository
from storefront.schemas.shipping import (
    CancelRequest,
    CustomsValidationRequest,
    CustomsValidationResult,
    LabelRequest,
    LabelResponse,
    PurchaseRequest,
    PurchaseResponse,
    RatesRequest,
    RatesResponse,
    TrackRequest,
)
from storefront.services.config_service import ConfigService
from storefront.services.shipping_service import ShippingService

router = APIRouter(
    prefix="/admin/shipping",
    tags=["Admin Shipping"],
    dependencies=[Depends(require_admin)],
)

config_service = ConfigService(ConfigRepository())
service = ShippingService(config_service, OrderRepository(), ShipmentRepository())


@router.post("/rates", response_model=RatesResponse)
def get_rates(
    payload: RatesRequest,
    session: Session = Depends(get_session),
    client: httpx.Client = Depends(get_http_client),
):
    """
    Quote rates for an ad-hoc shipment. The sender defaults to the
    configured origin; `carrier` narrows the result to one provider.
    """
    return service.get_rates(session, payload, client)


@router.post("/label", response_model=LabelResponse)
def create_label(
    payload: LabelRequest,
    session: Session = Depends(get_session),
    client: httpx.Client = Depends(get_http_client),
):
    """
    Buy a label for an existing order: origin from config, recipient from
    the order, customs (DDP) for destinations outside the home country.
    The order's tracking number is updated.
    """
    return service.create_label_for_order(
        session,
        payload.order_id,
        carrier=payload.carrier,
        parcel=payload.parcel,
        customs_items=payload.customs_items,
        carrier_account_id=payload.carrier_account_id,
        client=client,
        provider=payload.provider,
    )


@router.post("/purchase", response_model=PurchaseResponse)
def purchase_label(
    payload: PurchaseRequest,
    session: Session = Depends(get_session),
    client: httpx.Client = Depends(get_http_client),
):
    return service.purchase(session, payload, client)


@router.post("/cancel")
def cancel_label(
    payload: CancelRequest,
    session: Session = Depends(get_session),
    client: httpx.Client = Depends(get_http_client),
) -> dict[str, Any]:
    """
    Request a refund for a purchased label and mark the shipment cancelled.
    """
    return service.cancel(session, payload, client)


@router.post("/track")
def track(
    payload: TrackRequest,
    client: httpx.Client = Depends(get_http_client),
) -> dict[str, Any]:
    return service.track(payload, client)


@router.get("/config")
def get_shipping_config(session: Session = Depends(get_session)) -> dict[str, Any]:
    return config_service.get_masked(session, "shipping")


@router.put("/config")
def update_shipping_config(
    payload: dict[str, Any] = Body(...),
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    return config_service.update(session, "shipping", payload)


@router.post("/customs/validate", response_model=CustomsValidationResult)
def validate_customs(payload: CustomsValidationRequest):
    """
    Check that every physical item carries what a CA -> US DDP
    declaration needs (HS code, origin, description, value, mass).
    """
    return service.validate_customs(
        payload.items, payload.destination_country, payload.origin_country
    )
