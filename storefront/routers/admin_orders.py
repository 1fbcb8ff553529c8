# storefront/routers/admin_orders.py
import uuid

import httpx
from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from storefront.core.auth import require_admin
from storefront.core.http import get_http_client
from storefront.database import get_session
from storefront.repositories.config_repo import ConfigRepository
from storefront.repositories.order_repo import OrderRepository
from storefront.repositories.product_repo import ProductRepository
from storefront.repositories.shipment_repo import ShipmentRepository
from storefront.repositories.user_repo import UserRepository
from storefront.schemas.order import (
    OrderCreate,
    OrderCreateResult,
    OrderRead,
    OrderStatus,
    OrderUpdate,
    OrderWithItemsRead,
)
from storefront.services.config_service import ConfigService
from storefront.services.order_service import OrderService
from storefront.services.shipping_service import ShippingService

router = APIRouter(
    prefix="/admin/orders",
    tags=["Admin Orders"],
    dependencies=[Depends(require_admin)],
)

order_repo = OrderRepository()
shipment_repo = ShipmentRepository()
shipping_service = ShippingService(ConfigService(ConfigRepository()), order_repo, shipment_repo)
service = OrderService(
    order_repo,
    ProductRepository(),
    UserRepository(),
    shipment_repo,
    shipping_service=shipping_service,
)


@router.get("", response_model=list[OrderRead])
def list_orders(
    session: Session = Depends(get_session),
    skip: int = 0,
    limit: int = 50,
    status_filter: OrderStatus | None = None,
):
    """
    List all orders, newest first. Optional `status_filter`.
    """
    return service.list_orders(session, skip, limit, status_filter)


@router.post("", response_model=OrderCreateResult, status_code=status.HTTP_201_CREATED)
def create_order(
    payload: OrderCreate,
    session: Session = Depends(get_session),
    client: httpx.Client = Depends(get_http_client),
):
    """
    Create a manual order (number `ANA-<year>-<seq>`).

    With `create_shipping_label=true` a label is bought right after the
    order is saved; a failed purchase is reported in `label_error` and
    never undoes the order.
    """
    return service.create_manual_order(session, payload, client)


@router.get("/{order_id}", response_model=OrderWithItemsRead)
def get_order(
    order_id: uuid.UUID,
    session: Session = Depends(get_session),
):
    return service.get_order_detail(session, order_id)


@router.patch("/{order_id}", response_model=OrderWithItemsRead)
def update_order(
    order_id: uuid.UUID,
    payload: OrderUpdate,
    session: Session = Depends(get_session),
):
    """
    Partial update with the status state machine:

      pending    -> processing, cancelled

      processing -> shipped, cancelled

      shipped    -> delivered, cancelled

      delivered  -> (no change)

      cancelled  -> (no change)
    """
    return service.update_order(session, order_id, payload)


@router.delete("/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_order(
    order_id: uuid.UUID,
    session: Session = Depends(get_session),
):
    """
    Delete an order with its items and shipments.
    """
    service.delete_order(session, order_id)
    return None
