import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import httpx
from fastapi import HTTPException, status
from sqlmodel import Session

from storefront.models.order import Order, OrderItem
from storefront.models.product import Product
from storefront.repositories.order_repo import OrderRepository
from storefront.repositories.product_repo import ProductRepository
from storefront.repositories.shipment_repo import ShipmentRepository
from storefront.repositories.user_repo import UserRepository
from storefront.schemas.order import (
    OrderCreate,
    OrderCreateResult,
    OrderItemRead,
    OrderUpdate,
    OrderWithItemsRead,
    ShipmentRead,
)
from storefront.schemas.order_summary import OrderSummary, decimal_or_zero

if TYPE_CHECKING:
    from storefront.services.shipping_service import ShippingService

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

# Admin status moves; cancellation is possible until delivery
ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processing", "cancelled"},
    "processing": {"shipped", "cancelled"},
    "shipped": {"delivered", "cancelled"},
    "delivered": set(),
    "cancelled": set(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PaidOrder:
    """What a payment provider tells us about a completed payment."""

    order_number: str
    payment_method: str
    provider_total: Decimal
    currency: str
    customer_email: str
    customer_name: str
    summary: OrderSummary
    provider_payment_id: str | None = None
    user_id: str | None = None
    shipping_address: dict[str, Any] | None = None
    billing_address: dict[str, Any] | None = None


class OrderService:
    """
    Business logic for orders.

    Responsibilities:
      - Persist gateway orders (order + items in one transaction, idempotent
        on order_number)
      - Admin CRUD for manual orders with status state machine
      - Optional label purchase on manual order creation
    """

    def __init__(
        self,
        order_repo: OrderRepository,
        product_repo: ProductRepository,
        user_repo: UserRepository,
        shipment_repo: ShipmentRepository,
        shipping_service: "ShippingService | None" = None,
    ):
        self.order_repo = order_repo
        self.product_repo = product_repo
        self.user_repo = user_repo
        self.shipment_repo = shipment_repo
        self.shipping_service = shipping_service

    # -------- Gateway orders --------

    def create_paid_order(self, session: Session, paid: PaidOrder) -> Order | None:
        """
        Persist an order for a completed payment.

        Returns None when an order with the same number already exists
        (duplicate webhook delivery).

        Amounts come from the summary when it carries any; then
        total = subtotal + extra + shipping and a mismatch with the
        provider's total is only logged. Without a summary the provider
        total becomes the subtotal.
        """
        if self.order_repo.get_by_number(session, paid.order_number):
            logger.info("Order %s already recorded; skipping", paid.order_number)
            return None

        s = paid.summary
        kind = s.extra_kind
        if s.subtotal > 0 or s.total_amount > 0:
            subtotal = decimal_or_zero(s.subtotal)
            extra = decimal_or_zero(s.extra_amount)
            shipping = decimal_or_zero(s.shipping_amount)
            total = subtotal + extra + shipping
            if paid.provider_total and abs(total - paid.provider_total) > CENT:
                logger.warning(
                    "Order %s: summary total %s differs from provider total %s",
                    paid.order_number,
                    total,
                    paid.provider_total,
                )
        else:
            subtotal = paid.provider_total.quantize(CENT)
            extra = shipping = Decimal("0.00")
            total = subtotal

        shipping_address = paid.shipping_address or s.shipping_address
        if s.billing_same_as_shipping:
            billing_address = shipping_address or paid.billing_address or s.billing_address
        else:
            billing_address = paid.billing_address or s.billing_address or shipping_address

        shipping_country = (shipping_address or {}).get("country") or s.buyer_country
        buyer_country = (billing_address or {}).get("country") or shipping_country or "CA"

        order = Order(
            order_number=paid.order_number,
            user_id=self._existing_user_id(session, paid.user_id or s.user_id),
            customer_name=paid.customer_name or "Unknown",
            customer_email=paid.customer_email or s.user_email or "unknown",
            status="processing",
            payment_status="paid",
            payment_method=paid.payment_method,
            provider_payment_id=paid.provider_payment_id,
            currency=(paid.currency or s.currency or "USD").upper(),
            subtotal=subtotal,
            tax_amount=extra,
            shipping_amount=shipping,
            total_amount=total,
            shipping_address=shipping_address,
            billing_address=billing_address,
            buyer_country=(buyer_country or "")[:2].upper() or None,
            shipping_country=(shipping_country or "")[:2].upper() or None,
            tax_subtotal_cad=extra if kind == "tax" else Decimal("0"),
            taxes_estimated_cad=extra if kind == "tax" else Decimal("0"),
            duties_estimated_cad=extra if kind == "tariff" else Decimal("0"),
            duties_taxes_currency=(paid.currency or "USD").upper(),
            tax_breakdown=s.tax_breakdown or {},
            incoterm="DDP" if kind == "tariff" else None,
        )
        order = self.order_repo.create_order(session, order)

        items = self._items_from_summary(session, order, s)
        if items:
            self.order_repo.create_items(session, items)

        session.commit()
        session.refresh(order)
        logger.info(
            "Order %s created (%s %s, %d items)",
            order.order_number,
            order.total_amount,
            order.currency,
            len(items),
        )
        return order

    def _existing_user_id(self, session: Session, raw: str | None) -> uuid.UUID | None:
        if not raw:
            return None
        try:
            user_id = uuid.UUID(str(raw))
        except ValueError:
            return None
        return user_id if self.user_repo.get_by_id(session, user_id) else None

    def _items_from_summary(
        self,
        session: Session,
        order: Order,
        summary: OrderSummary,
    ) -> list[OrderItem]:
        """Only summary items whose product id matches a Product become rows."""
        wanted: list[tuple[uuid.UUID, Any]] = []
        for it in summary.item_list:
            try:
                wanted.append((uuid.UUID(str(it.i)), it))
            except (TypeError, ValueError):
                continue

        products = self.product_repo.get_many(session, (pid for pid, _ in wanted))
        items: list[OrderItem] = []
        for pid, it in wanted:
            product = products.get(pid)
            if product is None:
                continue
            price = decimal_or_zero(it.p) if it.p is not None else product.price
            items.append(self._snapshot_item(order.id, product, it.q, price))
        return items

    @staticmethod
    def _snapshot_item(
        order_id: uuid.UUID,
        product: Product,
        quantity: int,
        price: Decimal,
        overrides: dict[str, Any] | None = None,
    ) -> OrderItem:
        o = overrides or {}
        return OrderItem(
            order_id=order_id,
            product_id=product.id,
            quantity=quantity,
            price=price,
            hs_code=o.get("hs_code") or product.hs_code,
            country_of_origin=o.get("country_of_origin") or product.country_of_origin,
            customs_description=o.get("customs_description")
            or product.customs_description
            or product.name,
            unit_value_cad=o.get("unit_value_cad") or product.default_customs_value_cad or price,
            mass_grams_each=o.get("mass_grams_each") or product.mass_grams,
            is_digital=product.is_digital and not product.is_physical,
        )

    # -------- Admin operations --------

    def next_order_number(self, session: Session, year: int | None = None) -> str:
        """ANA-<year>-<seq:03d>, seq = orders already numbered that year + 1."""
        year = year or _utcnow().year
        prefix = f"ANA-{year}-"
        seq = self.order_repo.count_numbers_with_prefix(session, prefix) + 1
        number = f"{prefix}{seq:03d}"
        # Deleted orders leave gaps; skip numbers still in use
        while self.order_repo.get_by_number(session, number):
            seq += 1
            number = f"{prefix}{seq:03d}"
        return number

    def list_orders(
        self,
        session: Session,
        skip: int = 0,
        limit: int = 50,
        status_filter: str | None = None,
    ) -> list[Order]:
        return self.order_repo.list_all(session, skip, limit, status=status_filter)

    def get_order(self, session: Session, order_id: uuid.UUID) -> Order:
        order = self.order_repo.get_by_id(session, order_id)
        if not order:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Order not found",
            )
        return order

    def get_order_detail(self, session: Session, order_id: uuid.UUID) -> OrderWithItemsRead:
        return self._build_order_with_items_dto(session, self.get_order(session, order_id))

    def create_manual_order(
        self,
        session: Session,
        payload: OrderCreate,
        client: httpx.Client | None = None,
    ) -> OrderCreateResult:
        """
        Create an admin order with its items in one transaction.

        Label purchase (optional) runs after the commit; its failure is
        logged and reported in `label_error`, never raised.
        """
        if not (payload.customer_name and payload.customer_email and payload.total_amount is not None):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Missing required fields: customer_name, customer_email, total_amount",
            )

        products = self.product_repo.get_many(session, (it.product_id for it in payload.items))
        missing = [str(it.product_id) for it in payload.items if it.product_id not in products]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Unknown product: {missing[0]}",
            )

        lines = [
            (it, products[it.product_id], it.price if it.price is not None else products[it.product_id].price)
            for it in payload.items
        ]
        subtotal = payload.subtotal
        if subtotal is None:
            subtotal = sum((price * it.quantity for it, _, price in lines), Decimal("0"))

        shipping_address = payload.shipping_address.as_dict() if payload.shipping_address else None
        billing_address = payload.billing_address.as_dict() if payload.billing_address else None
        shipping_country = (shipping_address or {}).get("country")

        order = Order(
            order_number=self.next_order_number(session),
            user_id=self._existing_user_id(session, str(payload.user_id) if payload.user_id else None),
            customer_name=payload.customer_name,
            customer_email=str(payload.customer_email).lower(),
            customer_phone=payload.customer_phone,
            status=payload.status,
            payment_status=payload.payment_status,
            payment_method=payload.payment_method,
            currency=payload.currency.upper(),
            subtotal=subtotal,
            tax_amount=payload.tax_amount,
            shipping_amount=payload.shipping_amount,
            total_amount=payload.total_amount,
            shipping_address=shipping_address,
            billing_address=billing_address or shipping_address,
            shipping_country=(shipping_country or "")[:2].upper() or None,
            buyer_country=((billing_address or {}).get("country") or shipping_country or "")[:2].upper()
            or None,
            notes=payload.notes,
        )
        order = self.order_repo.create_order(session, order)

        items = [
            self._snapshot_item(
                order.id,
                product,
                it.quantity,
                price,
                overrides=it.model_dump(
                    include={
                        "hs_code",
                        "country_of_origin",
                        "customs_description",
                        "unit_value_cad",
                        "mass_grams_each",
                    },
                    exclude_none=True,
                ),
            )
            for it, product, price in lines
        ]
        if items:
            self.order_repo.create_items(session, items)

        session.commit()
        session.refresh(order)
        logger.info("Manual order %s created", order.order_number)

        label_error: str | None = None
        if payload.create_shipping_label:
            label_error = self._try_create_label(session, order, payload.shipping_carrier, client)

        detail = self._build_order_with_items_dto(session, order)
        return OrderCreateResult(**detail.model_dump(), label_error=label_error)

    def _try_create_label(
        self,
        session: Session,
        order: Order,
        carrier: str,
        client: httpx.Client | None,
    ) -> str | None:
        if self.shipping_service is None or not order.shipping_address:
            return "No shipping address on order"
        try:
            self.shipping_service.create_label_for_order(session, order.id, carrier=carrier, client=client)
        except HTTPException as e:
            logger.warning("Label creation failed for %s: %s", order.order_number, e.detail)
            session.rollback()
            return str(e.detail)
        return None

    def update_order(
        self,
        session: Session,
        order_id: uuid.UUID,
        payload: OrderUpdate,
    ) -> OrderWithItemsRead:
        """
        Admin partial update.

        Status state machine:

          pending    -> processing, cancelled
          processing -> shipped, cancelled
          shipped    -> delivered, cancelled
          delivered  -> (no change)
          cancelled  -> (no change)

        Lifecycle timestamps are stamped on entry to shipped / delivered /
        cancelled and on payment_status -> refunded.
        """
        order = self.get_order(session, order_id)
        now = _utcnow()

        if payload.status is not None and payload.status != order.status:
            current, new = order.status, payload.status
            if new not in ALLOWED_TRANSITIONS.get(current, set()):
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Invalid status transition: {current} -> {new}",
                )
            order.status = new
            if new == "shipped":
                order.shipped_at = now
            elif new == "delivered":
                order.delivered_at = now
            elif new == "cancelled":
                order.cancelled_at = now

        if payload.payment_status is not None and payload.payment_status != order.payment_status:
            order.payment_status = payload.payment_status
            if payload.payment_status == "refunded":
                order.refunded_at = now
                if order.refund_amount is None and payload.refund_amount is None:
                    order.refund_amount = order.total_amount

        for field in (
            "tracking_number",
            "notes",
            "customer_name",
            "customer_phone",
            "refund_amount",
        ):
            value = getattr(payload, field)
            if value is not None:
                setattr(order, field, value)

        if payload.shipping_address is not None:
            order.shipping_address = payload.shipping_address.as_dict()
            country = payload.shipping_address.country
            if country:
                order.shipping_country = country[:2].upper()
        if payload.billing_address is not None:
            order.billing_address = payload.billing_address.as_dict()

        order.updated_at = now
        self.order_repo.update_order(session, order)
        session.commit()
        session.refresh(order)
        return self._build_order_with_items_dto(session, order)

    def delete_order(self, session: Session, order_id: uuid.UUID) -> None:
        order = self.get_order(session, order_id)
        self.order_repo.delete_order(session, order)
        session.commit()
        logger.info("Order %s deleted", order.order_number)

    # -------- Helper DTO builder --------

    def _build_order_with_items_dto(
        self,
        session: Session,
        order: Order,
    ) -> OrderWithItemsRead:
        items = self.order_repo.list_items_for_order(session, order.id)
        products = self.product_repo.get_many(session, (it.product_id for it in items))

        item_dtos = [
            OrderItemRead(
                id=it.id,
                order_id=it.order_id,
                product_id=it.product_id,
                product_name=products[it.product_id].name if it.product_id in products else None,
                quantity=it.quantity,
                price=it.price,
                line_total=(Decimal(it.price) * it.quantity).quantize(CENT),
                hs_code=it.hs_code,
                country_of_origin=it.country_of_origin,
                customs_description=it.customs_description,
                unit_value_cad=it.unit_value_cad,
                mass_grams_each=it.mass_grams_each,
                is_digital=it.is_digital,
            )
            for it in items
        ]
        shipments = [
            ShipmentRead.model_validate(s, from_attributes=True)
            for s in self.shipment_repo.list_for_order(session, order.id)
        ]

        return OrderWithItemsRead(
            **order.model_dump(),
            items=item_dtos,
            shipments=shipments,
        )
