"""
Shipping labels through Shippo or straight from the carriers.

By default Canada Post and UPS are reached through Shippo carrier accounts;
Shippo is consumed as a plain REST API (`ShippoToken` auth, JSON bodies).
With `label_provider="direct"` (config or per request) the label is bought
from the carrier itself through storefront.services.carrier_clients, using
the same sender, recipient, parcel and customs lines.

Label orchestration for an order:
  1. sender from the `shipping` config origin, recipient from the order
  2. parcel from the request, else config defaults; weight is the sum of
     the item masses when known, never below 0.1 kg
  3. customs declaration (DDP) when the destination is abroad; lines from
     explicit items, else the order items' customs snapshot, else a single
     generic line valued at the order subtotal
  4. create the shipment, pick the preferred rate, buy the label
  5. record a Shipment (raw provider responses in `api_audit`) and the
     order's tracking number
"""
import logging
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Iterable
from urllib.parse import quote

import httpx
from fastapi import HTTPException, status
from sqlmodel import Session

from storefront.core import http
from storefront.core.config import get_settings
from storefront.models.order import Order, OrderItem
from storefront.models.shipment import Shipment
from storefront.repositories.order_repo import OrderRepository
from storefront.repositories.shipment_repo import ShipmentRepository
from storefront.schemas.config import ShippingConfig
from storefront.schemas.shipping import (
    CancelRequest,
    CustomsItemIn,
    CustomsValidationError,
    CustomsValidationItem,
    CustomsValidationResult,
    LabelResponse,
    ParcelIn,
    PurchaseRequest,
    PurchaseResponse,
    RatesRequest,
    RatesResponse,
    ShippingAddressIn,
    TrackRequest,
)
from storefront.services.carrier_clients import CarrierError, CarrierNotConfigured, carrier_client
from storefront.services.config_service import ConfigService
from storefront.services.file_service import save_label

settings = get_settings()
logger = logging.getLogger(__name__)

MIN_PARCEL_KG = 0.1
DEFAULT_ITEM_GRAMS = 100

# carrier option -> (provider-name fragment in Shippo rates, Shipment.carrier)
CARRIERS: dict[str, tuple[str, str]] = {
    "canada-post": ("canada post", "canadapost"),
    "ups": ("ups", "ups"),
}


def shippo_api_key() -> str | None:
    test, live = settings.SHIPPO_API_TEST_KEY, settings.SHIPPO_API_KEY
    if settings.SHIPPO_USE_TEST_KEY:
        return test or live
    return live or test


def _provider(rate: dict[str, Any]) -> str:
    return str(rate.get("provider") or rate.get("carrier") or "").lower()


def select_preferred_rate(
    rates: list[dict[str, Any]],
    carrier: str,
    carrier_account_id: str | None = None,
) -> dict[str, Any] | None:
    """
    Configured carrier account + provider name match, else provider name
    match, else the first rate.
    """
    if not rates:
        return None
    fragment = CARRIERS.get(carrier, (carrier, carrier))[0]
    if carrier_account_id:
        for rate in rates:
            if str(rate.get("carrier_account")) == carrier_account_id and fragment in _provider(rate):
                return rate
    for rate in rates:
        if fragment in _provider(rate):
            return rate
    return rates[0]


def validate_customs(
    items: Iterable[CustomsValidationItem],
    destination_country: str,
    origin_country: str = "CA",
) -> CustomsValidationResult:
    """
    Completeness check for CA -> US shipments (the DDP lane).

    Every physical item needs an HS code, origin, description, a positive
    unit value and a positive mass. Other lanes are always valid.
    """
    items = list(items)
    ddp = origin_country.upper() == "CA" and destination_country.upper() == "US"
    physical = [it for it in items if not it.is_digital]
    total_value = sum(
        (Decimal(it.unit_value_cad or 0) * it.quantity for it in physical), Decimal("0")
    )
    total_grams = sum((it.mass_grams_each or 0) * it.quantity for it in items)

    errors: list[CustomsValidationError] = []
    if ddp:
        checks = (
            ("hs_code", "Missing HS code", lambda it: (it.hs_code or "").strip()),
            ("country_of_origin", "Missing country of origin", lambda it: (it.country_of_origin or "").strip()),
            ("customs_description", "Missing customs description", lambda it: (it.customs_description or "").strip()),
            ("unit_value_cad", "Missing or invalid unit value", lambda it: (it.unit_value_cad or 0) > 0),
            ("mass_grams_each", "Missing or invalid weight", lambda it: (it.mass_grams_each or 0) > 0),
        )
        for index, it in enumerate(items):
            if it.is_digital:
                continue
            for field, message, ok in checks:
                if not ok(it):
                    errors.append(
                        CustomsValidationError(
                            field=field,
                            item_index=index,
                            item_name=it.name,
                            message=f'{message} for item "{it.name}"',
                        )
                    )

    return CustomsValidationResult(
        is_valid=not errors,
        is_ddp_required=ddp,
        errors=errors,
        total_value_cad=float(total_value),
        total_weight_grams=total_grams,
    )


class ShippoClient:
    def __init__(self, client: httpx.Client, api_key: str):
        self.client = client
        self.api_key = api_key
        self.base_url = settings.SHIPPO_API_BASE.rstrip("/")

    def _request(self, method: str, path: str, what: str, **kwargs) -> dict[str, Any]:
        try:
            resp = self.client.request(
                method,
                f"{self.base_url}{path}",
                headers={"Authorization": f"ShippoToken {self.api_key}"},
                **kwargs,
            )
        except httpx.HTTPError as e:
            logger.error("Shippo %s failed: %s", what, e)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Shippo {what} failed: {e}",
            )
        if resp.status_code >= 400:
            detail = http.error_text(resp)
            logger.error("Shippo %s failed (%s): %s", what, resp.status_code, detail)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Shippo {what} failed: {detail}",
            )
        return resp.json()

    def create_shipment(self, body: dict[str, Any]) -> dict[str, Any]:
        return self._request("POST", "/shipments/", "shipment", json=body)

    def purchase(self, rate_id: str, label_file_type: str = "PDF") -> dict[str, Any]:
        return self._request(
            "POST",
            "/transactions/",
            "purchase",
            json={"rate": rate_id, "label_file_type": label_file_type, "async": False},
        )

    def refund(self, transaction_id: str) -> dict[str, Any]:
        return self._request(
            "POST", "/refunds/", "refund", json={"transaction": transaction_id, "async": False}
        )

    def track(self, carrier: str, tracking_number: str) -> dict[str, Any]:
        return self._request("GET", f"/tracks/{quote(carrier, safe='')}/{quote(tracking_number, safe='')}", "track")


class ShippingService:
    def __init__(
        self,
        config_service: ConfigService,
        order_repo: OrderRepository,
        shipment_repo: ShipmentRepository,
    ):
        self.config_service = config_service
        self.order_repo = order_repo
        self.shipment_repo = shipment_repo

    # ----- Helpers -----

    @staticmethod
    def _shippo(client: httpx.Client) -> ShippoClient:
        key = shippo_api_key()
        if not key:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Missing Shippo API key",
            )
        return ShippoClient(client, key)

    @staticmethod
    def _carrier_account(cfg: ShippingConfig, carrier: str, override: str | None) -> str | None:
        if override:
            return override
        if carrier == "ups":
            return cfg.carrier_account_ids.ups_canada
        return cfg.carrier_account_ids.canada_post or settings.SHIPPO_CP_ACCOUNT_ID

    @staticmethod
    def _address(a: ShippingAddressIn) -> dict[str, Any]:
        return {
            "name": a.name,
            "company": a.company,
            "street1": a.address,
            "city": a.city,
            "state": a.state,
            "zip": a.postal_code,
            "country": a.country.upper(),
            "phone": a.phone,
            "email": a.email,
        }

    @staticmethod
    def _origin(cfg: ShippingConfig) -> dict[str, Any]:
        o = cfg.origin
        if not (o.street1 and o.city and o.zip):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Shipping origin is not configured",
            )
        return {
            "name": o.name or settings.BRAND_NAME,
            "company": o.company,
            "street1": o.street1,
            "city": o.city,
            "state": o.state,
            "zip": o.zip,
            "country": (o.country or settings.HOME_COUNTRY).upper(),
            "phone": o.phone,
        }

    @staticmethod
    def _recipient(order: Order) -> dict[str, Any]:
        a = order.shipping_address or {}
        required = ("street", "city", "zip", "country")
        missing = [k for k in required if not a.get(k)]
        if missing:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Order shipping address is incomplete (missing {missing[0]})",
            )
        return {
            "name": a.get("full_name") or order.customer_name,
            "company": a.get("company"),
            "street1": a.get("street"),
            "street2": a.get("street2"),
            "city": a.get("city"),
            "state": a.get("state"),
            "zip": a.get("zip"),
            "country": str(a.get("country")).upper(),
            "phone": a.get("phone") or order.customer_phone,
            "email": a.get("email") or order.customer_email,
        }

    @staticmethod
    def _parcel(cfg: ShippingConfig, parcel: ParcelIn | None, item_grams: int = 0) -> dict[str, Any]:
        d = cfg.parcel_default
        if parcel is not None:
            dims, weight = (parcel.length, parcel.width, parcel.height), parcel.weight
        else:
            dims = (d.length, d.width, d.height)
            weight = item_grams / 1000 if item_grams > 0 else d.weight
        return {
            "length": dims[0],
            "width": dims[1],
            "height": dims[2],
            "distance_unit": "cm",
            "weight": max(weight, MIN_PARCEL_KG),
            "mass_unit": "kg",
        }

    @staticmethod
    def _customs_line(
        description: str,
        quantity: int,
        value_cad: Decimal,
        origin: str | None,
        hs_code: str | None,
        mass_grams: int | None,
    ) -> dict[str, Any]:
        return {
            "description": description,
            "quantity": quantity,
            "net_weight": max((mass_grams or DEFAULT_ITEM_GRAMS) / 1000, 0.01),
            "mass_unit": "kg",
            "value_amount": f"{Decimal(value_cad):.2f}",
            "value_currency": "CAD",
            "origin_country": (origin or "CA").upper(),
            "tariff_number": hs_code or None,
        }

    def _declaration(self, lines: list[dict[str, Any]]) -> dict[str, Any]:
        return {
            "certify": True,
            "certify_signer": settings.BRAND_NAME,
            "contents_type": "MERCHANDISE",
            "non_delivery_option": "ABANDON",
            "incoterm": "DDP",
            "items": lines,
        }

    def _customs_for_order(
        self,
        order: Order,
        items: list[OrderItem],
        explicit: list[CustomsItemIn] | None,
        parcel_kg: float,
    ) -> list[dict[str, Any]]:
        if explicit:
            return [
                self._customs_line(
                    it.description, it.quantity, it.unit_value_cad,
                    it.country_of_origin, it.hs_code, it.mass_grams_each,
                )
                for it in explicit
            ]
        physical = [it for it in items if not it.is_digital]
        if physical:
            return [
                self._customs_line(
                    it.customs_description or "Merchandise",
                    it.quantity,
                    it.unit_value_cad if it.unit_value_cad is not None else it.price,
                    it.country_of_origin,
                    it.hs_code,
                    it.mass_grams_each,
                )
                for it in physical
            ]
        return [
            self._customs_line(
                "Merchandise", 1, order.subtotal, settings.HOME_COUNTRY, None,
                int(parcel_kg * 1000),
            )
        ]

    @staticmethod
    def _shipment_body(
        address_from: dict[str, Any],
        address_to: dict[str, Any],
        parcel: dict[str, Any],
        customs: dict[str, Any] | None,
        carrier_account_id: str | None,
        parcel_template_id: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "address_from": {k: v for k, v in address_from.items() if v is not None},
            "address_to": {k: v for k, v in address_to.items() if v is not None},
            "async": False,
        }
        if parcel_template_id:
            body["parcels"] = [{"template": parcel_template_id, "weight": parcel["weight"], "mass_unit": "kg"}]
        else:
            body["parcels"] = [parcel]
        if customs:
            body["customs_declaration"] = customs
        if carrier_account_id:
            body["carrier_accounts"] = [carrier_account_id]
        return body

    # ----- Operations -----

    def get_rates(self, session: Session, req: RatesRequest, client: httpx.Client) -> RatesResponse:
        cfg = self.config_service.shipping(session)
        shippo = self._shippo(client)
        address_from = self._address(req.sender) if req.sender else self._origin(cfg)
        address_to = self._address(req.recipient)

        customs = None
        if req.customs_items and address_to["country"] != address_from["country"]:
            customs = self._declaration(
                [
                    self._customs_line(
                        it.description, it.quantity, it.unit_value_cad,
                        it.country_of_origin, it.hs_code, it.mass_grams_each,
                    )
                    for it in req.customs_items
                ]
            )

        carrier = req.carrier or "canada-post"
        shipment = shippo.create_shipment(
            self._shipment_body(
                address_from,
                address_to,
                self._parcel(cfg, req.parcel),
                customs,
                self._carrier_account(cfg, carrier, req.carrier_account_id),
                cfg.parcel_template_id,
            )
        )
        rates = shipment.get("rates") or []
        if req.carrier:
            fragment = CARRIERS[req.carrier][0]
            rates = [r for r in rates if fragment in _provider(r)]
        return RatesResponse(shipment_id=shipment.get("object_id"), rates=rates)

    def create_label_for_order(
        self,
        session: Session,
        order_id: uuid.UUID,
        carrier: str = "canada-post",
        parcel: ParcelIn | None = None,
        customs_items: list[CustomsItemIn] | None = None,
        carrier_account_id: str | None = None,
        client: httpx.Client | None = None,
        provider: str | None = None,
    ) -> LabelResponse:
        order = self.order_repo.get_by_id(session, order_id)
        if not order:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Order not found",
            )

        cfg = self.config_service.shipping(session)
        address_from = self._origin(cfg)
        address_to = self._recipient(order)
        items = self.order_repo.list_items_for_order(session, order.id)
        item_grams = sum((it.mass_grams_each or 0) * it.quantity for it in items if not it.is_digital)
        parcel_body = self._parcel(cfg, parcel, item_grams)

        international = address_to["country"] != (settings.HOME_COUNTRY or "CA").upper()
        customs = None
        if international:
            customs = self._declaration(
                self._customs_for_order(order, items, customs_items, parcel_body["weight"])
            )

        if (provider or cfg.label_provider) == "direct":
            return self._direct_label(session, order, carrier, address_from, address_to, parcel_body, customs, client)

        account = self._carrier_account(cfg, carrier, carrier_account_id)
        owns_client = client is None
        client = client or http.make_http_client()
        try:
            shippo = self._shippo(client)
            shipment = shippo.create_shipment(
                self._shipment_body(
                    address_from, address_to, parcel_body, customs, account, cfg.parcel_template_id
                )
            )
            rates = shipment.get("rates") or []
            rate = select_preferred_rate(rates, carrier, account)
            if rate is None:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="No rates returned from Shippo",
                )
            transaction = shippo.purchase(rate.get("object_id"), "PDF")
        finally:
            if owns_client:
                client.close()

        if transaction.get("status") != "SUCCESS":
            messages = transaction.get("messages") or []
            logger.error("Shippo purchase for %s not successful: %s", order.order_number, messages)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"Shippo purchase failed: {messages or transaction.get('status')}",
            )

        record = self._record_shipment(
            session,
            order,
            carrier=CARRIERS.get(carrier, (carrier, carrier))[1],
            rate=rate,
            transaction=transaction,
            audit={"shipment": shipment, "transaction": transaction},
            incoterm="DDP" if international else None,
        )
        logger.info(
            "Label purchased for %s (%s, tracking %s)",
            order.order_number,
            record.service,
            record.tracking_number,
        )
        return LabelResponse(
            shipment_record_id=record.id,
            tracking_number=record.tracking_number,
            label_url=record.label_url,
            rate=rate,
            shipment_id=shipment.get("object_id"),
            transaction_id=transaction.get("object_id"),
        )

    def _direct_label(
        self,
        session: Session,
        order: Order,
        carrier: str,
        address_from: dict[str, Any],
        address_to: dict[str, Any],
        parcel: dict[str, Any],
        customs: dict[str, Any] | None,
        client: httpx.Client | None,
    ) -> LabelResponse:
        owns_client = client is None
        client = client or http.make_http_client()
        try:
            api = carrier_client(carrier, client)
            label = api.create_label(
                order.order_number,
                address_from,
                address_to,
                parcel,
                customs["items"] if customs else None,
            )
        except CarrierNotConfigured as e:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"{e.carrier} {e.message}",
            )
        except CarrierError as e:
            logger.error("%s label for %s failed: %s", e.carrier, order.order_number, e.message)
            raise HTTPException(
                status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                detail=f"{e.carrier} label failed: {e.message}",
            )
        finally:
            if owns_client:
                client.close()

        label_url = label.label_link
        if label.label:
            label_url = save_label(
                f"{api.carrier}-{label.tracking_number or order.order_number}.{label.label_ext}",
                label.label,
            )
        rate = {
            "provider": api.name,
            "servicelevel": {"name": label.service_name, "token": label.service_code},
            "amount": str(label.cost) if label.cost is not None else None,
            "currency": "CAD",
            "estimated_days": label.transit_days,
        }
        record = self._record_shipment(
            session,
            order,
            carrier=api.carrier,
            rate=rate,
            transaction={
                "object_id": label.shipment_id,
                "tracking_number": label.tracking_number,
                "label_url": label_url,
            },
            audit=label.raw,
            incoterm="DDP" if customs else None,
        )
        logger.info(
            "%s label created for %s (%s, tracking %s)",
            api.name,
            order.order_number,
            record.service,
            record.tracking_number,
        )
        return LabelResponse(
            provider=carrier,
            shipment_record_id=record.id,
            tracking_number=record.tracking_number,
            label_url=record.label_url,
            rate=rate,
            shipment_id=label.shipment_id,
        )

    def _record_shipment(
        self,
        session: Session,
        order: Order,
        carrier: str,
        rate: dict[str, Any] | None,
        transaction: dict[str, Any],
        audit: dict[str, Any],
        incoterm: str | None,
    ) -> Shipment:
        rate = rate or {}
        level = rate.get("servicelevel")
        service = (
            (level.get("name") or level.get("token")) if isinstance(level, dict) else level
        ) or rate.get("provider")
        days = rate.get("estimated_days")
        try:
            cost = Decimal(str(rate["amount"])) if rate.get("amount") is not None else None
        except ArithmeticError:
            cost = None

        shipment = Shipment(
            order_id=order.id,
            carrier=carrier,
            incoterm=incoterm,
            customs_reason="SOLD" if incoterm else None,
            label_meta=rate or None,
            api_audit=audit,
            provider_transaction_id=transaction.get("object_id"),
            tracking_number=transaction.get("tracking_number"),
            label_url=transaction.get("label_url"),
            cost=cost,
            service=service,
            estimated_delivery=(
                datetime.now(timezone.utc) + timedelta(days=int(days)) if days else None
            ),
        )
        self.shipment_repo.create(session, shipment)

        if shipment.tracking_number:
            order.tracking_number = shipment.tracking_number
            order.updated_at = datetime.now(timezone.utc)
            self.order_repo.update_order(session, order)

        session.commit()
        session.refresh(shipment)
        return shipment

    def purchase(self, session: Session, req: PurchaseRequest, client: httpx.Client) -> PurchaseResponse:
        tx = self._shippo(client).purchase(req.rate_object_id, req.label_file_type)

        if req.order_id and tx.get("status") == "SUCCESS":
            order = self.order_repo.get_by_id(session, req.order_id)
            if order is None:
                raise HTTPException(
                    status_code=status.HTTP_404_NOT_FOUND,
                    detail="Order not found",
                )
            rate = tx.get("rate") if isinstance(tx.get("rate"), dict) else None
            self._record_shipment(
                session,
                order,
                carrier=req.carrier or "shippo",
                rate=rate,
                transaction=tx,
                audit={"transaction": tx},
                incoterm=None,
            )

        return PurchaseResponse(
            ok=tx.get("status") == "SUCCESS",
            transaction_id=tx.get("object_id"),
            shipment_id=tx.get("shipment") if isinstance(tx.get("shipment"), str) else None,
            tracking_number=tx.get("tracking_number"),
            label_url=tx.get("label_url"),
            status=tx.get("status"),
            messages=tx.get("messages") or [],
        )

    def cancel(self, session: Session, req: CancelRequest, client: httpx.Client) -> dict[str, Any]:
        refund = self._shippo(client).refund(req.transaction_id)

        shipment = (
            session.get(Shipment, req.shipment_id)
            if req.shipment_id
            else self.shipment_repo.get_by_transaction(session, req.transaction_id)
        )
        if shipment is not None:
            shipment.status = "cancelled"
            shipment.api_audit = dict(shipment.api_audit or {}, refund=refund)
            self.shipment_repo.update(session, shipment)
            session.commit()
            logger.info("Shipment %s cancelled", shipment.id)

        return {"success": True, "refund": refund}

    def track(self, req: TrackRequest, client: httpx.Client) -> dict[str, Any]:
        data = self._shippo(client).track(req.carrier, req.tracking_number)
        return {"success": True, "tracking": data}

    @staticmethod
    def validate_customs(
        items: Iterable[CustomsValidationItem],
        destination_country: str,
        origin_country: str = "CA",
    ) -> CustomsValidationResult:
        return validate_customs(items, destination_country, origin_country)
