import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


class Shipment(SQLModel, table=True):
    """
    Purchased shipping label for an order.

    `label_meta` keeps the selected rate and `api_audit` the raw carrier
    responses (shipment, transaction, refund) for troubleshooting.
    """

    __tablename__ = "shipments"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    order_id: uuid.UUID = Field(
        foreign_key="orders.id",
        index=True,
    )

    # canadapost | ups | <provider name>
    carrier: str
    incoterm: str | None = None
    customs_reason: str | None = None

    label_meta: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))
    api_audit: dict[str, Any] | None = Field(default=None, sa_column=Column(JSON))

    provider_transaction_id: str | None = Field(default=None, index=True)
    tracking_number: str | None = None
    label_url: str | None = None
    cost: Decimal | None = Field(default=None, max_digits=12, decimal_places=2)
    service: str | None = None
    estimated_delivery: datetime | None = None

    # created | cancelled
    status: str = Field(default="created", index=True)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
