import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlmodel import SQLModel, Field


class Product(SQLModel, table=True):
    """
    Product catalog entry.

    Read-only for the storefront; admins create/update/delete.
    The customs defaults are copied onto OrderItems at purchase time and
    used as the per-item fallback for customs declarations.
    """

    __tablename__ = "products"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    name: str = Field(
        max_length=200,
        min_length=2,
        index=True,
        description="Display name",
    )

    slug: str = Field(
        max_length=255,
        unique=True,
        index=True,
        description="URL-friendly identifier (unique)",
    )

    description: str | None = Field(
        default=None,
        description="Optional long description / HTML",
    )
    short_description: str | None = None

    price: Decimal = Field(
        ge=0,
        max_digits=12,
        decimal_places=2,
        description="Unit price (USD)",
    )

    image_url: str | None = Field(
        default=None,
        description="Main image URL",
    )

    # Flags
    is_physical: bool = Field(default=True)
    is_digital: bool = Field(default=False)
    is_vip: bool = Field(default=False)
    featured: bool = Field(default=False, index=True)
    coming_soon: bool = Field(default=False)
    in_stock: bool = Field(default=True, index=True)

    # Customs defaults
    hs_code: str | None = None
    country_of_origin: str | None = Field(default="CA", max_length=2)
    customs_description: str | None = None
    default_customs_value_cad: Decimal | None = Field(
        default=None,
        max_digits=12,
        decimal_places=2,
    )
    mass_grams: int | None = Field(default=None, ge=0)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Creation timestamp (UTC)",
    )
