# storefront/schemas/product.py
import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import ConfigDict, field_validator
from sqlmodel import SQLModel, Field

from storefront.schemas.common import Money


class ProductRead(SQLModel):
    """
    Product representation for clients.
    """

    id: uuid.UUID
    name: str
    slug: str
    description: str | None = None
    short_description: str | None = None
    price: Money
    image_url: str | None = None

    is_physical: bool
    is_digital: bool
    is_vip: bool
    featured: bool
    coming_soon: bool
    in_stock: bool

    hs_code: str | None = None
    country_of_origin: str | None = None
    customs_description: str | None = None
    default_customs_value_cad: Money | None = None
    mass_grams: int | None = None

    created_at: datetime


class ProductCreate(SQLModel):
    """
    Payload for creating a product.

    - slug is optional: if omitted, generated from `name`.
    """

    model_config = ConfigDict(extra="forbid")

    name: str = Field(max_length=200)
    slug: str | None = None
    description: str | None = None
    short_description: str | None = None
    price: Decimal = Field(ge=0, max_digits=12, decimal_places=2)
    image_url: str | None = None

    is_physical: bool = True
    is_digital: bool = False
    is_vip: bool = False
    featured: bool = False
    coming_soon: bool = False
    in_stock: bool = True

    hs_code: str | None = None
    country_of_origin: str | None = Field(default="CA", max_length=2)
    customs_description: str | None = None
    default_customs_value_cad: Decimal | None = Field(default=None, ge=0)
    mass_grams: int | None = Field(default=None, ge=0)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        v = v.strip()
        if len(v) < 2:
            raise ValueError("name must be at least 2 characters")
        return v

    @field_validator("slug")
    @classmethod
    def normalize_slug(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        if not v:
            raise ValueError("slug cannot be empty if provided")
        return v


class ProductUpdate(SQLModel):
    """
    Partial update payload for products.
    All fields are optional.
    """

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, max_length=200)
    slug: str | None = None
    description: str | None = None
    short_description: str | None = None
    price: Decimal | None = Field(default=None, ge=0, max_digits=12, decimal_places=2)
    image_url: str | None = None

    is_physical: bool | None = None
    is_digital: bool | None = None
    is_vip: bool | None = None
    featured: bool | None = None
    coming_soon: bool | None = None
    in_stock: bool | None = None

    hs_code: str | None = None
    country_of_origin: str | None = Field(default=None, max_length=2)
    customs_description: str | None = None
    default_customs_value_cad: Decimal | None = Field(default=None, ge=0)
    mass_grams: int | None = Field(default=None, ge=0)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        if len(v) < 2:
            raise ValueError("name must be at least 2 characters")
        return v

    @field_validator("slug")
    @classmethod
    def normalize_slug(cls, v: str | None) -> str | None:
        if v is None:
            return v
        v = v.strip()
        if not v:
            raise ValueError("slug cannot be empty")
        return v
