from decimal import Decimal
from typing import Annotated, Any

from pydantic import AliasGenerator, ConfigDict, PlainSerializer
from pydantic.alias_generators import to_camel
from sqlmodel import SQLModel

# Decimal in the database, JSON number on the wire.
Money = Annotated[
    Decimal,
    PlainSerializer(float, return_type=float, when_used="json"),
]

# The storefront client posts camelCase (`fullName`, `productId`); admin
# tools post snake_case. Both are accepted, responses stay snake_case.
CAMEL_INPUT = ConfigDict(
    alias_generator=AliasGenerator(validation_alias=to_camel),
    populate_by_name=True,
)


class Address(SQLModel):
    """
    Postal address as sent by the storefront checkout and the admin UI.

    `state` carries the province for Canadian addresses.
    """

    model_config = CAMEL_INPUT

    full_name: str | None = None
    company: str | None = None
    street: str | None = None
    street2: str | None = None
    city: str | None = None
    state: str | None = None
    zip: str | None = None
    country: str | None = None
    phone: str | None = None
    email: str | None = None

    def missing_fields(self) -> list[str]:
        required = ("full_name", "street", "city", "state", "zip", "country")
        return [f for f in required if not (getattr(self, f) or "").strip()]

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class Message(SQLModel):
    message: str
