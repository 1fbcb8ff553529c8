import uuid
from datetime import datetime, timezone

from sqlmodel import SQLModel, Field


class User(SQLModel, table=True):
    """
    Persistent user account.

    Role:
      - "USER" | "ADMIN"
      - "guest" is represented by the absence of a bearer token.

    Email is stored case-folded so uniqueness is case-insensitive.
    Active ADMIN users also receive a copy of every order receipt.
    """

    __tablename__ = "users"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
        index=True,
    )

    email: str = Field(
        unique=True,
        index=True,
        description="Lower-cased login email",
    )

    password_hash: str | None = Field(
        default=None,
        description="bcrypt hash; None for accounts without password login",
    )

    name: str | None = Field(
        default=None,
        max_length=100,
        description="Display name",
    )

    role: str = Field(
        default="USER",
        index=True,
        description="Application role: USER | ADMIN",
    )

    is_active: bool = Field(default=True, index=True)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Creation timestamp (UTC)",
    )
