import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, Column
from sqlmodel import SQLModel, Field


class AppConfig(SQLModel, table=True):
    """
    Schemaless settings row: string key -> JSON value.

    Keys in use: `tax-config`, `payments-config`, `shipping-config`,
    `support-config`, `email-templates`. Typed access goes through
    ConfigService; this table only guarantees one row per key.
    """

    __tablename__ = "app_config"

    id: uuid.UUID = Field(
        default_factory=uuid.uuid4,
        primary_key=True,
    )

    key: str = Field(unique=True, index=True)

    value: dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
