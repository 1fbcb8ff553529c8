# storefront/schemas/user.py
import uuid
from datetime import datetime
from typing import Literal

from pydantic import EmailStr, ConfigDict, field_validator
from sqlmodel import SQLModel, Field

# App-level roles. "guest" = no token, so we don't store it here.
Role = Literal["USER", "ADMIN"]


def _normalize_name(v: str | None) -> str | None:
    if v is None:
        return v
    v = v.strip()
    if not v:
        raise ValueError("name cannot be empty")
    return v


class UserRead(SQLModel):
    """Response schema returned to clients (never includes the hash)."""

    id: uuid.UUID
    email: str
    name: str | None = None
    role: Role
    is_active: bool
    created_at: datetime


class UserCreate(SQLModel):
    """
    Admin-created account.

    Validation rules:
      - email must be a valid EmailStr (stored lower-cased)
      - password at least 8 characters
    """

    model_config = ConfigDict(extra="forbid")

    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    name: str | None = Field(default=None, max_length=100)
    role: Role = "USER"
    is_active: bool = True

    _check_name = field_validator("name")(_normalize_name)


class UserUpdate(SQLModel):
    """
    Admin partial update: role and active flag (plus display name).
    """

    model_config = ConfigDict(extra="forbid")

    name: str | None = Field(default=None, max_length=100)
    role: Role | None = None
    is_active: bool | None = None

    _check_name = field_validator("name")(_normalize_name)


class SignupRequest(SQLModel):
    model_config = ConfigDict(extra="forbid")

    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    name: str | None = Field(default=None, max_length=100)

    _check_name = field_validator("name")(_normalize_name)


class LoginRequest(SQLModel):
    email: EmailStr
    password: str


class TokenResponse(SQLModel):
    access_token: str
    token_type: str = "bearer"
    user: UserRead
