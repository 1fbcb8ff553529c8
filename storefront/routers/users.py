# storefront/routers/users.py
import uuid

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from storefront.core.auth import require_auth, require_admin
from storefront.database import get_session
from storefront.models.user import User
from storefront.repositories.user_repo import UserRepository
from storefront.schemas.user import (
    LoginRequest,
    SignupRequest,
    TokenResponse,
    UserCreate,
    UserRead,
    UserUpdate,
)
from storefront.services.user_service import UserService

auth_router = APIRouter(prefix="/auth", tags=["Auth"])
router = APIRouter(prefix="/admin/users", tags=["Admin Users"])

repo = UserRepository()
service = UserService(repo)


# -------- Auth --------


@auth_router.post("/signup", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
def signup(
    payload: SignupRequest,
    session: Session = Depends(get_session),
):
    """
    Create a customer account and return a bearer token.
    """
    return service.signup(session, payload)


@auth_router.post("/login", response_model=TokenResponse)
def login(
    payload: LoginRequest,
    session: Session = Depends(get_session),
):
    return service.login(session, payload)


@auth_router.get("/me", response_model=UserRead)
def read_me(current_user: User = Depends(require_auth)):
    """
    Return the authenticated user's profile.
    """
    return current_user


# -------- Admin endpoints --------


@router.get("", response_model=list[UserRead])
def list_users(
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
    skip: int = 0,
    limit: int = 50,
):
    """
    List all users (admin only).

    Pagination via skip/limit.
    """
    return service.list_users(session, skip, limit)


@router.post("", response_model=UserRead, status_code=status.HTTP_201_CREATED)
def create_user(
    payload: UserCreate,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    """
    Create an account (admin only). 409 when the email is taken.
    """
    return service.create_user(session, payload)


@router.get("/{user_id}", response_model=UserRead)
def get_user(
    user_id: uuid.UUID,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    return service.get_user(session, user_id)


@router.patch("/{user_id}", response_model=UserRead)
def update_user(
    user_id: uuid.UUID,
    payload: UserUpdate,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    """
    Update role, active flag or display name (admin only).

    Allowed roles: USER, ADMIN.
    Guests are anonymous and don't have rows.
    """
    return service.update_user(session, user_id, payload, admin)


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_user(
    user_id: uuid.UUID,
    session: Session = Depends(get_session),
    admin: User = Depends(require_admin),
):
    service.delete_user(session, user_id, admin)
    return None
