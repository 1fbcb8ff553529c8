# storefront/services/user_service.py
import logging
import uuid

from fastapi import HTTPException, status
from sqlmodel import Session

from storefront.core.auth import create_access_token, hash_password, verify_password
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

logger = logging.getLogger(__name__)


class UserService:
    """
    Business logic for User.

    Responsibilities:
      - password login / self sign-up issuing bearer tokens
      - admin account management (unique email, role, active flag)
      - map domain errors to HTTP errors
    """

    def __init__(self, repo: UserRepository):
        self.repo = repo

    # ----- Auth -----

    def _token_for(self, user: User) -> TokenResponse:
        return TokenResponse(
            access_token=create_access_token(user),
            user=UserRead.model_validate(user),
        )

    def signup(self, session: Session, payload: SignupRequest) -> TokenResponse:
        """
        Self-service sign-up; always creates a USER.

        Raises:
            HTTPException(409): if the email is taken.
        """
        user = self._create(
            session,
            email=payload.email,
            password=payload.password,
            name=payload.name,
            role="USER",
            is_active=True,
        )
        return self._token_for(user)

    def login(self, session: Session, payload: LoginRequest) -> TokenResponse:
        user = self.repo.get_by_email(session, payload.email)
        if user is None or not verify_password(payload.password, user.password_hash):
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid email or password",
            )
        if not user.is_active:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Account disabled",
            )
        return self._token_for(user)

    # ----- Admin operations -----

    def _create(
        self,
        session: Session,
        email: str,
        password: str,
        name: str | None,
        role: str,
        is_active: bool,
    ) -> User:
        email = email.strip().lower()
        if self.repo.get_by_email(session, email):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Email already registered",
            )
        user = User(
            email=email,
            password_hash=hash_password(password),
            name=name or email.split("@", 1)[0],
            role=role,
            is_active=is_active,
        )
        user = self.repo.create(session, user)
        logger.info("User %s created (%s)", user.email, user.role)
        return user

    def create_user(self, session: Session, payload: UserCreate) -> User:
        return self._create(
            session,
            email=payload.email,
            password=payload.password,
            name=payload.name,
            role=payload.role,
            is_active=payload.is_active,
        )

    def list_users(self, session: Session, skip: int, limit: int) -> list[User]:
        """List users with pagination (admin only)."""
        return self.repo.list_users(session, skip=skip, limit=limit)

    def get_user(self, session: Session, user_id: uuid.UUID) -> User:
        """
        Get a user by id (admin only).

        Raises:
            HTTPException(404): if not found.
        """
        user = self.repo.get_by_id(session, user_id)
        if not user:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="User not found",
            )
        return user

    def update_user(
        self,
        session: Session,
        user_id: uuid.UUID,
        payload: UserUpdate,
        acting_admin: User,
    ) -> User:
        """
        Change role / active flag / name.

        An admin cannot demote or deactivate their own account.
        """
        user = self.get_user(session, user_id)
        if user.id == acting_admin.id and (
            payload.role == "USER" or payload.is_active is False
        ):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Cannot demote or deactivate your own account",
            )

        data = payload.model_dump(exclude_unset=True)
        for field, value in data.items():
            if value is not None:
                setattr(user, field, value)
        return self.repo.update(session, user)

    def delete_user(self, session: Session, user_id: uuid.UUID, acting_admin: User) -> None:
        """Delete a user (admin only); orders keep their data."""
        user = self.get_user(session, user_id)
        if user.id == acting_admin.id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Cannot delete your own account",
            )
        self.repo.delete(session, user)
