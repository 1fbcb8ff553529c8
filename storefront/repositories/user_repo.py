import uuid

from sqlmodel import Session, select

from storefront.models.order import Order
from storefront.models.user import User


class UserRepository:
    """
    Data access layer for User.

    Responsibilities:
      - Pure DB operations (CRUD + queries)
      - No FastAPI, no HTTP, no business logic
    """

    def get_by_id(self, session: Session, user_id: uuid.UUID) -> User | None:
        """Return a User by primary key, or None if not found."""
        return session.get(User, user_id)

    def get_by_email(self, session: Session, email: str) -> User | None:
        """Case-insensitive lookup; emails are stored lower-cased."""
        stmt = select(User).where(User.email == email.strip().lower())
        return session.exec(stmt).first()

    def list_users(self, session: Session, skip: int = 0, limit: int = 50) -> list[User]:
        stmt = select(User).order_by(User.created_at.desc()).offset(skip).limit(limit)
        return session.exec(stmt).all()

    def list_active_admins(self, session: Session) -> list[User]:
        """Receivers of the admin copy of order receipts."""
        stmt = select(User).where(User.role == "ADMIN", User.is_active == True)  # noqa: E712
        return session.exec(stmt).all()

    def create(self, session: Session, user: User) -> User:
        session.add(user)
        session.commit()
        session.refresh(user)
        return user

    def update(self, session: Session, user: User) -> User:
        session.add(user)
        session.commit()
        session.refresh(user)
        return user

    def delete(self, session: Session, user: User) -> None:
        """Detach the user's orders, then delete the account."""
        for order in session.exec(select(Order).where(Order.user_id == user.id)).all():
            order.user_id = None
            session.add(order)
        session.flush()
        session.delete(user)
        session.commit()
