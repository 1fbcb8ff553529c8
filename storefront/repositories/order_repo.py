import uuid

from sqlalchemy import func
from sqlmodel import Session, select

from storefront.models.order import Order, OrderItem
from storefront.models.shipment import Shipment


class OrderRepository:
    """
    Data access layer for orders and order_items.

    NOTE:
      - No commits here; order creation is a multi-step transaction
        (order + items). The service is responsible for session.commit().
    """

    # ---- Orders ----

    def list_all(
        self,
        session: Session,
        skip: int = 0,
        limit: int = 50,
        status: str | None = None,
    ) -> list[Order]:
        stmt = select(Order)
        if status:
            stmt = stmt.where(Order.status == status)
        stmt = stmt.order_by(Order.created_at.desc()).offset(skip).limit(limit)
        return session.exec(stmt).all()

    def get_by_id(self, session: Session, order_id: uuid.UUID) -> Order | None:
        return session.get(Order, order_id)

    def get_by_number(self, session: Session, order_number: str) -> Order | None:
        stmt = select(Order).where(Order.order_number == order_number)
        return session.exec(stmt).first()

    def count_numbers_with_prefix(self, session: Session, prefix: str) -> int:
        """Number of orders whose order_number starts with `prefix`."""
        stmt = select(func.count()).select_from(Order).where(
            Order.order_number.startswith(prefix)
        )
        return session.exec(stmt).one()

    def create_order(self, session: Session, order: Order) -> Order:
        """
        Insert an Order without committing, but ensure id is populated.
        """
        session.add(order)
        session.flush()  # Assign PK
        session.refresh(order)
        return order

    def update_order(self, session: Session, order: Order) -> Order:
        session.add(order)
        session.flush()
        session.refresh(order)
        return order

    def delete_order(self, session: Session, order: Order) -> None:
        """Delete an order with its items and shipments (no commit)."""
        for item in self.list_items_for_order(session, order.id):
            session.delete(item)
        for shipment in session.exec(
            select(Shipment).where(Shipment.order_id == order.id)
        ).all():
            session.delete(shipment)
        session.flush()
        session.delete(order)
        session.flush()

    # ---- Order items ----

    def list_items_for_order(
        self,
        session: Session,
        order_id: uuid.UUID,
    ) -> list[OrderItem]:
        stmt = select(OrderItem).where(OrderItem.order_id == order_id)
        return session.exec(stmt).all()

    def create_items(
        self,
        session: Session,
        items: list[OrderItem],
    ) -> list[OrderItem]:
        session.add_all(items)
        session.flush()
        for item in items:
            session.refresh(item)
        return items
