import uuid

from sqlmodel import Session, select

from storefront.models.shipment import Shipment


class ShipmentRepository:
    """Data access for purchased labels. Commits are left to the service."""

    def create(self, session: Session, shipment: Shipment) -> Shipment:
        session.add(shipment)
        session.flush()
        session.refresh(shipment)
        return shipment

    def update(self, session: Session, shipment: Shipment) -> Shipment:
        session.add(shipment)
        session.flush()
        session.refresh(shipment)
        return shipment

    def list_for_order(self, session: Session, order_id: uuid.UUID) -> list[Shipment]:
        stmt = (
            select(Shipment)
            .where(Shipment.order_id == order_id)
            .order_by(Shipment.created_at.desc())
        )
        return session.exec(stmt).all()

    def get_by_transaction(self, session: Session, transaction_id: str) -> Shipment | None:
        stmt = select(Shipment).where(Shipment.provider_transaction_id == transaction_id)
        return session.exec(stmt).first()
