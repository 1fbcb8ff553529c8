import uuid
from typing import Iterable

from sqlmodel import Session, select

from storefront.models.order import OrderItem
from storefront.models.product import Product


class ProductRepository:
    """
    Data access layer for Product.

    - Pure DB operations (CRUD + queries).
    - No FastAPI, no business logic.
    """

    def get_by_id(self, session: Session, product_id: uuid.UUID) -> Product | None:
        return session.get(Product, product_id)

    def get_by_slug(self, session: Session, slug: str) -> Product | None:
        stmt = select(Product).where(Product.slug == slug)
        return session.exec(stmt).first()

    def get_many(self, session: Session, ids: Iterable[uuid.UUID]) -> dict[uuid.UUID, Product]:
        ids = list(set(ids))
        if not ids:
            return {}
        rows = session.exec(select(Product).where(Product.id.in_(ids))).all()
        return {p.id: p for p in rows}

    def list_products(
        self,
        session: Session,
        skip: int = 0,
        limit: int = 50,
        only_in_stock: bool = False,
        featured: bool | None = None,
    ) -> list[Product]:
        stmt = select(Product)
        if only_in_stock:
            stmt = stmt.where(Product.in_stock == True)  # noqa: E712
        if featured is not None:
            stmt = stmt.where(Product.featured == featured)
        stmt = stmt.order_by(Product.created_at.desc()).offset(skip).limit(limit)
        return session.exec(stmt).all()

    def has_order_items(self, session: Session, product_id: uuid.UUID) -> bool:
        stmt = select(OrderItem.id).where(OrderItem.product_id == product_id).limit(1)
        return session.exec(stmt).first() is not None

    def create(self, session: Session, product: Product) -> Product:
        session.add(product)
        session.commit()
        session.refresh(product)
        return product

    def update(self, session: Session, product: Product) -> Product:
        session.add(product)
        session.commit()
        session.refresh(product)
        return product

    def delete(self, session: Session, product: Product) -> None:
        session.delete(product)
        session.commit()
