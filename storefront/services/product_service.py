# storefront/services/product_service.py
import re
import uuid

from fastapi import HTTPException, status
from sqlmodel import Session

from storefront.models.product import Product
from storefront.repositories.product_repo import ProductRepository
from storefront.schemas.product import ProductCreate, ProductUpdate


class ProductService:
    """
    Business logic for Product.

    Responsibilities:
      - slug generation & uniqueness
      - lookups by id and slug for the storefront
      - admin-only operations (enforced at router via require_admin)
    """

    def __init__(self, repo: ProductRepository):
        self.repo = repo

    # ----- Helpers -----

    @staticmethod
    def _slugify(raw: str) -> str:
        """
        Basic slugification:
          - lowercase
          - non-alphanumeric -> '-'
          - collapse multiple '-'
          - strip leading/trailing '-'
        """
        value = raw.strip().lower()
        value = re.sub(r"[^a-z0-9]+", "-", value)
        value = re.sub(r"-+", "-", value)
        value = value.strip("-")
        return value or "product"

    def _ensure_unique_slug(self, session: Session, base_slug: str) -> str:
        """
        Ensure slug is unique by appending -2, -3, ... if needed.
        """
        slug = base_slug
        i = 2
        while self.repo.get_by_slug(session, slug) is not None:
            slug = f"{base_slug}-{i}"
            i += 1
        return slug

    # ----- Products -----

    def list_products(
        self,
        session: Session,
        skip: int = 0,
        limit: int = 50,
        only_in_stock: bool = False,
        featured: bool | None = None,
    ) -> list[Product]:
        return self.repo.list_products(
            session, skip=skip, limit=limit, only_in_stock=only_in_stock, featured=featured
        )

    def get_product(self, session: Session, product_id: uuid.UUID) -> Product:
        product = self.repo.get_by_id(session, product_id)
        if not product:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Product not found",
            )
        return product

    def get_by_slug(self, session: Session, slug: str) -> Product:
        product = self.repo.get_by_slug(session, slug.strip().lower())
        if not product:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="Product not found",
            )
        return product

    def create_product(
        self,
        session: Session,
        payload: ProductCreate,
    ) -> Product:
        """
        Create a new product with a unique slug.

        - If slug is provided => slugify & ensure unique.
        - Else => slugify from name & ensure unique.
        """
        base_slug = self._slugify(payload.slug or payload.name)
        data = payload.model_dump(exclude={"slug"})
        product = Product(**data, slug=self._ensure_unique_slug(session, base_slug))
        return self.repo.create(session, product)

    def update_product(
        self,
        session: Session,
        product_id: uuid.UUID,
        payload: ProductUpdate,
    ) -> Product:
        """
        Partial update of a product.

        - If slug is changed, enforce uniqueness.
        """
        product = self.get_product(session, product_id)
        data = payload.model_dump(exclude_unset=True)

        slug = data.pop("slug", None)
        if slug is not None:
            new_base_slug = self._slugify(slug)
            if new_base_slug != product.slug:
                product.slug = self._ensure_unique_slug(session, new_base_slug)

        for field, value in data.items():
            if value is None and field in ("name", "price"):
                continue
            setattr(product, field, value)

        return self.repo.update(session, product)

    def delete_product(
        self,
        session: Session,
        product_id: uuid.UUID,
    ) -> None:
        """
        Delete a product. Products referenced by orders are kept (409);
        mark them out of stock instead.
        """
        product = self.get_product(session, product_id)
        if self.repo.has_order_items(session, product_id):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail="Product is referenced by orders",
            )
        self.repo.delete(session, product)
