# storefront/routers/products.py
import uuid

from fastapi import APIRouter, Depends, status
from sqlmodel import Session

from storefront.core.auth import require_admin
from storefront.database import get_session
from storefront.repositories.product_repo import ProductRepository
from storefront.schemas.product import (
    ProductCreate,
    ProductRead,
    ProductUpdate,
)
from storefront.services.product_service import ProductService

router = APIRouter(prefix="/products", tags=["Products"])

repo = ProductRepository()
service = ProductService(repo)


# -------- Public endpoints --------


@router.get("", response_model=list[ProductRead])
def list_products(
    session: Session = Depends(get_session),
    skip: int = 0,
    limit: int = 50,
    only_in_stock: bool = False,
    featured: bool | None = None,
):
    """
    List products.

    - Public endpoint.
    - `only_in_stock=true` hides sold-out products; `featured` filters the
      home-page selection.
    """
    return service.list_products(
        session, skip=skip, limit=limit, only_in_stock=only_in_stock, featured=featured
    )


@router.get("/by-slug/{slug}", response_model=ProductRead)
def get_product_by_slug(
    slug: str,
    session: Session = Depends(get_session),
):
    return service.get_by_slug(session, slug)


@router.get("/{product_id}", response_model=ProductRead)
def get_product(
    product_id: uuid.UUID,
    session: Session = Depends(get_session),
):
    """
    Get a single product by id.

    - Public endpoint.
    """
    return service.get_product(session, product_id)


# -------- Admin endpoints --------


@router.post(
    "",
    response_model=ProductRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_admin)],
)
def create_product(
    payload: ProductCreate,
    session: Session = Depends(get_session),
):
    """
    Create a new product (admin only).
    """
    return service.create_product(session, payload)


@router.patch(
    "/{product_id}",
    response_model=ProductRead,
    dependencies=[Depends(require_admin)],
)
def update_product(
    product_id: uuid.UUID,
    payload: ProductUpdate,
    session: Session = Depends(get_session),
):
    """
    Update an existing product (admin only).
    """
    return service.update_product(session, product_id, payload)


@router.delete(
    "/{product_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    dependencies=[Depends(require_admin)],
)
def delete_product(
    product_id: uuid.UUID,
    session: Session = Depends(get_session),
):
    """
    Delete a product (admin only). 409 when orders reference it.
    """
    service.delete_product(session, product_id)
    return None
