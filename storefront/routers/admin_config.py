# storefront/routers/admin_config.py
from typing import Any

from fastapi import APIRouter, Body, Depends
from sqlmodel import Session

from storefront.core.auth import require_admin
from storefront.database import get_session
from storefront.repositories.config_repo import ConfigRepository
from storefront.services.config_service import ConfigService

router = APIRouter(
    prefix="/admin/config",
    tags=["Admin Config"],
    dependencies=[Depends(require_admin)],
)

service = ConfigService(ConfigRepository())


@router.get("/{domain}")
def get_config(domain: str, session: Session = Depends(get_session)) -> dict[str, Any]:
    """
    Read one config domain: tax, payments, shipping, support, email.
    Secrets come back as `***`.
    """
    return service.get_masked(session, domain)


@router.put("/{domain}")
def update_config(
    domain: str,
    payload: dict[str, Any] = Body(...),
    session: Session = Depends(get_session),
) -> dict[str, Any]:
    """
    Replace a config domain. Sending `***` (or leaving a secret empty)
    keeps the stored secret.
    """
    return service.update(session, domain, payload)
