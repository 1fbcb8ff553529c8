from decimal import Decimal

import httpx
from fastapi import APIRouter, Depends, HTTPException, Query, status

from storefront.core.http import get_http_client
from storefront.services.currency_service import CurrencyService

router = APIRouter(prefix="/currency", tags=["Currency"])

service = CurrencyService()


@router.get("/rate")
def get_rate(
    from_currency: str = Query(default="USD", alias="from"),
    to_currency: str = Query(default="CAD", alias="to"),
    client: httpx.Client = Depends(get_http_client),
) -> dict[str, str | float]:
    """
    FX rate from -> to (cached for 12 hours, static table as last resort).
    """
    if not (from_currency.isalpha() and to_currency.isalpha()):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Currency codes must be alphabetic",
        )
    rate: Decimal = service.get_fx_rate(from_currency, to_currency, client)
    return {"from": from_currency.upper(), "to": to_currency.upper(), "rate": float(rate)}
