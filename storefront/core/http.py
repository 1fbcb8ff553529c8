from typing import Iterator

import httpx

from storefront.core.config import get_settings

settings = get_settings()

USER_AGENT = "AnointStorefront/1.0"


def make_http_client() -> httpx.Client:
    """
    Build the outbound HTTP client used for every third-party API
    (payments, shipping, FX, affiliate tracking).

    Call it through the module (`http.make_http_client()`) so tests can
    swap in an `httpx.MockTransport`.
    """
    return httpx.Client(
        timeout=settings.HTTP_TIMEOUT_SECONDS,
        headers={"User-Agent": USER_AGENT},
    )


def get_http_client() -> Iterator[httpx.Client]:
    """FastAPI dependency yielding a request-scoped HTTP client."""
    with make_http_client() as client:
        yield client


def error_text(resp: httpx.Response) -> str:
    """
    Best-effort human readable error from a provider response.
    """
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:500] or f"HTTP {resp.status_code}"

    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            return str(err.get("message") or err)
        return str(
            data.get("message")
            or data.get("error_description")
            or err
            or data.get("detail")
            or data
        )[:500]
    return str(data)[:500]
