import json
import logging
import math
import time
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path

import httpx

from storefront.core import http
from storefront.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

# Approximate USD-based rates used only when the FX API is unreachable.
# Any other currency resolves through a factor of 1 and is therefore wrong;
# the fallback is best effort, never authoritative.
FALLBACK_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "CAD": Decimal("1.35"),
}

CENT = Decimal("0.01")


def currency_symbol(code: str | None) -> str:
    code = (code or "USD").upper()
    if code == "CAD":
        return "CA$"
    if code == "USD":
        return "$"
    if code == "EUR":
        return "€"
    return f"{code} "


def convert(amount: Decimal, rate: Decimal) -> Decimal:
    """Convert and round to the cent."""
    return (Decimal(amount) * Decimal(rate)).quantize(CENT, rounding=ROUND_HALF_UP)


def fallback_rate(base: str, target: str) -> Decimal:
    """(1 / FALLBACK[base]) * FALLBACK[target], unknown codes counting as 1."""
    to_usd = Decimal(1) / FALLBACK_RATES[base] if base in FALLBACK_RATES else Decimal(1)
    usd_to_target = FALLBACK_RATES.get(target, Decimal(1))
    return to_usd * usd_to_target


class CurrencyService:
    """
    FX rate lookup with a file-backed cache.

    Cache file shape:
        {"base": "USD", "timestamp": <epoch seconds>, "rates": {"CAD": 1.36}}

    A cache hit needs the same base, an age below the TTL and the target
    present. Misses go to the FX API; total failure falls back to
    FALLBACK_RATES.
    """

    def __init__(
        self,
        cache_path: str | Path | None = None,
        ttl_hours: int | None = None,
        api_url: str | None = None,
    ):
        self.cache_path = Path(cache_path or settings.FX_CACHE_PATH)
        self.ttl_seconds = (ttl_hours or settings.FX_CACHE_TTL_HOURS) * 3600
        self.api_url = api_url or settings.FX_API_URL

    # ----- Cache -----

    def _read_cache(self) -> dict | None:
        try:
            return json.loads(self.cache_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None

    def _write_cache(self, cache: dict) -> None:
        try:
            self.cache_path.parent.mkdir(parents=True, exist_ok=True)
            self.cache_path.write_text(json.dumps(cache, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning("FX cache write failed: %s", e)

    # ----- Lookup -----

    def get_fx_rate(
        self,
        base: str,
        target: str,
        client: httpx.Client | None = None,
    ) -> Decimal:
        base = base.upper()
        target = target.upper()
        if base == target:
            return Decimal(1)

        now = time.time()
        cache = self._read_cache()
        if (
            cache
            and cache.get("base") == base
            and now - float(cache.get("timestamp", 0)) < self.ttl_seconds
            and cache.get("rates", {}).get(target)
        ):
            return Decimal(str(cache["rates"][target]))

        rate = self._fetch_rate(base, target, client)
        if rate is not None:
            rates = dict(cache.get("rates", {})) if cache and cache.get("base") == base else {}
            rates[target] = float(rate)
            self._write_cache({"base": base, "timestamp": now, "rates": rates})
            return rate

        logger.warning("FX rate %s->%s unavailable; using fallback table", base, target)
        return fallback_rate(base, target)

    def _fetch_rate(
        self,
        base: str,
        target: str,
        client: httpx.Client | None,
    ) -> Decimal | None:
        owns_client = client is None
        client = client or http.make_http_client()
        try:
            resp = client.get(self.api_url, params={"base": base, "symbols": target})
            if resp.status_code >= 400:
                logger.warning("FX API returned %s", resp.status_code)
                return None
            data = resp.json()
            value = float((data.get("rates") or {}).get(target))
        except (httpx.HTTPError, ValueError, TypeError, AttributeError) as e:
            logger.warning("FX API request failed: %s", e)
            return None
        finally:
            if owns_client:
                client.close()

        if not math.isfinite(value) or value <= 0:
            return None
        return Decimal(str(value))
