from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation, ROUND_FLOOR
from typing import Optional, Protocol

import httpx

from app.constants import K_RATE_EUR_BTC, SATS_PER_BTC
from app.core.config import settings
from app.core.errors import RateUnavailable

logger = logging.getLogger(__name__)


def sats_to_cents(sats: int, eur_per_btc: Decimal) -> int:
    value = Decimal(sats) * eur_per_btc * 100 / SATS_PER_BTC
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


def cents_to_sats(cents: int, eur_per_btc: Decimal) -> int:
    value = Decimal(cents) / 100 / eur_per_btc * SATS_PER_BTC
    return int(value.to_integral_value(rounding=ROUND_FLOOR))


class RateSource(Protocol):
    async def eur_per_btc(self) -> Decimal:
        ...


class FixedRateSource:
    def __init__(self, eur_per_btc):
        self.rate = Decimal(str(eur_per_btc))

    async def eur_per_btc(self) -> Decimal:
        return self.rate


class CoinGeckoRateSource:
    """EUR/BTC from the CoinGecko simple-price endpoint, cached in redis for a short TTL."""

    def __init__(self, redis, url: str = settings.RATE_API_URL, ttl: int = settings.RATE_CACHE_SECONDS,
                 client: Optional[httpx.AsyncClient] = None):
        self.redis = redis
        self.url = url
        self.ttl = ttl
        self._client = client or httpx.AsyncClient(timeout=settings.CHAIN_TIMEOUT_SECONDS)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def eur_per_btc(self) -> Decimal:
        cached = await self.redis.get(K_RATE_EUR_BTC)
        if cached:
            return Decimal(cached)

        try:
            resp = await self._client.get(self.url, headers={"Accept": "application/json"})
            resp.raise_for_status()
            rate = Decimal(str(resp.json()["bitcoin"]["eur"]))
        except (httpx.HTTPError, ValueError, KeyError, TypeError, InvalidOperation) as e:
            raise RateUnavailable(f"EUR/BTC rate unavailable: {e!r}") from e
        if rate <= 0:
            raise RateUnavailable(f"EUR/BTC rate is not positive: {rate}")

        await self.redis.set(K_RATE_EUR_BTC, str(rate), ex=self.ttl)
        logger.info("EUR/BTC rate refreshed: %s", rate)
        return rate
