"""
Price Oracle Client
USD prices for ledger assets from the Jupiter price API, cached per mint
"""

import logging
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Optional

import aiohttp

from config import Config
from services.api_adapter_retry import APIAdapterRetry
from utils.exceptions import ExternalServiceError, PriceUnavailableError
from utils.token_registry import NATIVE_MINT

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TokenPrice:
    mint: str
    usd_price: Decimal
    fetched_at: float

    @classmethod
    def from_payload(cls, mint: str, payload: Any, fetched_at: float) -> Optional["TokenPrice"]:
        """Validate one entry of the price response; None when unusable"""
        if not isinstance(payload, dict):
            return None
        raw = payload.get("usdPrice", payload.get("price"))
        if raw is None or isinstance(raw, bool):
            return None
        try:
            price = Decimal(str(raw))
        except (InvalidOperation, ValueError):
            return None
        if not price.is_finite() or price <= 0:
            return None
        return cls(mint=mint, usd_price=price, fetched_at=fetched_at)


class PriceOracle(APIAdapterRetry):
    """Fetches current USD prices; stale cache entries are served only when the API fails"""

    def __init__(self, config: Config, session: Optional[aiohttp.ClientSession] = None, clock=time.monotonic):
        super().__init__("jupiter_price", timeout=config.HTTP_TIMEOUT_SECONDS, session=session)
        self.base_url = config.JUPITER_PRICE_URL.rstrip("/")
        self.cache_ttl = config.PRICE_CACHE_TTL_SECONDS
        self._clock = clock
        self._cache: Dict[str, TokenPrice] = {}

    def _fresh(self, mint: str) -> Optional[TokenPrice]:
        cached = self._cache.get(mint)
        if cached and self._clock() - cached.fetched_at < self.cache_ttl:
            return cached
        return None

    async def current_prices(self, mints: Iterable[str]) -> Dict[str, Decimal]:
        """Prices for every mint that has one; missing mints are simply absent"""
        wanted = list(dict.fromkeys(mints))
        prices: Dict[str, Decimal] = {}
        to_fetch = []
        for mint in wanted:
            cached = self._fresh(mint)
            if cached:
                prices[mint] = cached.usd_price
            else:
                to_fetch.append(mint)

        if not to_fetch:
            return prices

        try:
            data = await self._make_http_request("GET", self.base_url, params={"ids": ",".join(to_fetch)})
        except ExternalServiceError as e:
            logger.warning(f"⚠️ PRICE_FETCH_FAILED: {e}; falling back to cached prices")
            for mint in to_fetch:
                stale = self._cache.get(mint)
                if stale:
                    prices[mint] = stale.usd_price
            return prices

        entries = data.get("data", data) if isinstance(data, dict) else {}
        now = self._clock()
        for mint in to_fetch:
            price = TokenPrice.from_payload(mint, entries.get(mint) if isinstance(entries, dict) else None, now)
            if price:
                self._cache[mint] = price
                prices[mint] = price.usd_price
            else:
                logger.warning(f"⚠️ PRICE_MISSING: no usable price for {mint}")
        return prices

    async def current_price(self, mint: str) -> Decimal:
        """USD price of one asset, or PriceUnavailableError"""
        prices = await self.current_prices([mint])
        price = prices.get(mint)
        if price is None:
            raise PriceUnavailableError(f"Price unavailable for {mint}", details={"mint": mint})
        return price

    async def native_price(self) -> Decimal:
        return await self.current_price(NATIVE_MINT)
