import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import aiohttp

from data.rpc_rate_limiter import RPCRateLimiter
from execution.bonding_curve import BondingCurveReader
from execution.constants import SOL_MINT, SOL_DECIMALS, PUMP_TOKEN_DECIMALS, FALLBACK_QUOTE_SLIPPAGE_BPS
from utils.logger import TradingLogger
from utils.safe_number import safe_number, safe_divide

SOURCE_CURVE = "bonding_curve"
SOURCE_AGGREGATOR = "aggregator"
SOURCE_NONE = "unavailable"


@dataclass
class PriceQuote:
    """Point-in-time price; ``price`` is None when every source failed"""
    mint: str
    price: Optional[float]
    migrated: bool
    source: str
    timestamp: float

    @property
    def known(self) -> bool:
        return self.price is not None and self.price > 0


@dataclass
class PositionValue:
    unit_price: Optional[float]
    total_value: Optional[float]
    migrated: bool = False


class PriceOracle:
    """Contract the exit engine depends on"""

    async def get_price(self, mint: str) -> PriceQuote:
        raise NotImplementedError

    async def get_position_value(self, mint: str, quantity: float) -> PositionValue:
        quote = await self.get_price(mint)
        if not quote.known:
            return PositionValue(None, None, quote.migrated)
        qty = max(safe_number(quantity, 0.0), 0.0)
        return PositionValue(quote.price, quote.price * qty, quote.migrated)

    async def close(self) -> None:
        pass


class PriceService(PriceOracle):
    """Bonding curve first, aggregator price then aggregator quote as fallbacks.

    Known prices are cached for ``cache_seconds``; unknown results are retried on the next call.
    """

    def __init__(self,
                 curve_reader: Optional[BondingCurveReader],
                 rate_limiter: RPCRateLimiter,
                 price_api_url: str = "https://price.jup.ag/v6/price",
                 quote_api_url: str = "https://lite-api.jup.ag/swap/v1/quote",
                 cache_seconds: float = 15.0,
                 timeout_seconds: float = 10.0,
                 clock: Callable[[], float] = time.time,
                 logger: Optional[TradingLogger] = None):
        self.curve_reader = curve_reader
        self.rate_limiter = rate_limiter
        self.price_api_url = price_api_url
        self.quote_api_url = quote_api_url
        self.cache_seconds = cache_seconds
        self.timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self.clock = clock
        self.logger = logger or TradingLogger("price_service")
        self.cache: Dict[str, PriceQuote] = {}
        self.session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self.session is None or self.session.closed:
            self.session = aiohttp.ClientSession(timeout=self.timeout)
        return self.session

    async def close(self) -> None:
        if self.session and not self.session.closed:
            await self.session.close()
        if self.curve_reader is not None:
            await self.curve_reader.client.close()

    async def get_price(self, mint: str) -> PriceQuote:
        now = self.clock()
        cached = self.cache.get(mint)
        if cached and now - cached.timestamp < self.cache_seconds:
            return cached

        quote = await self._resolve(mint, now)
        if quote.known:
            self.cache[mint] = quote
        return quote

    async def _resolve(self, mint: str, now: float) -> PriceQuote:
        curve_price = None
        migrated = False
        try:
            curve = await self._read_curve(mint)
            if curve is None:
                migrated = True
            elif curve.complete:
                migrated = True
                self.logger.info(f"Bonding curve complete for {mint}, using aggregator")
            else:
                curve_price = curve.unit_price()
                if curve_price is None:
                    self.logger.warning(f"Invalid curve reserves for {mint}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.logger.warning(f"Curve read failed for {mint}: {str(e)}")

        if curve_price is not None and not migrated:
            return PriceQuote(mint, curve_price, False, SOURCE_CURVE, now)

        for fetch in (self._aggregator_price, self._aggregator_quote):
            try:
                price = await fetch(mint)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.warning(f"{fetch.__name__} failed for {mint}: {str(e)}")
                continue
            if price is not None and price > 0:
                return PriceQuote(mint, price, True, SOURCE_AGGREGATOR, now)

        self.logger.warning(f"No price source available for {mint}")
        return PriceQuote(mint, None, migrated, SOURCE_NONE, now)

    async def _read_curve(self, mint: str):
        if self.curve_reader is None:
            return None
        return await self.curve_reader.fetch(mint)

    async def _fetch_json(self, url: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        session = await self._get_session()

        async def call():
            async with session.get(url, params=params) as response:
                if response.status == 429:
                    raise aiohttp.ClientResponseError(
                        response.request_info, response.history, status=429, message="Too Many Requests")
                if response.status != 200:
                    self.logger.debug(f"{url} returned HTTP {response.status}")
                    return None
                return await response.json(content_type=None)

        return await self.rate_limiter.request(call)

    async def _aggregator_price(self, mint: str) -> Optional[float]:
        data = await self._fetch_json(self.price_api_url, {'ids': mint, 'vsToken': SOL_MINT})
        if not data:
            return None
        entry = (data.get('data') or {}).get(mint) or {}
        return safe_number(entry.get('price'), None)

    async def _aggregator_quote(self, mint: str, decimals: int = PUMP_TOKEN_DECIMALS) -> Optional[float]:
        """Price one whole token by quoting a sell into SOL"""
        amount = 10 ** decimals
        data = await self._fetch_json(self.quote_api_url, {
            'inputMint': mint,
            'outputMint': SOL_MINT,
            'amount': str(amount),
            'slippageBps': str(FALLBACK_QUOTE_SLIPPAGE_BPS),
        })
        if not data:
            return None
        out_lamports = safe_number(data.get('outAmount'), None)
        if out_lamports is None or out_lamports <= 0:
            return None
        return safe_divide(out_lamports, 10 ** SOL_DECIMALS, None)

    def invalidate(self, mint: Optional[str] = None):
        if mint is None:
            self.cache.clear()
        else:
            self.cache.pop(mint, None)
