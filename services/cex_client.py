#!/usr/bin/env python3
import asyncio
import itertools
import time
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation

import aiohttp

from analysis.models import PriceSnapshot, Source
from constants import (
    BINANCE_API_BASE_URL,
    BINANCE_SYMBOL,
    CEX_MAX_VALID_PRICE,
    CEX_MIN_VALID_PRICE,
)
from errors import PermanentAdapterError, TransientAdapterError

SOURCE_NAME = 'cex-binance'


async def api_get(url: str, session: aiohttp.ClientSession, params: dict, timeout: float = 10.0) -> dict:
    """Single GET returning decoded JSON; failures are classified for the retry layer."""
    try:
        async with session.get(url, params=params, timeout=aiohttp.ClientTimeout(total=timeout)) as response:
            if response.status == 429 or response.status == 418 or response.status >= 500:
                raise TransientAdapterError(SOURCE_NAME, f"HTTP {response.status} from {url}")
            if response.status >= 400:
                raise PermanentAdapterError(SOURCE_NAME, f"HTTP {response.status} from {url}")
            return await response.json(content_type=None)
    except (asyncio.TimeoutError, aiohttp.ClientConnectionError) as exc:
        raise TransientAdapterError(SOURCE_NAME, f"{url}: {exc or type(exc).__name__}") from exc
    except (aiohttp.ContentTypeError, ValueError) as exc:
        raise PermanentAdapterError(SOURCE_NAME, f"{url}: undecodable response ({exc})") from exc


class CexPriceClient:
    """Binance spot ticker for the monitored pair."""

    def __init__(self, session: aiohttp.ClientSession, pair: str, symbol: str = BINANCE_SYMBOL, timeout: float = 10.0):
        self.session = session
        self.pair = pair
        self.symbol = symbol
        self.timeout = timeout
        self._sequence = itertools.count(1)
        self._last_request_time = 0.0
        self._rate_limit_delay = 0.2

    async def _wait_for_rate_limit(self):
        elapsed = time.time() - self._last_request_time
        if elapsed < self._rate_limit_delay:
            await asyncio.sleep(self._rate_limit_delay - elapsed)
        self._last_request_time = time.time()

    async def fetch_snapshot(self) -> PriceSnapshot:
        """Gets the latest ticker price as a CEX PriceSnapshot."""
        await self._wait_for_rate_limit()
        url = f"{BINANCE_API_BASE_URL}/ticker/price"
        data = await api_get(url, self.session, params={'symbol': self.symbol}, timeout=self.timeout)
        if not isinstance(data, dict) or 'price' not in data:
            raise PermanentAdapterError(SOURCE_NAME, f"unexpected ticker payload: {data!r}")
        try:
            price = Decimal(str(data['price']))
        except (InvalidOperation, ValueError):
            raise PermanentAdapterError(SOURCE_NAME, f"unparsable price {data['price']!r}") from None
        if not price.is_finite() or not CEX_MIN_VALID_PRICE <= price <= CEX_MAX_VALID_PRICE:
            raise PermanentAdapterError(SOURCE_NAME, f"price {price} outside plausible range")
        return PriceSnapshot(
            source=Source.CEX,
            pair=self.pair,
            price=price,
            timestamp=datetime.now(timezone.utc),
            sequence=next(self._sequence),
        )
