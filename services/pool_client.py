#!/usr/bin/env python3
"""JSON-RPC reader for a constant-product WETH/USD pool."""
import asyncio
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import aiohttp
from aiohttp import ClientSession

from analysis.models import GasFees, PriceSnapshot, Source
from constants import USD_STABLE_ADDRESSES, WEI_PER_ETH, WETH_ADDRESS
from errors import PermanentAdapterError, TransientAdapterError

logger = logging.getLogger(__name__)

SOURCE_NAME = 'dex-rpc'
# JSON-RPC error codes providers use for throttling / capacity.
_TRANSIENT_RPC_CODES = {-32005, -32603, 429}


@dataclass
class PoolMetadata:
    """Token layout of the monitored pool."""
    address: str
    base_token: str
    quote_token: str
    base_is_token0: bool
    base_decimals: int
    quote_decimals: int


class PoolClient:
    """Reads reserves and gas fees for one pool over JSON-RPC."""

    _TOKEN0_SIG = "0x0dfe1681"
    _TOKEN1_SIG = "0xd21220a7"
    _GET_RESERVES_SIG = "0x0902f1ac"
    _DECIMALS_SIG = "0x313ce567"

    def __init__(
        self,
        session: ClientSession,
        *,
        rpc_url: str,
        pool_address: str,
        pair: str,
        timeout: float = 10.0,
    ) -> None:
        self._session = session
        self._rpc_url = rpc_url
        self._pool_address = self._normalise_address(pool_address)
        self._pair = pair
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._metadata: Optional[PoolMetadata] = None
        self._decimals_cache: Dict[str, int] = {}
        self._id_lock = asyncio.Lock()
        self._next_request_id = 1
        self._sequence = itertools.count(1)

    @property
    def metadata(self) -> Optional[PoolMetadata]:
        return self._metadata

    async def validate_pool(self) -> PoolMetadata:
        """Resolve the pool tokens and confirm it is a live WETH/USD-stable pool."""
        token0_hex = await self._eth_call(self._pool_address, self._TOKEN0_SIG)
        token1_hex = await self._eth_call(self._pool_address, self._TOKEN1_SIG)
        token0 = self._decode_address(token0_hex)
        token1 = self._decode_address(token1_hex)
        if token0 is None or token1 is None:
            raise PermanentAdapterError(SOURCE_NAME, f"could not resolve tokens of pool {self._pool_address}")

        weth = WETH_ADDRESS.lower()
        if token0 == weth and token1 in USD_STABLE_ADDRESSES:
            base_is_token0 = True
        elif token1 == weth and token0 in USD_STABLE_ADDRESSES:
            base_is_token0 = False
        else:
            raise PermanentAdapterError(SOURCE_NAME, f"pool {self._pool_address} is not WETH/USD ({token0}, {token1})")

        base_token, quote_token = (token0, token1) if base_is_token0 else (token1, token0)
        metadata = PoolMetadata(
            address=self._pool_address,
            base_token=base_token,
            quote_token=quote_token,
            base_is_token0=base_is_token0,
            base_decimals=await self._get_decimals(base_token),
            quote_decimals=await self._get_decimals(quote_token),
        )
        self._metadata = metadata

        reserve_base, reserve_quote, _ = await self._get_reserves(metadata)
        if reserve_base <= 0 or reserve_quote <= 0:
            raise PermanentAdapterError(SOURCE_NAME, f"pool {self._pool_address} has empty reserves")
        logger.info(
            "Validated pool %s: %s WETH / %s USD",
            self._pool_address,
            reserve_base,
            reserve_quote,
        )
        return metadata

    async def fetch_snapshot(self) -> PriceSnapshot:
        metadata = self._metadata or await self.validate_pool()
        reserve_base, reserve_quote, block_number = await self._get_reserves(metadata)
        if reserve_base <= 0 or reserve_quote <= 0:
            raise PermanentAdapterError(SOURCE_NAME, "empty reserves")
        return PriceSnapshot(
            source=Source.DEX,
            pair=self._pair,
            price=reserve_quote / reserve_base,
            timestamp=datetime.now(timezone.utc),
            sequence=next(self._sequence),
            reserve_in=reserve_base,
            reserve_out=reserve_quote,
            block_number=block_number,
        )

    async def fetch_gas_fees(self) -> GasFees:
        block = await self._rpc_call("eth_getBlockByNumber", ["latest", False])
        if not isinstance(block, dict) or 'baseFeePerGas' not in block:
            raise PermanentAdapterError(SOURCE_NAME, "latest block carries no baseFeePerGas")
        priority_hex = await self._rpc_call("eth_maxPriorityFeePerGas", [])
        base_fee = self._parse_quantity(block['baseFeePerGas'])
        priority_fee = self._parse_quantity(priority_hex)
        return GasFees(
            base_fee=Decimal(base_fee) / WEI_PER_ETH,
            priority_fee=Decimal(priority_fee) / WEI_PER_ETH,
        )

    async def _get_reserves(self, metadata: PoolMetadata) -> Tuple[Decimal, Decimal, int]:
        block_hex = await self._rpc_call("eth_blockNumber", [])
        block_number = self._parse_quantity(block_hex)
        result = await self._eth_call(metadata.address, self._GET_RESERVES_SIG, hex(block_number))
        if not isinstance(result, str) or len(result) < 130:
            raise PermanentAdapterError(SOURCE_NAME, f"malformed getReserves result: {result!r}")
        try:
            reserve0 = int(result[2:66], 16)
            reserve1 = int(result[66:130], 16)
        except ValueError:
            raise PermanentAdapterError(SOURCE_NAME, f"malformed getReserves result: {result!r}") from None
        raw_base, raw_quote = (reserve0, reserve1) if metadata.base_is_token0 else (reserve1, reserve0)
        reserve_base = Decimal(raw_base) / (Decimal(10) ** metadata.base_decimals)
        reserve_quote = Decimal(raw_quote) / (Decimal(10) ** metadata.quote_decimals)
        return reserve_base, reserve_quote, block_number

    async def _get_decimals(self, token_address: str) -> int:
        token_address = self._normalise_address(token_address)
        cached = self._decimals_cache.get(token_address)
        if cached is not None:
            return cached
        result = await self._eth_call(token_address, self._DECIMALS_SIG)
        decimals = self._parse_quantity(result)
        self._decimals_cache[token_address] = decimals
        return decimals

    async def _eth_call(self, to: str, data: str, block: str = "latest") -> Any:
        call_params = {"to": to, "data": data}
        return await self._rpc_call("eth_call", [call_params, block])

    async def _rpc_call(self, method: str, params: list) -> Any:
        request_id = await self._get_request_id()
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": request_id,
        }
        try:
            async with self._session.post(self._rpc_url, json=payload, timeout=self._timeout) as response:
                if response.status == 429 or response.status >= 500:
                    raise TransientAdapterError(SOURCE_NAME, f"{method} returned HTTP {response.status}")
                if response.status >= 400:
                    raise PermanentAdapterError(SOURCE_NAME, f"{method} returned HTTP {response.status}")
                data = await response.json(content_type=None)
        except (asyncio.TimeoutError, aiohttp.ClientConnectionError) as exc:
            raise TransientAdapterError(SOURCE_NAME, f"{method}: {exc or type(exc).__name__}") from exc
        except (aiohttp.ContentTypeError, ValueError) as exc:
            raise PermanentAdapterError(SOURCE_NAME, f"{method}: undecodable response ({exc})") from exc

        if not isinstance(data, dict):
            raise PermanentAdapterError(SOURCE_NAME, f"{method}: unexpected payload {data!r}")
        if 'error' in data:
            error = data['error'] or {}
            code = error.get('code') if isinstance(error, dict) else None
            if code in _TRANSIENT_RPC_CODES:
                raise TransientAdapterError(SOURCE_NAME, f"{method}: {error}")
            raise PermanentAdapterError(SOURCE_NAME, f"{method}: {error}")
        if 'result' not in data:
            raise PermanentAdapterError(SOURCE_NAME, f"{method}: response has no result")
        return data['result']

    async def _get_request_id(self) -> int:
        async with self._id_lock:
            request_id = self._next_request_id
            self._next_request_id += 1
        return request_id

    @staticmethod
    def _parse_quantity(value: Any) -> int:
        if not isinstance(value, str) or not value.startswith('0x'):
            raise PermanentAdapterError(SOURCE_NAME, f"expected hex quantity, got {value!r}")
        try:
            return int(value, 16)
        except ValueError:
            raise PermanentAdapterError(SOURCE_NAME, f"expected hex quantity, got {value!r}") from None

    @staticmethod
    def _normalise_address(address: str) -> str:
        if not address:
            return address
        if address.startswith('0x'):
            return '0x' + address[2:].lower()
        return '0x' + address.lower()

    @staticmethod
    def _decode_address(value: Optional[str]) -> Optional[str]:
        if not isinstance(value, str) or len(value) < 66:
            return None
        return '0x' + value[-40:].lower()
