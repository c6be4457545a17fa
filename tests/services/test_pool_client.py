from decimal import Decimal

import pytest

from analysis.models import Source
from constants import USDC_ADDRESS, WETH_ADDRESS
from errors import PermanentAdapterError, TransientAdapterError
from services.pool_client import PoolClient

POOL = '0xaaaa000000000000000000000000000000000001'


class FakeResponse:
    def __init__(self, payload, status=200):
        self._payload = payload
        self.status = status

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def json(self, content_type=None):
        return self._payload


class FakeSession:
    def __init__(self, responses):
        self._responses = list(responses)
        self.requests = []

    def post(self, url, json, timeout):
        if not self._responses:
            raise AssertionError("No more fake responses configured")
        self.requests.append(json)
        response = self._responses.pop(0)
        if isinstance(response, FakeResponse):
            return response
        return FakeResponse(response)


def _word(value: int) -> str:
    return format(value, '064x')


def _address_result(address: str) -> dict:
    return {'jsonrpc': '2.0', 'id': 1, 'result': '0x' + '0' * 24 + address[2:]}


def _result(value) -> dict:
    return {'jsonrpc': '2.0', 'id': 1, 'result': value}


def _reserves(reserve0: int, reserve1: int) -> dict:
    return _result('0x' + _word(reserve0) + _word(reserve1) + _word(1_700_000_000))


def _validation_responses(token0=WETH_ADDRESS, token1=USDC_ADDRESS, reserve0=100 * 10 ** 18, reserve1=300_000 * 10 ** 6):
    dec0, dec1 = (18, 6) if token0 == WETH_ADDRESS else (6, 18)
    base_dec, quote_dec = (dec0, dec1) if token0 == WETH_ADDRESS else (dec1, dec0)
    return [
        _address_result(token0),
        _address_result(token1),
        _result(hex(base_dec)),
        _result(hex(quote_dec)),
        _result('0x100'),
        _reserves(reserve0, reserve1),
    ]


def _client(session):
    return PoolClient(session, rpc_url='http://mock-rpc', pool_address=POOL, pair='WETH/USDC', timeout=5.0)


@pytest.mark.asyncio
async def test_validate_pool_and_fetch_snapshot():
    responses = _validation_responses() + [_result('0x101'), _reserves(100 * 10 ** 18, 301_000 * 10 ** 6)]
    session = FakeSession(responses)
    client = _client(session)

    metadata = await client.validate_pool()
    assert metadata.base_is_token0 is True
    assert metadata.base_decimals == 18
    assert metadata.quote_decimals == 6

    snapshot = await client.fetch_snapshot()
    assert snapshot.source is Source.DEX
    assert snapshot.price == Decimal('3010')
    assert snapshot.reserve_in == Decimal('100')
    assert snapshot.reserve_out == Decimal('301000')
    assert snapshot.block_number == 0x101
    assert snapshot.sequence == 1

    # Reserves are read at the block that was just resolved.
    assert session.requests[-1]['params'][1] == '0x101'
    ids = [request['id'] for request in session.requests]
    assert ids == sorted(ids) and len(set(ids)) == len(ids)


@pytest.mark.asyncio
async def test_validate_pool_handles_weth_as_token1():
    responses = _validation_responses(
        token0=USDC_ADDRESS,
        token1=WETH_ADDRESS,
        reserve0=300_000 * 10 ** 6,
        reserve1=100 * 10 ** 18,
    )
    client = _client(FakeSession(responses))
    metadata = await client.validate_pool()
    assert metadata.base_is_token0 is False
    assert metadata.base_token == WETH_ADDRESS


@pytest.mark.asyncio
async def test_validate_pool_rejects_non_weth_pool():
    other = '0xcccc000000000000000000000000000000000003'
    client = _client(FakeSession([_address_result(other), _address_result(USDC_ADDRESS)]))
    with pytest.raises(PermanentAdapterError):
        await client.validate_pool()


@pytest.mark.asyncio
async def test_gas_fees_converted_to_eth():
    session = FakeSession([
        _result({'number': '0x10', 'baseFeePerGas': hex(1_500_000_000)}),
        _result(hex(500_000_000)),
    ])
    fees = await _client(session).fetch_gas_fees()
    assert fees.base_fee == Decimal('0.0000000015')
    assert fees.priority_fee == Decimal('0.0000000005')
    assert fees.total == Decimal('0.000000002')


@pytest.mark.asyncio
@pytest.mark.parametrize("response, error", [
    (FakeResponse({}, status=429), TransientAdapterError),
    (FakeResponse({}, status=503), TransientAdapterError),
    (FakeResponse({}, status=401), PermanentAdapterError),
    ({'jsonrpc': '2.0', 'id': 1, 'error': {'code': -32005, 'message': 'limit exceeded'}}, TransientAdapterError),
    ({'jsonrpc': '2.0', 'id': 1, 'error': {'code': -32602, 'message': 'invalid params'}}, PermanentAdapterError),
    ({'jsonrpc': '2.0', 'id': 1}, PermanentAdapterError),
])
async def test_rpc_errors_are_classified(response, error):
    client = _client(FakeSession([response]))
    with pytest.raises(error):
        await client.fetch_gas_fees()


@pytest.mark.asyncio
async def test_malformed_reserves_are_permanent():
    responses = _validation_responses()[:5] + [_result('0x1234')]
    client = _client(FakeSession(responses))
    with pytest.raises(PermanentAdapterError):
        await client.validate_pool()
