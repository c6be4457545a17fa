import asyncio
import json
import random
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from analysis.models import ArbitrageOpportunity, GasFees, PriceSnapshot, RejectedOpportunity, Source
from config import AppConfig
from errors import PermanentAdapterError, TransientAdapterError
from scanner import SignalScanner
from services.trade_simulator import TradeSimulator
from storage import JsonlRecordWriter

NOW = datetime(2024, 6, 1, 8, 30, tzinfo=timezone.utc)
NO_GAS = GasFees(base_fee=Decimal('0'), priority_fee=Decimal('0'))


def _dex(price='3000', reserve_base='1000000'):
    reserve_base = Decimal(reserve_base)
    return PriceSnapshot(
        source=Source.DEX,
        pair='WETH/USDC',
        price=Decimal(price),
        timestamp=NOW,
        sequence=1,
        reserve_in=reserve_base,
        reserve_out=reserve_base * Decimal(price),
        block_number=100,
    )


def _cex(price='3010'):
    return PriceSnapshot(source=Source.CEX, pair='WETH/USDC', price=Decimal(price), timestamp=NOW, sequence=1)


@pytest.fixture
def mock_config():
    return AppConfig(
        rpc_url='http://localhost:8545',
        execution_simulation_enabled=True,
        simulation_seed=11,
        retry_max_attempts=2,
        retry_base_delay_ms=1,
        interval=0.01,
    )


@pytest.fixture
def mock_clients():
    pool_client = MagicMock()
    pool_client.fetch_snapshot = AsyncMock(return_value=_dex())
    pool_client.fetch_gas_fees = AsyncMock(return_value=NO_GAS)
    cex_client = MagicMock()
    cex_client.fetch_snapshot = AsyncMock(return_value=_cex())
    return pool_client, cex_client


def _read(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


def _scanner(config, clients, tmp_path, **kwargs):
    pool_client, cex_client = clients
    writer = JsonlRecordWriter(tmp_path, clock=lambda: NOW)
    return SignalScanner(config, pool_client, cex_client, writer, **kwargs)


@pytest.mark.asyncio
async def test_run_cycle_waits_for_all_feeds(mock_config, mock_clients, tmp_path, capsys):
    scanner = _scanner(mock_config, mock_clients, tmp_path)
    scanner.board.dex = _dex()
    assert await scanner.run_cycle(NOW) is None
    assert "Waiting for price feeds" in capsys.readouterr().out
    assert not (tmp_path / 'opportunities').exists()


@pytest.mark.asyncio
async def test_run_cycle_detects_quotes_and_simulates(mock_config, mock_clients, tmp_path):
    simulator = TradeSimulator(mock_config, rng=random.Random(5))
    scanner = _scanner(mock_config, mock_clients, tmp_path, simulator=simulator)
    scanner.board.dex, scanner.board.cex, scanner.board.gas_fees = _dex(), _cex(), NO_GAS

    result = await scanner.run_cycle(NOW)

    assert isinstance(result.detection, ArbitrageOpportunity)
    assert result.signal is not None
    assert result.signal.fair_value == Decimal('3010')
    assert [e.ref_kind for e in result.executions] == ['opportunity', 'signal']

    expected_position = sum((e.position_delta for e in result.executions if e.succeeded), Decimal('0'))
    assert scanner.ledger.snapshot().position == expected_position

    opportunities = _read(tmp_path / 'opportunities' / 'arbitrage_2024-06-01.jsonl')
    signals = _read(tmp_path / 'market_making' / 'signals_2024-06-01.jsonl')
    executions = _read(tmp_path / 'executions' / 'trades_2024-06-01.jsonl')
    assert opportunities[0]['record_type'] == 'opportunity'
    assert opportunities[0]['direction'] == 'BuyDexSellCex'
    assert signals[0]['strategy'] == 'TightSpread'
    assert len(executions) == 2
    sequences = [r['sequence'] for r in opportunities + signals + executions]
    assert sorted(sequences) == [1, 2, 3, 4]

    assert scanner.stats.opportunities == 1
    assert scanner.stats.signals == 1
    assert scanner.stats.simulations == 2


@pytest.mark.asyncio
async def test_rejections_are_recorded_and_market_making_can_be_disabled(mock_config, mock_clients, tmp_path):
    config = mock_config._replace(market_making_enabled=False, execution_simulation_enabled=False)
    scanner = _scanner(config, mock_clients, tmp_path)
    scanner.board.dex, scanner.board.cex, scanner.board.gas_fees = _dex(), _cex('3000.5'), NO_GAS

    result = await scanner.run_cycle(NOW)

    assert isinstance(result.detection, RejectedOpportunity)
    assert result.signal is None
    assert result.executions == []
    records = _read(tmp_path / 'opportunities' / 'arbitrage_2024-06-01.jsonl')
    assert records[0]['record_type'] == 'rejection'
    assert records[0]['reason'] == 'BelowThreshold'
    assert not (tmp_path / 'market_making').exists()
    assert scanner.stats.rejections['BelowThreshold'] == 1


@pytest.mark.asyncio
async def test_volatility_alert_is_surfaced(mock_config, mock_clients, tmp_path, capsys):
    config = mock_config._replace(market_making_enabled=False, execution_simulation_enabled=False)
    scanner = _scanner(config, mock_clients, tmp_path)
    # Alternating 2800/3200: mean 3000, stdev 200 -> ~6.67% over the 5% default.
    for i in range(10):
        price = Decimal('2800') if i % 2 == 0 else Decimal('3200')
        scanner.analyzer.observe(PriceSnapshot(
            source=Source.CEX, pair='WETH/USDC', price=price, timestamp=NOW - timedelta(seconds=9 - i), sequence=i,
        ))
    scanner.board.dex, scanner.board.cex, scanner.board.gas_fees = _dex(), _cex('3000.5'), NO_GAS

    result = await scanner.run_cycle(NOW)

    assert result.context.above_threshold
    assert "[VOL] 5m volatility" in capsys.readouterr().out
    assert scanner.stats.volatility_alerts == 1
    assert "Volatility alerts: 1" in scanner.stats.render()


@pytest.mark.asyncio
async def test_guarded_retries_transient_and_records_permanent(mock_config, mock_clients, tmp_path, capsys):
    scanner = _scanner(mock_config, mock_clients, tmp_path)

    flaky = AsyncMock(side_effect=[TransientAdapterError('dex-rpc', 'timeout'), _dex()])
    snapshot = await scanner._guarded(scanner.dex_breaker, flaky, 'DEX reserves')
    assert snapshot.price == Decimal('3000')
    assert flaky.await_count == 2

    broken = AsyncMock(side_effect=PermanentAdapterError('cex-binance', 'bad payload'))
    assert await scanner._guarded(scanner.cex_breaker, broken, 'CEX ticker') is None
    assert scanner.stats.adapter_errors['cex-api'] == 1
    assert "CEX ticker failed" in capsys.readouterr().out


@pytest.mark.asyncio
async def test_open_breaker_skips_calls(mock_config, mock_clients, tmp_path):
    config = mock_config._replace(breaker_threshold=1, retry_max_attempts=1)
    scanner = _scanner(config, mock_clients, tmp_path)
    failing = AsyncMock(side_effect=TransientAdapterError('dex-rpc', 'timeout'))

    assert await scanner._guarded(scanner.dex_breaker, failing, 'DEX reserves') is None
    assert await scanner._guarded(scanner.dex_breaker, failing, 'DEX reserves') is None
    assert failing.await_count == 1
    assert scanner.health().breakers['dex-rpc'].status.value == 'Open'
    assert not scanner.health().healthy


@pytest.mark.asyncio
async def test_cex_poller_feeds_board_and_analyzer(mock_config, mock_clients, tmp_path):
    scanner = _scanner(mock_config, mock_clients, tmp_path)

    async def fetch_and_stop():
        scanner.stop_event.set()
        return _cex()

    mock_clients[1].fetch_snapshot = AsyncMock(side_effect=fetch_and_stop)
    await scanner._poll_cex()

    assert scanner.board.cex.price == Decimal('3010')
    assert scanner.analyzer.context('WETH/USDC', NOW).sample_counts['5m'] == 1


@pytest.mark.asyncio
async def test_main_loop_survives_cycle_errors(mock_config, mock_clients, tmp_path, capsys):
    scanner = _scanner(mock_config, mock_clients, tmp_path)
    calls = []

    async def run_cycle():
        calls.append(1)
        if len(calls) == 1:
            raise RuntimeError('boom')
        scanner.stop_event.set()

    scanner.run_cycle = run_cycle
    await asyncio.wait_for(scanner._run_main_loop(), timeout=5)

    assert len(calls) == 2
    assert scanner.stats.cycles == 2
    assert scanner.stats.cycle_errors == 1
    assert scanner.stats.consecutive_cycle_errors == 0
    assert "Error during detection cycle: boom" in capsys.readouterr().out
